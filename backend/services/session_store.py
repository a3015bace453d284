# services/session_store.py
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Callable, Dict, List, Optional
from uuid import uuid4

import redis
from redis.exceptions import WatchError

from config import Settings, TransferLimits
from models.errors import Conflict, SessionExpired, SessionNotFound
from models.upload_models import Session, SessionStatus
from services.policy import clamp_duration

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "transfer_session:"
EXPIRY_INDEX_KEY = "transfer_sessions:expiry"

TOKEN_ATTEMPTS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_redis_client(settings: Settings) -> redis.Redis:
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password or None,
        decode_responses=False,
        socket_connect_timeout=5,
        health_check_interval=30,
        db=settings.redis_db,
    )


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


class _TokenLock:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class SessionStore:
    """Redis-backed token -> Session mapping.

    Mutations on one token are serialized by a per-token asyncio.Lock; tokens
    never share a lock. A WATCH on the session key catches writers in other
    processes, which surface as Conflict rather than a lost update.

    Session keys carry no Redis TTL. Expiry is decided from ``expires_at`` and
    the record stays until ``sweep_expired`` hands it back for storage cleanup.
    """

    def __init__(self, redis_client: redis.Redis, limits: TransferLimits,
                 clock: Callable[[], datetime] = utcnow):
        self.redis_client = redis_client
        self.limits = limits
        self.clock = clock
        self._locks: Dict[str, _TokenLock] = {}

    def _key(self, token: str) -> str:
        return f"{SESSION_KEY_PREFIX}{token}"

    async def _call(self, func, *args, **kwargs):
        # redis-py is blocking; keep it off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    @asynccontextmanager
    async def _locked(self, token: str):
        entry = self._locks.get(token)
        if entry is None:
            entry = self._locks[token] = _TokenLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if not entry.users:
                del self._locks[token]

    def _load(self, token: str) -> Optional[Session]:
        raw = self.redis_client.get(self._key(token))
        if raw is None:
            return None
        return Session.model_validate_json(raw)

    def _insert(self, session: Session) -> bool:
        stored = self.redis_client.set(self._key(session.token), session.model_dump_json(), nx=True)
        if stored:
            self.redis_client.zadd(EXPIRY_INDEX_KEY, {session.token: session.expires_at.timestamp()})
        return bool(stored)

    def _apply(self, token: str, fn: Callable[[Session], Optional[Session]]) -> Session:
        key = self._key(token)
        with self.redis_client.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                if raw is None:
                    raise SessionNotFound(f"Session {token} not found")

                session = Session.model_validate_json(raw)
                if session.is_expired(self.clock()):
                    raise SessionExpired(f"Session {token} expired at {session.expires_at.isoformat()}")

                updated = fn(session)
                if updated is not None:
                    session = updated
                session.version += 1

                pipe.multi()
                pipe.set(key, session.model_dump_json())
                pipe.execute()
            except WatchError:
                logger.warning(f"Concurrent modification of session {token}")
                raise Conflict(f"Session {token} was modified concurrently")
        return session

    def _remove(self, token: str) -> Optional[Session]:
        session = self._load(token)
        self.redis_client.delete(self._key(token))
        self.redis_client.zrem(EXPIRY_INDEX_KEY, token)
        return session

    def _expire(self, token: str, now: datetime) -> Optional[Session]:
        session = self._load(token)
        if session is not None and not session.is_expired(now):
            # Index entry is stale; the session itself is still live
            self.redis_client.zadd(EXPIRY_INDEX_KEY, {token: session.expires_at.timestamp()})
            return None
        self._remove(token)
        return session

    async def create(self, requested_ttl_minutes: int) -> Session:
        """Create a waiting session whose lifetime is clamped to max_ttl_minutes"""
        minutes = clamp_duration(requested_ttl_minutes, self.limits)
        now = self.clock()

        for _ in range(TOKEN_ATTEMPTS):
            session = Session(
                token=str(uuid4()),
                status=SessionStatus.WAITING,
                created_at=now,
                expires_at=now + timedelta(minutes=minutes),
            )
            if await self._call(self._insert, session):
                logger.info(f"Session {session.token} created, expires at {session.expires_at.isoformat()}")
                return session
            logger.warning(f"Session token collision on {session.token}, retrying")

        raise Conflict("Could not allocate a unique session token")

    async def get(self, token: str) -> Session:
        """Return a live session; expired sessions are reported as not found"""
        session = await self._call(self._load, token)
        if session is None or session.is_expired(self.clock()):
            raise SessionNotFound(f"Session {token} not found or expired")
        return session

    async def peek(self, token: str) -> Optional[Session]:
        """Raw read that also returns sessions past their expiry"""
        return await self._call(self._load, token)

    async def mutate(self, token: str, fn: Callable[[Session], Optional[Session]]) -> Session:
        """Atomically apply ``fn`` to a live session and store the result.

        ``fn`` may modify the session in place or return a replacement; raising
        a TransferError from it aborts the write.
        """
        async with self._locked(token):
            return await self._call(self._apply, token, fn)

    async def delete(self, token: str) -> Optional[Session]:
        async with self._locked(token):
            session = await self._call(self._remove, token)
        if session:
            logger.info(f"Session {token} deleted")
        return session

    async def sweep_expired(self) -> List[Session]:
        """Remove every session whose expiry has passed and return them"""
        now = self.clock()
        due = await self._call(self.redis_client.zrangebyscore, EXPIRY_INDEX_KEY, "-inf", now.timestamp())

        expired = []
        for token in map(_text, due):
            async with self._locked(token):
                session = await self._call(self._expire, token, now)
            if session is not None:
                session.status = SessionStatus.EXPIRED
                expired.append(session)

        if expired:
            logger.info(f"Swept {len(expired)} expired sessions")
        return expired

    async def count_active(self) -> int:
        return await self._call(self.redis_client.zcount, EXPIRY_INDEX_KEY, f"({self.clock().timestamp()}", "+inf")

    async def ping(self) -> bool:
        return bool(await self._call(self.redis_client.ping))
