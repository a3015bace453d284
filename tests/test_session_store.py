"""
Test Session Store

This module tests the Redis-backed session store including:
- Creation and TTL clamping
- Logical expiry before any sweep
- Serialized and conflicting mutations
- Sweeping and deletion
"""

import asyncio
import time
from datetime import timedelta

import pytest

from models.errors import Conflict, InvalidDuration, SessionExpired, SessionNotFound
from models.upload_models import FileRecord, SessionStatus
from services.session_store import EXPIRY_INDEX_KEY, SESSION_KEY_PREFIX


def make_record(name, size, clock):
    return FileRecord(
        original_name=name,
        mime_type="text/plain",
        size_bytes=size,
        uploaded_at=clock(),
        storage_ref=f"ref/{name}",
    )


@pytest.mark.asyncio
async def test_create_clamps_ttl_to_maximum(store):
    session = await store.create(90)

    assert session.expires_at - session.created_at == timedelta(minutes=60)
    assert session.status == SessionStatus.WAITING
    assert session.files == []
    assert session.total_bytes == 0


@pytest.mark.asyncio
async def test_create_rejects_non_positive_ttl(store):
    with pytest.raises(InvalidDuration):
        await store.create(0)
    with pytest.raises(InvalidDuration):
        await store.create(-3)


@pytest.mark.asyncio
async def test_tokens_are_unique(store):
    tokens = {(await store.create(10)).token for _ in range(20)}
    assert len(tokens) == 20


@pytest.mark.asyncio
async def test_get_round_trips_and_hides_expired(store, clock):
    session = await store.create(30)

    fetched = await store.get(session.token)
    assert fetched.token == session.token
    assert fetched.expires_at == session.expires_at

    clock.advance(minutes=30, seconds=1)
    with pytest.raises(SessionNotFound):
        await store.get(session.token)

    # Still physically present until the sweeper runs
    assert (await store.peek(session.token)) is not None


@pytest.mark.asyncio
async def test_get_unknown_token(store):
    with pytest.raises(SessionNotFound):
        await store.get("missing")


@pytest.mark.asyncio
async def test_mutate_persists_and_bumps_version(store, clock):
    session = await store.create(30)

    updated = await store.mutate(session.token, lambda s: s.add_file(make_record("a.txt", 10, clock)))

    assert updated.version == 1
    stored = await store.get(session.token)
    assert [f.original_name for f in stored.files] == ["a.txt"]
    assert stored.total_bytes == 10


@pytest.mark.asyncio
async def test_mutate_expired_and_missing(store, clock):
    session = await store.create(5)

    with pytest.raises(SessionNotFound):
        await store.mutate("missing", lambda s: None)

    clock.advance(minutes=6)
    with pytest.raises(SessionExpired):
        await store.mutate(session.token, lambda s: None)


@pytest.mark.asyncio
async def test_concurrent_mutations_do_not_lose_updates(store, clock):
    session = await store.create(30)

    async def add(i):
        await store.mutate(session.token, lambda s: s.add_file(make_record(f"f{i}", i + 1, clock)))

    await asyncio.gather(*(add(i) for i in range(10)))

    stored = await store.get(session.token)
    assert len(stored.files) == 10
    assert stored.total_bytes == sum(f.size_bytes for f in stored.files) == 55
    assert stored.version == 10


@pytest.mark.asyncio
async def test_mutate_detects_outside_writer(store, redis_client):
    session = await store.create(30)
    key = f"{SESSION_KEY_PREFIX}{session.token}"

    def clobber(s):
        # Another process rewrites the key between our read and our write
        redis_client.set(key, s.model_copy(update={"status": SessionStatus.COMPLETED}).model_dump_json())
        s.status = SessionStatus.UPLOADING

    with pytest.raises(Conflict):
        await store.mutate(session.token, clobber)

    assert (await store.get(session.token)).status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_mutation_writes_nothing(store):
    session = await store.create(30)

    def reject(s):
        s.status = SessionStatus.COMPLETED
        raise SessionNotFound("abort")

    with pytest.raises(SessionNotFound):
        await store.mutate(session.token, reject)

    stored = await store.get(session.token)
    assert stored.status == SessionStatus.WAITING
    assert stored.version == 0


@pytest.mark.asyncio
async def test_sweep_removes_only_expired(store, clock, redis_client):
    short = await store.create(5)
    long = await store.create(60)

    assert await store.sweep_expired() == []

    clock.advance(minutes=10)
    swept = await store.sweep_expired()

    assert [s.token for s in swept] == [short.token]
    assert swept[0].status == SessionStatus.EXPIRED
    assert await store.peek(short.token) is None
    assert redis_client.zscore(EXPIRY_INDEX_KEY, short.token) is None
    assert (await store.get(long.token)).token == long.token
    assert await store.count_active() == 1


@pytest.mark.asyncio
async def test_delete(store):
    session = await store.create(30)

    deleted = await store.delete(session.token)

    assert deleted.token == session.token
    assert await store.peek(session.token) is None
    assert await store.delete(session.token) is None
    assert await store.count_active() == 0


@pytest.mark.asyncio
async def test_session_keys_outlive_expiry_until_swept(store, clock, redis_client):
    session = await store.create(5)
    key = f"{SESSION_KEY_PREFIX}{session.token}"

    assert redis_client.ttl(key) == -1
    await store.mutate(session.token, lambda s: None)
    assert redis_client.ttl(key) == -1

    # Sweeper was down for far longer than the session lived
    clock.advance(hours=6)

    swept = await store.sweep_expired()
    assert [s.token for s in swept] == [session.token]
    assert not redis_client.exists(key)


@pytest.mark.asyncio
async def test_slow_redis_call_does_not_stall_the_loop(store, redis_client, monkeypatch):
    live = await store.create(30)
    slow_key = f"{SESSION_KEY_PREFIX}slow"
    original_get = redis_client.get

    def get(key):
        if key == slow_key:
            time.sleep(0.5)
        return original_get(key)

    monkeypatch.setattr(redis_client, "get", get)

    gaps = []

    async def ticker(until):
        last = time.monotonic()
        while not until.done():
            await asyncio.sleep(0.05)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    slow = asyncio.create_task(store.get("slow"))
    ticks = asyncio.create_task(ticker(slow))

    started = time.monotonic()
    fetched = await store.get(live.token)
    assert fetched.token == live.token
    assert time.monotonic() - started < 0.25

    with pytest.raises(SessionNotFound):
        await slow
    await ticks
    assert max(gaps) < 0.25


@pytest.mark.asyncio
async def test_waiters_share_one_lock_per_token(store, clock):
    session = await store.create(30)

    async with store._locked(session.token):
        entry = store._locks[session.token]
        tasks = [
            asyncio.create_task(store.mutate(session.token, lambda s, i=i: s.add_file(make_record(f"f{i}", 1, clock))))
            for i in range(3)
        ]
        missing = asyncio.create_task(store.mutate("gone", lambda s: None))
        await asyncio.sleep(0)

        assert store._locks[session.token] is entry
        assert entry.users == 4

    await asyncio.gather(*tasks)
    with pytest.raises(SessionNotFound):
        await missing

    assert store._locks == {}
    assert (await store.get(session.token)).version == 3
