# services/upload_tracker.py
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from config import TransferLimits
from models.errors import (
    IncompleteUpload, SessionAlreadyCompleted, SessionExpired, SessionNotFound,
    TooLarge, TransferError, UnknownUpload,
)
from models.upload_models import (
    ChunkProgress, FileRecord, InFlightUpload, Session, SessionStatus, UploadTicket,
)
from services import policy
from services.session_store import SessionStore, utcnow

logger = logging.getLogger(__name__)


class UploadTracker:
    """In-memory state for uploads that have been initialised but not finalized.

    Chunk ingestion and finalization are serialized per upload id. Uploads
    belonging to different sessions never contend with each other.
    """

    def __init__(self, store: SessionStore, storage, limits: TransferLimits,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.storage = storage
        self.limits = limits
        self.clock = clock
        self._uploads: Dict[str, InFlightUpload] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def _live_session(self, token: str) -> Session:
        session = await self.store.peek(token)
        if session is None:
            raise SessionNotFound(f"Session {token} not found")
        if session.is_expired(self.clock()):
            raise SessionExpired(f"Session {token} has expired")
        return session

    def _new_upload_id(self) -> str:
        upload_id = uuid4().hex
        while upload_id in self._uploads:
            upload_id = uuid4().hex
        return upload_id

    def _require(self, upload_id: str) -> InFlightUpload:
        upload = self._uploads.get(upload_id)
        if upload is None:
            raise UnknownUpload(f"Upload {upload_id} not found")
        return upload

    def _discard(self, upload_id: str) -> Optional[InFlightUpload]:
        self._locks.pop(upload_id, None)
        return self._uploads.pop(upload_id, None)

    def _check_session_live(self, upload: InFlightUpload):
        if self.clock() > upload.session_expires_at:
            self._discard(upload.upload_id)
            logger.warning(f"Upload {upload.upload_id} dropped, session {upload.session_token} expired")
            raise SessionExpired(f"Session {upload.session_token} expired during upload")

    def get(self, upload_id: str) -> InFlightUpload:
        return self._require(upload_id)

    @property
    def active_count(self) -> int:
        return len(self._uploads)

    async def init(self, session_token: str, file_name: str, declared_size: int,
                   mime_type: str) -> UploadTicket:
        """Admit a new upload into a live session"""
        session = await self._live_session(session_token)
        if session.status == SessionStatus.COMPLETED:
            raise SessionAlreadyCompleted(f"Session {session_token} no longer accepts uploads")

        policy.validate_file_size(declared_size, self.limits)
        policy.validate_session_capacity(session.total_bytes, declared_size, self.limits)
        policy.validate_mime_type(mime_type, self.limits)

        now = self.clock()
        upload = InFlightUpload(
            upload_id=self._new_upload_id(),
            session_token=session_token,
            session_expires_at=session.expires_at,
            file_name=file_name,
            declared_size=declared_size,
            mime_type=mime_type,
            created_at=now,
            last_activity_at=now,
        )
        self._uploads[upload.upload_id] = upload
        self._locks[upload.upload_id] = asyncio.Lock()

        logger.info(f"Upload {upload.upload_id} initialized: {file_name} ({declared_size} bytes) in {session_token}")
        return UploadTicket(
            upload_id=upload.upload_id,
            recommended_chunk_size=policy.recommended_chunk_size(declared_size, self.limits),
            max_chunk_size=self.limits.max_chunk_size_bytes,
        )

    async def put_chunk(self, upload_id: str, index: int, data: bytes) -> ChunkProgress:
        """Store chunk ``index``; a retransmitted index replaces the earlier bytes"""
        self._require(upload_id)
        policy.validate_chunk(index, len(data), self.limits)

        async with self._locks[upload_id]:
            upload = self._require(upload_id)
            self._check_session_live(upload)

            previous = upload.chunks.get(index)
            upload.chunks[index] = data
            if upload.bytes_received > self.limits.max_file_size_bytes:
                if previous is None:
                    del upload.chunks[index]
                else:
                    upload.chunks[index] = previous
                raise TooLarge(
                    f"Upload {upload_id} exceeds the {self.limits.max_file_size_bytes} byte file limit",
                    limit=self.limits.max_file_size_bytes,
                )
            upload.last_activity_at = self.clock()

            logger.debug(f"Chunk {index} of {upload_id}: {len(data)} bytes, {upload.progress_percent}%")
            return ChunkProgress(
                upload_id=upload_id,
                chunk_index=index,
                percent=upload.progress_percent,
                bytes_received=upload.bytes_received,
                total_bytes=upload.declared_size,
            )

    async def finalize(self, upload_id: str) -> FileRecord:
        """Assemble, store and record an upload. The upload is discarded whatever the outcome."""
        self._require(upload_id)

        async with self._locks[upload_id]:
            upload = self._require(upload_id)
            try:
                self._check_session_live(upload)

                missing = upload.missing_indices()
                if missing:
                    raise IncompleteUpload(f"Upload {upload_id} is missing chunks {missing[:20]}")
                # Senders may overshoot their declared size but never fall short of it
                if upload.bytes_received < upload.declared_size:
                    raise IncompleteUpload(
                        f"Upload {upload_id} has {upload.bytes_received} of {upload.declared_size} bytes"
                    )

                data = upload.assemble()
                policy.validate_file_size(len(data), self.limits)
                session = await self._live_session(upload.session_token)
                policy.validate_session_capacity(session.total_bytes, len(data), self.limits)

                stored = await self.storage.store(data, {
                    "session_token": upload.session_token,
                    "file_name": upload.file_name,
                    "mime_type": upload.mime_type,
                })

                record = FileRecord(
                    original_name=upload.file_name,
                    mime_type=upload.mime_type,
                    size_bytes=stored.actual_size,
                    uploaded_at=self.clock(),
                    storage_ref=stored.storage_ref,
                    checksum=stored.checksum,
                )

                def append(session: Session):
                    # Re-checked under the session lock; concurrent finalizes may have landed
                    policy.validate_session_capacity(session.total_bytes, record.size_bytes, self.limits)
                    session.add_file(record)

                try:
                    await self.store.mutate(upload.session_token, append)
                except TransferError:
                    await self._delete_stored(stored.storage_ref)
                    raise

                logger.info(f"Upload {upload_id} finalized as {record.storage_ref} ({record.size_bytes} bytes)")
                return record
            finally:
                self._discard(upload_id)

    async def _delete_stored(self, storage_ref: str):
        try:
            await self.storage.delete(storage_ref)
        except TransferError as e:
            logger.error(f"Orphaned object {storage_ref} could not be removed: {e}")

    def abandon(self, upload_id: str) -> bool:
        upload = self._discard(upload_id)
        if upload is not None:
            logger.info(f"Upload {upload_id} abandoned ({upload.bytes_received} bytes received)")
        return upload is not None

    def abandon_session(self, session_token: str) -> int:
        upload_ids = [u.upload_id for u in self._uploads.values() if u.session_token == session_token]
        for upload_id in upload_ids:
            self.abandon(upload_id)
        return len(upload_ids)

    def abandon_idle(self, timeout_seconds: int) -> List[InFlightUpload]:
        """Drop uploads that have not received a chunk within ``timeout_seconds``"""
        cutoff = self.clock() - timedelta(seconds=timeout_seconds)
        idle = [
            upload for upload_id, upload in self._uploads.items()
            if upload.last_activity_at < cutoff and not self._locks[upload_id].locked()
        ]
        for upload in idle:
            self._discard(upload.upload_id)
            logger.warning(f"Upload {upload.upload_id} abandoned after {timeout_seconds}s of inactivity")
        return idle
