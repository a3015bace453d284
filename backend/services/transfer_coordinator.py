# services/transfer_coordinator.py
import logging
from typing import Optional

from config import TransferLimits
from models.errors import (
    SessionAlreadyCompleted, SessionExpired, SessionNotFound, TransferError,
)
from models.events import (
    SessionCompleted, UploadComplete, UploadError, UploadProgress, UploadStarted,
)
from models.upload_models import (
    ChunkProgress, CreatedSession, FileRecord, Session, SessionStatus, UploadTicket,
)
from services.notification_hub import NotificationHub
from services.session_store import SessionStore
from services.upload_tracker import UploadTracker

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    SessionStatus.WAITING: {SessionStatus.UPLOADING, SessionStatus.COMPLETED},
    SessionStatus.UPLOADING: {SessionStatus.UPLOADING, SessionStatus.COMPLETED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.EXPIRED: set(),
}


def transition(session: Session, target: SessionStatus) -> Session:
    if session.status == SessionStatus.EXPIRED:
        raise SessionExpired(f"Session {session.token} has expired")
    if target not in ALLOWED_TRANSITIONS[session.status]:
        if session.status == SessionStatus.COMPLETED:
            raise SessionAlreadyCompleted(f"Session {session.token} is already completed")
        raise ValueError(f"Illegal transition {session.status.value} -> {target.value}")
    session.status = target
    return session


class TransferCoordinator:
    """Drives a session from creation to completion.

    Every state change goes through the session store and is announced on the
    notification hub, so viewers subscribed to a token see uploads as they happen.
    """

    def __init__(self, store: SessionStore, tracker: UploadTracker, hub: NotificationHub,
                 storage, qr_service, limits: TransferLimits, public_base_url: str):
        self.store = store
        self.tracker = tracker
        self.hub = hub
        self.storage = storage
        self.qr_service = qr_service
        self.limits = limits
        self.public_base_url = public_base_url.rstrip("/")

    def upload_url(self, token: str) -> str:
        return f"{self.public_base_url}/send/{token}"

    async def create_session(self, requested_ttl_minutes: Optional[int] = None) -> CreatedSession:
        if requested_ttl_minutes is None:
            requested_ttl_minutes = self.limits.default_ttl_minutes

        session = await self.store.create(requested_ttl_minutes)
        upload_url = self.upload_url(session.token)
        try:
            qr_code = self.qr_service.render_data_url(upload_url)
        except TransferError:
            await self.store.delete(session.token)
            raise

        return CreatedSession(session=session, upload_url=upload_url, qr_code=qr_code)

    async def get_session(self, token: str) -> Session:
        return await self.store.get(token)

    async def init_upload(self, token: str, file_name: str, size: int, mime_type: str) -> UploadTicket:
        ticket = await self.tracker.init(token, file_name, size, mime_type)
        try:
            await self.store.mutate(token, lambda s: transition(s, SessionStatus.UPLOADING))
        except TransferError:
            self.tracker.abandon(ticket.upload_id)
            raise

        self.hub.publish(token, UploadStarted(
            session_token=token,
            upload_id=ticket.upload_id,
            file_name=file_name,
            size=size,
        ))
        return ticket

    async def put_chunk(self, upload_id: str, index: int, data: bytes) -> ChunkProgress:
        token = self.tracker.get(upload_id).session_token
        try:
            progress = await self.tracker.put_chunk(upload_id, index, data)
        except SessionExpired as e:
            self._publish_error(token, upload_id, e)
            raise

        self.hub.publish(token, UploadProgress(
            session_token=token,
            upload_id=upload_id,
            percent=progress.percent,
            bytes_received=progress.bytes_received,
            total_bytes=progress.total_bytes,
        ))
        return progress

    async def finalize_upload(self, upload_id: str) -> FileRecord:
        token = self.tracker.get(upload_id).session_token
        try:
            record = await self.tracker.finalize(upload_id)
        except TransferError as e:
            self._publish_error(token, upload_id, e)
            raise

        self.hub.publish(token, UploadComplete(session_token=token, upload_id=upload_id, file=record))
        return record

    def abandon_upload(self, upload_id: str) -> bool:
        return self.tracker.abandon(upload_id)

    def _publish_error(self, token: str, upload_id: str, error: TransferError):
        logger.warning(f"Upload {upload_id} in {token} failed: {error.kind}: {error.message}")
        self.hub.publish(token, UploadError(session_token=token, upload_id=upload_id, reason=error.kind))

    async def complete_session(self, token: str) -> Session:
        """Sender signals that no more files will follow"""
        session = await self.store.mutate(token, lambda s: transition(s, SessionStatus.COMPLETED))

        self.hub.publish(token, SessionCompleted(
            session_token=token,
            total_files=len(session.files),
            total_bytes=session.total_bytes,
        ))
        logger.info(f"Session {token} completed with {len(session.files)} files ({session.total_bytes} bytes)")
        return session

    async def get_download_url(self, token: str, storage_ref: str) -> dict:
        session = await self.store.get(token)
        record = next((f for f in session.files if f.storage_ref == storage_ref), None)
        if record is None:
            raise SessionNotFound(f"File {storage_ref} not found in session {token}")
        return {
            "signedUrl": self.storage.presigned_url(record.storage_ref, record.original_name),
            "fileName": record.original_name,
            "mimeType": record.mime_type,
            "sizeBytes": record.size_bytes,
        }

    async def _release(self, session: Session):
        # Storage cleanup is per object; one failure does not stop the rest
        for record in session.files:
            try:
                await self.storage.delete(record.storage_ref)
            except TransferError as e:
                logger.error(f"Failed to delete {record.storage_ref} for session {session.token}: {e}")
        self.tracker.abandon_session(session.token)
        self.hub.close_session(session.token)

    async def delete_session(self, token: str) -> Session:
        session = await self.store.delete(token)
        if session is None:
            raise SessionNotFound(f"Session {token} not found")
        await self._release(session)
        return session

    async def sweep_expired(self) -> int:
        expired = await self.store.sweep_expired()
        for session in expired:
            await self._release(session)
        return len(expired)

    def abandon_idle_uploads(self) -> int:
        idle = self.tracker.abandon_idle(self.limits.upload_inactivity_timeout_seconds)
        for upload in idle:
            self.hub.publish(upload.session_token, UploadError(
                session_token=upload.session_token,
                upload_id=upload.upload_id,
                reason="UploadTimedOut",
            ))
        return len(idle)
