import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sse_starlette.sse import EventSourceResponse

from config import RateLimits, Settings
from models.errors import TransferError, UnknownUpload
from models.upload_models import *
from services.cleanup_service import CleanupService
from services.notification_hub import NotificationHub
from services.qr_service import QRCodeService
from services.session_store import SessionStore, build_redis_client, utcnow
from services.storage_service import S3StorageService, build_s3_client
from services.transfer_coordinator import TransferCoordinator
from services.upload_tracker import UploadTracker

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "NotFound": 404,
    "SessionExpired": 410,
    "SessionAlreadyCompleted": 409,
    "InvalidDuration": 400,
    "InvalidSize": 400,
    "InvalidChunk": 400,
    "TooLarge": 413,
    "QuotaExceeded": 413,
    "Rejected": 415,
    "UnknownUpload": 404,
    "IncompleteUpload": 400,
    "StorageFailure": 502,
    "QRGenerationFailed": 500,
    "Conflict": 409,
}


class TransferServices:
    """Everything the HTTP layer needs, built once per process"""

    def __init__(self, settings: Settings, redis_client, storage, qr_service,
                 clock: Callable[[], datetime] = utcnow):
        limits = settings.limits
        self.storage = storage
        self.store = SessionStore(redis_client, limits, clock=clock)
        self.tracker = UploadTracker(self.store, storage, limits, clock=clock)
        self.hub = NotificationHub(queue_size=limits.subscriber_queue_size)
        self.coordinator = TransferCoordinator(
            self.store, self.tracker, self.hub, storage, qr_service, limits, settings.client_url
        )
        self.cleanup = CleanupService(self.coordinator, settings.cleanup_interval_seconds)


def build_services(settings: Settings) -> TransferServices:
    storage = S3StorageService(build_s3_client(settings), settings.bucket_name, settings.storage_prefix)
    return TransferServices(settings, build_redis_client(settings), storage, QRCodeService())


def http_error(error: TransferError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(error.kind, 400), detail=error.to_dict())


def get_services(request: Request) -> TransferServices:
    return request.app.state.services


def get_coordinator(request: Request) -> TransferCoordinator:
    return request.app.state.services.coordinator


def file_payload(record: FileRecord) -> dict:
    return {
        "originalName": record.original_name,
        "mimeType": record.mime_type,
        "sizeBytes": record.size_bytes,
        "uploadedAt": record.uploaded_at.isoformat(),
        "storageRef": record.storage_ref,
        "checksum": record.checksum,
    }


def session_payload(session: Session) -> dict:
    return {
        "sessionId": session.token,
        "status": session.status.value,
        "files": [file_payload(f) for f in session.files],
        "totalFiles": len(session.files),
        "totalSizeBytes": session.total_bytes,
        "createdAt": session.created_at.isoformat(),
        "expiresAt": session.expires_at.isoformat(),
    }


def event_payload(event) -> str:
    data = event.model_dump(mode="json", by_alias=True, exclude={"file"})
    if getattr(event, "file", None) is not None:
        data["file"] = file_payload(event.file)
    return json.dumps(data)


async def health(services: TransferServices = Depends(get_services)):
    """Report backing-store reachability and live counters"""
    try:
        redis_ok = await services.store.ping()
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        redis_ok = False

    return {
        "status": "healthy" if redis_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "redis": "connected" if redis_ok else "disconnected",
        "activeSessions": await services.store.count_active() if redis_ok else None,
        "activeUploads": services.tracker.active_count,
        "subscribers": services.hub.subscriber_count(),
    }


async def create_session(
    request: Request,
    payload: Optional[SessionCreateRequest] = None,
    coordinator: TransferCoordinator = Depends(get_coordinator)
):
    """Create a receiving session and its QR code"""
    try:
        created = await coordinator.create_session(payload.expiry_minutes if payload else None)
    except TransferError as e:
        raise http_error(e)

    return {
        "sessionId": created.session.token,
        "uploadUrl": created.upload_url,
        "qrCode": created.qr_code,
        "expiresAt": created.session.expires_at.isoformat(),
        "status": created.session.status.value,
    }


async def get_session(token: str, coordinator: TransferCoordinator = Depends(get_coordinator)):
    try:
        session = await coordinator.get_session(token)
    except TransferError as e:
        raise http_error(e)
    return session_payload(session)


async def delete_session(token: str, coordinator: TransferCoordinator = Depends(get_coordinator)):
    """Delete a session together with its stored files"""
    try:
        await coordinator.delete_session(token)
    except TransferError as e:
        raise http_error(e)
    return {"message": "Session deleted successfully"}


async def complete_session(token: str, coordinator: TransferCoordinator = Depends(get_coordinator)):
    """Sender is done; no further uploads are accepted"""
    try:
        session = await coordinator.complete_session(token)
    except TransferError as e:
        raise http_error(e)
    return session_payload(session)


async def get_download_url(token: str, storage_ref: str,
                           coordinator: TransferCoordinator = Depends(get_coordinator)):
    try:
        return await coordinator.get_download_url(token, storage_ref)
    except TransferError as e:
        raise http_error(e)


async def init_upload(request: Request, payload: UploadInitRequest,
                      coordinator: TransferCoordinator = Depends(get_coordinator)):
    """Initialize a chunked upload inside a session"""
    try:
        ticket = await coordinator.init_upload(
            payload.session_id, payload.file_name, payload.size, payload.mime_type
        )
    except TransferError as e:
        raise http_error(e)

    return {
        "uploadId": ticket.upload_id,
        "recommendedPartSize": ticket.recommended_chunk_size,
        "maxChunkSize": ticket.max_chunk_size,
    }


async def upload_part(
    request: Request,
    x_upload_id: str = Header(...),
    x_chunk_index: int = Header(0),
    coordinator: TransferCoordinator = Depends(get_coordinator)
):
    """Receive one raw chunk of an upload"""
    data = await request.body()
    try:
        progress = await coordinator.put_chunk(x_upload_id, x_chunk_index, data)
    except TransferError as e:
        raise http_error(e)

    return {
        "chunkIndex": progress.chunk_index,
        "bytesReceived": progress.bytes_received,
        "progress": progress.percent,
    }


async def complete_upload(request: Request, payload: UploadRefRequest,
                          coordinator: TransferCoordinator = Depends(get_coordinator)):
    """Assemble the received chunks and hand the file to storage"""
    try:
        record = await coordinator.finalize_upload(payload.upload_id)
    except TransferError as e:
        raise http_error(e)

    return {
        "message": "Upload completed successfully",
        "fileMetadata": file_payload(record),
    }


async def abort_upload(request: Request, payload: UploadRefRequest,
                       coordinator: TransferCoordinator = Depends(get_coordinator)):
    """Abort an ongoing upload"""
    if not coordinator.abandon_upload(payload.upload_id):
        raise http_error(UnknownUpload(f"Upload {payload.upload_id} not found"))
    return {"status": "aborted"}


async def session_events(
    session_id: str = Query(..., alias="sessionId"),
    services: TransferServices = Depends(get_services)
):
    """Server-sent event stream of one session's upload activity"""
    try:
        await services.coordinator.get_session(session_id)
    except TransferError as e:
        raise http_error(e)

    subscription = services.hub.subscribe(session_id)

    async def event_generator():
        try:
            yield {
                "event": "connected",
                "data": json.dumps({
                    "sessionId": session_id,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }),
            }
            async for event in subscription:
                yield {"event": event.type, "data": event_payload(event)}
        finally:
            subscription.close()

    return EventSourceResponse(event_generator(), ping=15)


def build_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        storage_uri=settings.rate_limit_storage_uri or settings.redis_url,
        default_limits=[settings.rate_limits.general],
    )


def build_router(limiter: Limiter, rate_limits: RateLimits) -> APIRouter:
    """Register the API routes with per-route rate limits bound to ``limiter``"""
    session_limit = limiter.limit(rate_limits.session_create)
    upload_limit = limiter.limit(rate_limits.upload)

    router = APIRouter()
    router.add_api_route("/health", limiter.exempt(health), methods=["GET"])
    router.add_api_route("/session", session_limit(create_session), methods=["POST"], status_code=201)
    router.add_api_route("/session/{token}", get_session, methods=["GET"])
    router.add_api_route("/session/{token}", delete_session, methods=["DELETE"])
    router.add_api_route("/session/{token}/complete", complete_session, methods=["POST"])
    router.add_api_route("/session/{token}/file/{storage_ref:path}", get_download_url, methods=["GET"])
    router.add_api_route("/upload/init", upload_limit(init_upload), methods=["POST"])
    router.add_api_route("/upload/part", upload_limit(upload_part), methods=["PUT"])
    router.add_api_route("/upload/complete", upload_limit(complete_upload), methods=["POST"])
    router.add_api_route("/upload/abort", upload_limit(abort_upload), methods=["POST"])
    router.add_api_route("/events", session_events, methods=["GET"])
    return router


def create_app(settings: Optional[Settings] = None,
               services_factory: Callable[[Settings], TransferServices] = build_services) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        services = services_factory(settings)
        app.state.services = services
        cleanup_task = asyncio.create_task(services.cleanup.start_cleanup_scheduler())

        yield

        # Shutdown
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass

    app = FastAPI(title="Reverse QR File Transfer", lifespan=lifespan)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Rate limiting
    limiter = build_limiter(settings)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.include_router(build_router(limiter, settings.rate_limits), prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
