# services/cleanup_service.py
import asyncio
import logging

from models.errors import TransferError
from services.transfer_coordinator import TransferCoordinator

logger = logging.getLogger(__name__)


class CleanupService:
    def __init__(self, coordinator: TransferCoordinator, interval_seconds: int = 60):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds

    async def start_cleanup_scheduler(self):
        """Start the cleanup scheduler"""
        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)

            except asyncio.CancelledError:
                logger.info("Cleanup scheduler cancelled")
                break
            except Exception as e:
                logger.error(f"Error in cleanup scheduler: {e}")
                await asyncio.sleep(min(60, self.interval_seconds))

    async def run_once(self) -> dict:
        """One sweep: expired sessions first, then idle uploads"""
        expired = await self.cleanup_expired_sessions()
        idle = self.cleanup_idle_uploads()
        return {"expired_sessions": expired, "idle_uploads": idle}

    async def cleanup_expired_sessions(self) -> int:
        try:
            cleaned = await self.coordinator.sweep_expired()
        except TransferError as e:
            logger.error(f"Error during session cleanup: {e}")
            return 0

        if cleaned:
            logger.info(f"Session cleanup completed. Cleaned {cleaned} sessions")
        return cleaned

    def cleanup_idle_uploads(self) -> int:
        abandoned = self.coordinator.abandon_idle_uploads()
        if abandoned:
            logger.info(f"Abandoned {abandoned} idle uploads")
        return abandoned
