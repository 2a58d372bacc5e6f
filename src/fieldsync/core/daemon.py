"""Foreground service runner for FieldSync."""

import asyncio
import logging
import signal
from collections.abc import Callable

from ..config import FieldSyncConfig
from ..process_lock import ProcessLock
from .client import OfflineClient

logger = logging.getLogger(__name__)


class FieldSyncDaemon:
    """Runs the offline client until SIGINT or SIGTERM."""

    def __init__(
        self,
        config: FieldSyncConfig,
        client_factory: Callable[[FieldSyncConfig], OfflineClient] = OfflineClient,
    ):
        self.config = config
        self.client_factory = client_factory
        self.client: OfflineClient | None = None
        self.lock: ProcessLock | None = None
        self._stop_event: asyncio.Event | None = None

    def run(self) -> None:
        """Acquire the instance lock and serve until asked to stop."""
        self.config.ensure_directories()
        self.lock = ProcessLock(self.config)
        if not self.lock.acquire():
            msg = "Failed to acquire process lock - another instance may be running"
            raise RuntimeError(msg)

        try:
            asyncio.run(self.serve())
        finally:
            self.lock.release()

    async def serve(self) -> None:
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers not available for %s", sig)

        self.client = self.client_factory(self.config)
        try:
            await self.client.start()
            logger.info("FieldSync service running")
            await self._stop_event.wait()
        except Exception as e:
            logger.exception("Error in service: %s", e)
            raise
        finally:
            await self.client.stop()
            self.client.close()
            logger.info("FieldSync service stopped")

    def _handle_signal(self, signum: int) -> None:
        logger.info("Received signal %s, stopping service", signum)
        self.stop()

    def stop(self) -> None:
        """Request shutdown."""
        if self._stop_event is not None:
            self._stop_event.set()
