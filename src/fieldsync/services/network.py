"""Connectivity monitoring against the server's health endpoint."""

import asyncio
import logging
from collections.abc import Callable

import httpx

from fieldsync.config import FieldSyncConfig

logger = logging.getLogger(__name__)

NetworkListener = Callable[[bool, bool], None]


class NetworkMonitor:
    """Tracks whether the server is reachable and reports transitions.

    Listeners are called as ``listener(was_online, is_online)`` only when
    the state actually changes.
    """

    def __init__(
        self,
        config: FieldSyncConfig,
        client: httpx.AsyncClient | None = None,
        *,
        initially_online: bool = False,
    ):
        self.config = config
        self._client = client
        self._is_online = initially_online
        self._listeners: list[NetworkListener] = []
        self._task: asyncio.Task | None = None

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def health_url(self) -> str:
        return f"{self.config.api_url}/{self.config.health_endpoint.lstrip('/')}"

    def add_listener(self, listener: NetworkListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: NetworkListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_online(self, is_online: bool) -> None:
        """Record the current state and notify listeners on change."""
        was_online = self._is_online
        if was_online == is_online:
            return

        self._is_online = is_online
        if is_online:
            logger.info("Network connectivity restored")
        else:
            logger.warning("Network connectivity lost")

        for listener in list(self._listeners):
            try:
                listener(was_online, is_online)
            except Exception:
                logger.exception("Network listener failed")

    async def check_now(self) -> bool:
        """Probe the health endpoint once and update the state."""
        try:
            if self._client is not None:
                response = await self._client.get(self.health_url)
            else:
                async with httpx.AsyncClient(
                    timeout=self.config.request_timeout,
                ) as client:
                    response = await client.get(self.health_url)
            online = response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug("Health check failed: %s", e)
            online = False

        self.set_online(online)
        return online

    async def start(self) -> None:
        """Run an initial probe and keep polling in the background."""
        if self._task is not None:
            return
        await self.check_now()
        self._task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.config.network_check_interval_seconds)
            try:
                await self.check_now()
            except Exception:
                logger.exception("Error in network monitor")
