"""ntfy.sh notifications for sync problems."""

import asyncio
import logging
from collections.abc import Callable

import httpx

from fieldsync import __version__
from fieldsync.config import FieldSyncConfig
from fieldsync.core import events
from fieldsync.core.events import ContinuityChanged, ErrorEvent, EventBus

logger = logging.getLogger(__name__)


class NtfyNotifier:
    """Sends notifications via ntfy.sh service."""

    def __init__(self, config: FieldSyncConfig, client: httpx.Client | None = None):
        self.config = config
        self.topic_url = config.ntfy_topic
        self.client = client or httpx.Client(
            timeout=config.ntfy_request_timeout,
            headers={"User-Agent": f"FieldSync/{__version__}"},
        )

    def send_notification(
        self,
        message: str,
        title: str | None = None,
        priority: str = "default",
        tags: str | None = None,
    ) -> bool:
        """Send a notification via ntfy."""
        if not self.topic_url:
            logger.debug("No ntfy topic configured, skipping notification")
            return False

        headers = {}
        if title:
            headers["Title"] = title.encode("ascii", errors="ignore").decode("ascii")
        if priority != "default":
            headers["Priority"] = priority
        if tags:
            headers["Tags"] = tags

        try:
            response = self.client.post(
                self.topic_url,
                content=message.encode("utf-8"),
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Notification service error %s: %s",
                e.response.status_code,
                e.response.text,
            )
            return False
        except httpx.HTTPError as e:
            logger.warning("Failed to send notification: %s", e)
            return False

        logger.debug("Sent notification: %s", title or message[:50])
        return True

    def notify_sync_completed(self, synced: int, failed: int, message: str) -> bool:
        if failed == 0:
            return self.send_notification(
                f"{synced} operations uploaded",
                title="Sync Complete",
                tags="fieldsync,sync,completed",
            )
        return self.send_notification(
            message,
            title="Sync Complete (with failures)",
            priority="high",
            tags="fieldsync,sync,warning",
        )

    def notify_continuity_lost(self) -> bool:
        return self.send_notification(
            "Cached reference data is missing or too old to keep working offline",
            title="Offline Data Unavailable",
            priority="high",
            tags="fieldsync,cache,warning",
        )

    def notify_error(self, error_message: str, context: str | None = None) -> bool:
        """Send error notification."""
        message = f"Error: {error_message}"
        if context:
            message += f"\nContext: {context}"

        return self.send_notification(
            message,
            title="FieldSync Error",
            priority="high",
            tags="fieldsync,error,alert",
        )

    def test_notification(self) -> bool:
        """Send a test notification."""
        return self.send_notification(
            "FieldSync notification system is working correctly!",
            title="Test Notification",
            tags="fieldsync,test",
        )

    def close(self) -> None:
        self.client.close()


class NotificationService:
    """Forwards selected bus events to ntfy without blocking the event loop."""

    def __init__(self, config: FieldSyncConfig, notifier: NtfyNotifier | None = None):
        self.config = config
        self.notifier = notifier or NtfyNotifier(config)
        self._unsubscribers: list[Callable[[], None]] = []

    def attach(self, bus: EventBus) -> None:
        self._unsubscribers = [
            bus.subscribe(events.SYNC_COMPLETED, self._on_sync_completed),
            bus.subscribe(events.SYNC_ERROR, self._on_error),
            bus.subscribe(events.PROCESSING_ERROR, self._on_error),
            bus.subscribe(events.CONTINUITY_CHANGED, self._on_continuity_changed),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _dispatch(self, fn: Callable[..., bool], *args: object) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            fn(*args)
            return
        loop.run_in_executor(None, fn, *args)

    def _on_sync_completed(self, result) -> None:
        synced = result.registrations_synced + result.verifications_synced
        synced += result.record_updates_synced
        if synced == 0 and result.total_failed == 0:
            return
        self._dispatch(
            self.notifier.notify_sync_completed,
            synced,
            result.total_failed,
            result.message,
        )

    def _on_error(self, event: ErrorEvent) -> None:
        self._dispatch(self.notifier.notify_error, event.message, event.source)

    def _on_continuity_changed(self, event: ContinuityChanged) -> None:
        if event.previous is True and not event.ready:
            self._dispatch(self.notifier.notify_continuity_lost)
