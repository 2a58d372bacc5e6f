"""Transport to the server of record: batch upload and reference data download."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from fieldsync import __version__
from fieldsync.error_handling import ServerError, TransientNetworkError
from fieldsync.queue.models import OperationType

if TYPE_CHECKING:
    from fieldsync.config import FieldSyncConfig
    from fieldsync.services.network import NetworkListener, NetworkMonitor

logger = logging.getLogger(__name__)

UPLOAD_ENDPOINTS: dict[OperationType, tuple[str, str]] = {
    OperationType.REGISTRATION: ("v1/sync/registrations", "registrations"),
    OperationType.VERIFICATION: ("v1/sync/verifications", "verifications"),
    OperationType.RECORD_UPDATE: ("v1/sync/record-updates", "records"),
}

ORGANIZATIONS_ENDPOINT = "v1/operator/colleges"
PEOPLE_ENDPOINT = "v1/operator/students"


@dataclass
class ItemOutcome:
    """Server verdict for one uploaded item, keyed by roll number."""

    natural_key: str
    status: str
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status.lower() == "success"


@dataclass
class UploadResponse:
    success: bool
    message: str = ""
    total: int = 0
    successful: int = 0
    failed: int = 0
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadResponse:
        results = data.get("results") or {}
        outcomes = [
            ItemOutcome(
                natural_key=str(detail.get("roll_number", "")),
                status=str(detail.get("status", "")),
                error=detail.get("error"),
            )
            for detail in results.get("details") or []
        ]
        return cls(
            success=bool(data.get("success", False)),
            message=data.get("message") or "",
            total=int(results.get("total", len(outcomes))),
            successful=int(results.get("successful", 0)),
            failed=int(results.get("failed", 0)),
            outcomes=outcomes,
        )


class SyncTransport(Protocol):
    """What the sync engine needs from the network layer."""

    @property
    def is_online(self) -> bool: ...

    def add_network_listener(self, listener: NetworkListener) -> None: ...

    async def upload_batch(
        self,
        kind: OperationType,
        items: list[dict[str, Any]],
    ) -> UploadResponse: ...

    async def download_reference_data(self, scope_id: str) -> list[dict[str, Any]]: ...

    async def download_organizations(self) -> list[dict[str, Any]]: ...


class HttpTransport:
    """httpx-based transport with request-level retry.

    Connection errors, timeouts and 5xx responses are retried with
    exponential backoff. 4xx responses are not retried. When connection
    attempts are exhausted a TransientNetworkError is raised and the
    network monitor is flipped offline.
    """

    def __init__(
        self,
        config: FieldSyncConfig,
        monitor: NetworkMonitor,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.monitor = monitor
        self._client = client
        self._owns_client = client is None

    @property
    def is_online(self) -> bool:
        return self.monitor.is_online

    def add_network_listener(self, listener: NetworkListener) -> None:
        self.monitor.add_listener(listener)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "Accept": "application/json",
                "User-Agent": f"FieldSync/{__version__}",
            }
            if self.config.api_token:
                headers["Authorization"] = f"Bearer {self.config.api_token}"
            self._client = httpx.AsyncClient(
                base_url=f"{self.config.api_url}/",
                timeout=self.config.request_timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _backoff(self, attempt: int) -> float:
        delay = self.config.http_base_delay_seconds * (2**attempt)
        return min(delay, self.config.http_max_delay_seconds)

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = self._get_client()
        max_retries = self.config.http_max_retries

        for attempt in range(max_retries + 1):
            try:
                response = await client.request(method, endpoint, json=json, params=params)
            except httpx.TransportError as e:
                if attempt < max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Request to %s failed (%s), retrying in %.1fs",
                        endpoint,
                        e,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                self.monitor.set_online(False)
                msg = f"Could not reach server for {endpoint}"
                raise TransientNetworkError(
                    msg,
                    details=str(e),
                    original_error=e,
                ) from e

            if response.status_code >= 500 and attempt < max_retries:
                delay = self._backoff(attempt)
                logger.warning(
                    "Server error %s from %s, retrying in %.1fs",
                    response.status_code,
                    endpoint,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            return self._parse_response(endpoint, response)

        msg = f"Request to {endpoint} was not attempted"
        raise TransientNetworkError(msg)

    def _parse_response(self, endpoint: str, response: httpx.Response) -> dict[str, Any]:
        self.monitor.set_online(True)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            solution = None
            if response.status_code in (401, 403):
                solution = "Check the api_token in your configuration"
            msg = f"Server rejected request to {endpoint}"
            raise ServerError(
                msg,
                status_code=response.status_code,
                details=response.text[:500] or None,
                solution=solution,
                recoverable=response.status_code >= 500,
                original_error=e,
            ) from e

        try:
            data = response.json()
        except ValueError as e:
            msg = f"Server returned invalid JSON for {endpoint}"
            raise ServerError(msg, status_code=response.status_code, original_error=e) from e
        if not isinstance(data, dict):
            msg = f"Unexpected response shape from {endpoint}"
            raise ServerError(msg, status_code=response.status_code)
        return data

    async def upload_batch(
        self,
        kind: OperationType,
        items: list[dict[str, Any]],
    ) -> UploadResponse:
        """Upload one batch of serialized operations and return per-item outcomes."""
        endpoint, key = UPLOAD_ENDPOINTS[kind]
        data = await self._request("POST", endpoint, json={key: items})
        response = UploadResponse.from_dict(data)

        if not response.success and not response.outcomes:
            raise ServerError(response.message or "Batch sync failed")

        logger.info(
            "Uploaded %s %s items: %s successful, %s failed",
            len(items),
            kind.value,
            response.successful,
            response.failed,
        )
        return response

    async def download_organizations(self) -> list[dict[str, Any]]:
        data = await self._request("GET", ORGANIZATIONS_ENDPOINT)
        if data.get("success") is False:
            raise ServerError(data.get("message") or "Failed to download organizations")
        return list(data.get("colleges") or [])

    async def download_reference_data(self, scope_id: str) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            PEOPLE_ENDPOINT,
            params={"college_id": scope_id},
        )
        if data.get("success") is False:
            raise ServerError(
                data.get("message") or f"Failed to download people for {scope_id}",
            )
        return list(data.get("students") or [])
