"""
Remote warehouse system access.

RemoteSyncSource is the only contract the engine needs from the external
shipment system: a paginated "list since checkpoint" and a single-record
fetch. WarehouseClient implements it over a JSON/HTTP API with httpx.

Error mapping (so RetryPolicy can classify failures):
  - transport errors, timeouts, 408, 429, 5xx  -> RemoteUnavailable (retryable)
  - any other non-2xx                          -> RemoteRejected (terminal)
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from yardsync.sync.errors import RemoteRejected, RemoteUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429}


@dataclass
class RemotePage:
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_page_token: Optional[str] = None
    total_hint: Optional[int] = None


class RemoteSyncSource(Protocol):
    async def list_since(self, filter_key: str, page_token: Optional[str] = None) -> RemotePage:
        ...

    async def fetch_one(self, external_id: str) -> Dict[str, Any]:
        ...


class WarehouseClient:
    """
    Thin async client for the warehouse system's shipment endpoints.

    Usage:
        async with WarehouseClient(base_url, token) as client:
            page = await client.list_since("Acme Supplies")
    """

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        timeout_seconds: float = 30.0,
        page_size: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API root, e.g. "https://warehouse.example.com/api".
            api_token: Bearer token; omitted from requests when empty.
            timeout_seconds: Hard per-request timeout.
            page_size: Records requested per list page.
            transport: Optional httpx transport (tests pass httpx.MockTransport).
        """
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self.page_size = page_size
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "WarehouseClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def list_since(self, filter_key: str, page_token: Optional[str] = None) -> RemotePage:
        """Fetch one page of shipments for a supplier filter."""
        params: Dict[str, Any] = {"supplier": filter_key, "limit": self.page_size}
        if page_token:
            params["page_token"] = page_token
        body = await self._get("/shipments", params=params)

        records = body.get("shipments") if isinstance(body, dict) else body
        if not isinstance(records, list):
            raise RemoteRejected("Malformed shipment list response")
        if not isinstance(body, dict):
            return RemotePage(records=records)

        total = body.get("total")
        return RemotePage(
            records=records,
            next_page_token=body.get("next_page_token") or None,
            total_hint=int(total) if total is not None else None,
        )

    async def fetch_one(self, external_id: str) -> Dict[str, Any]:
        """Fetch one shipment by its remote id."""
        body = await self._get(f"/shipments/{external_id}")
        if not isinstance(body, dict):
            raise RemoteRejected(f"Malformed shipment response for {external_id}")
        return body

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._http.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise RemoteUnavailable(f"Timed out calling {path}") from exc
        except httpx.TransportError as exc:
            raise RemoteUnavailable(f"Could not reach warehouse system: {exc}") from exc

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES or status >= 500:
            raise RemoteUnavailable(f"Warehouse system returned {status} for {path}")
        if status >= 400:
            raise RemoteRejected(
                f"Warehouse system rejected {path}: {status}", status_code=status
            )

        try:
            return response.json()
        except ValueError as exc:
            raise RemoteRejected(f"Invalid JSON from {path}") from exc
