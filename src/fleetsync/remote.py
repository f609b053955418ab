"""Remote document store interface and its HTTP implementation."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp
from pydantic import ValidationError

from fleetsync._constants import USER_AGENT
from fleetsync._redact import redact_for_log
from fleetsync.config import SyncConfig
from fleetsync.exceptions import (
    FleetSyncConflictError,
    FleetSyncNotFoundError,
    FleetSyncOfflineError,
    FleetSyncServerError,
    FleetSyncTimeoutError,
)
from fleetsync.models.record import Record

_logger = logging.getLogger(__name__)


class RemoteStore(Protocol):
    """Structural interface of the hosted document store.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (:class:`HttpRemoteStore`) concrete.
    Implementations raise :class:`~fleetsync.exceptions.FleetSyncOfflineError`,
    :class:`~fleetsync.exceptions.FleetSyncTimeoutError` or
    :class:`~fleetsync.exceptions.FleetSyncServerError` (and the not-found /
    conflict variants) so the reconciler can choose its fallback.
    """

    async def create(
        self,
        collection: str,
        record: Record,
        *,
        timeout: float,
        idempotency_key: str | None = None,
    ) -> Record:
        """Commit a new record and return it under its canonical id."""
        ...

    async def update(self, collection: str, record: Record, *, timeout: float) -> Record:
        ...

    async def delete(self, collection: str, record_id: str, *, timeout: float) -> None:
        ...

    async def query(self, collection: str, owner_id: str, *, timeout: float) -> list[Record]:
        ...


class HttpRemoteStore:
    """REST/JSON document store client over aiohttp.

    Routes::

        POST   {base}/{collection}          create (Idempotency-Key header)
        PUT    {base}/{collection}/{id}     update
        DELETE {base}/{collection}/{id}     delete
        GET    {base}/{collection}?ownerId= query
    """

    def __init__(self, config: SyncConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers: dict[str, str] = {
            "accept": "application/json",
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        if self._config.api_token:
            headers["authorization"] = f"Bearer {self._config.api_token}"
        if extra:
            headers.update(extra)
        return headers

    def _url(self, collection: str, record_id: str | None = None) -> str:
        base = self._config.base_url.rstrip("/")
        if record_id is None:
            return f"{base}/{collection}"
        return f"{base}/{collection}/{record_id}"

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        timeout: float,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Perform one call and return its decoded JSON body (``None`` when empty)."""
        _logger.debug("%s %s body=%s", method, endpoint, redact_for_log(body))
        data = json.dumps(body, separators=(",", ":")) if body is not None else None
        try:
            async with self._http.request(
                method,
                endpoint,
                data=data,
                params=params,
                headers=self._headers(headers),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                text = await resp.text()
                status = resp.status
        except TimeoutError as exc:
            raise FleetSyncTimeoutError(
                f"{method} {endpoint} exceeded {timeout:.1f}s",
                endpoint=endpoint,
            ) from exc
        except aiohttp.ClientConnectionError as exc:
            raise FleetSyncOfflineError(
                f"{method} {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc
        except aiohttp.ClientError as exc:
            raise FleetSyncServerError(
                f"{method} {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc

        if status == 404:
            raise FleetSyncNotFoundError(f"{method} {endpoint}: not found", status_code=status, endpoint=endpoint)
        if status == 409:
            raise FleetSyncConflictError(
                f"{method} {endpoint}: conflict: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            )
        if not 200 <= status < 300:
            raise FleetSyncServerError(
                f"HTTP {status} from {method} {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            )

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise FleetSyncServerError(
                f"Invalid JSON from {method} {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            ) from exc

    @staticmethod
    def _to_record(collection: str, endpoint: str, payload: Any, fallback: Record | None = None) -> Record:
        if isinstance(payload, dict) and isinstance(payload.get("document"), dict):
            payload = payload["document"]
        if not isinstance(payload, dict):
            if fallback is not None:
                return fallback
            raise FleetSyncServerError(f"Missing document in response from {endpoint}", endpoint=endpoint)
        merged = fallback.to_document() if fallback is not None else {}
        merged.update(payload)
        merged.setdefault("collection", collection)
        try:
            return Record.model_validate(merged)
        except ValidationError as exc:
            raise FleetSyncServerError(f"Malformed document from {endpoint}: {exc}", endpoint=endpoint) from exc

    async def create(
        self,
        collection: str,
        record: Record,
        *,
        timeout: float,
        idempotency_key: str | None = None,
    ) -> Record:
        endpoint = self._url(collection)
        body = record.to_document()
        # The store assigns the canonical id; the local id is never sent.
        body.pop("id", None)
        extra = {"idempotency-key": idempotency_key} if idempotency_key else None
        response = await self._request("POST", endpoint, timeout=timeout, body=body, headers=extra)
        if not isinstance(response, dict) or not (response.get("id") or _nested_id(response)):
            raise FleetSyncServerError(f"Create on {endpoint} returned no canonical id", endpoint=endpoint)
        return self._to_record(collection, endpoint, response, fallback=record)

    async def update(self, collection: str, record: Record, *, timeout: float) -> Record:
        endpoint = self._url(collection, record.id)
        response = await self._request("PUT", endpoint, timeout=timeout, body=record.to_document())
        return self._to_record(collection, endpoint, response, fallback=record)

    async def delete(self, collection: str, record_id: str, *, timeout: float) -> None:
        await self._request("DELETE", self._url(collection, record_id), timeout=timeout)

    async def query(self, collection: str, owner_id: str, *, timeout: float) -> list[Record]:
        endpoint = self._url(collection)
        response = await self._request("GET", endpoint, timeout=timeout, params={"ownerId": owner_id})
        items = response.get("documents") if isinstance(response, dict) else response
        if not isinstance(items, list):
            raise FleetSyncServerError(f"Expected a document list from {endpoint}", endpoint=endpoint)
        records: list[Record] = []
        for item in items:
            try:
                records.append(self._to_record(collection, endpoint, item))
            except FleetSyncServerError:
                _logger.debug("Skipping malformed %s document from %s", collection, endpoint, exc_info=True)
        _logger.debug("Fetched %d %s documents for owner %s", len(records), collection, owner_id)
        return records


def _nested_id(response: dict[str, Any]) -> Any:
    document = response.get("document")
    return document.get("id") if isinstance(document, dict) else None
