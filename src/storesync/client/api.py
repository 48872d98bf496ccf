"""HTTP client for the PostgREST cloud backend.

This module provides:
- CloudClient: async client implementing upsert, soft delete, change
  enumeration and a connection test against the backend's table endpoints
- RemoteChange / UpsertResult / ConnectionCheck: results of those calls
- The APIError hierarchy, each error carrying its retry classification

Upsert protocol:
    PATCH {table}?id=eq.{id}       (or ?{natural_key}=eq.{value})
        rows returned      -> updated, id = rows[0].id
        204                -> updated
        [] / 404 / PGRST204 / PGRST205 -> fall through to POST
        other 4xx          -> error, no POST
    POST {table}                   (id omitted unless it is a UUID)
        rows returned      -> inserted, id = rows[0].id
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from storesync.client.fields import PayloadError, normalize_keys, prepare_outbound
from storesync.client.sync.retry import retry_with_backoff
from storesync.core.config import CloudConfig
from storesync.core.tables import DEFAULT_TABLES, TableRegistry, TableSpec
from storesync.core.timeutil import EPOCH, format_ts, is_uuid, parse_ts, utcnow
from storesync.core.types import ChangeType

logger = logging.getLogger(__name__)

# PostgREST signals meaning "no row matched" for a PATCH
NO_ROWS_CODES = ("PGRST204", "PGRST205")

# Postgres NOT NULL violation
NOT_NULL_VIOLATION = "23502"


class APIError(Exception):
    """Base exception for API errors."""

    transient = False
    retry_delay: float | None = None

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class AuthenticationError(APIError):
    """Credential rejected (401/403)."""


class NotFoundError(APIError):
    """Table or row not found (404)."""

    transient = True
    retry_delay = 2.0


class RateLimitError(APIError):
    """Too many requests (429)."""

    transient = True
    retry_delay = 60.0


class ValidationError(APIError):
    """Request rejected by the backend, or payload invalid before sending."""


class ServerError(APIError):
    """Backend failure (5xx)."""

    transient = True
    retry_delay = 10.0


class NetworkError(APIError):
    """Connection failure or timeout."""

    transient = True
    retry_delay = 5.0


@dataclass
class UpsertResult:
    """Result of an upsert.

    Attributes:
        remote_id: Identifier of the remote row, None if the backend did not
            return one.
        created: True if the row was inserted, False if updated.
    """

    remote_id: str | None
    created: bool


@dataclass
class RemoteChange:
    """A change enumerated from the backend."""

    table: str
    record_id: str
    change_type: ChangeType
    data: dict[str, Any]
    server_timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "record_id": self.record_id,
            "change_type": self.change_type.value,
            "data": self.data,
            "server_timestamp": (
                format_ts(self.server_timestamp) if self.server_timestamp else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteChange:
        """Create from a dictionary produced by to_dict."""
        return cls(
            table=data["table"],
            record_id=data["record_id"],
            change_type=ChangeType(data["change_type"]),
            data=data["data"],
            server_timestamp=parse_ts(data.get("server_timestamp")),
        )


@dataclass
class ConnectionCheck:
    """Result of a connection test."""

    ok: bool
    message: str
    status_code: int | None = None


class CloudClient:
    """Async HTTP client for the PostgREST table endpoints."""

    def __init__(
        self,
        config: CloudConfig,
        *,
        tables: TableRegistry = DEFAULT_TABLES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the cloud client.

        Args:
            config: Connection settings.
            tables: Registry of synced tables.
            transport: Optional httpx transport (used by tests).
        """
        self._config = config
        self._tables = tables
        if not config.is_secure:
            logger.warning("Cloud URL %s is not HTTPS, the API key is sent in clear", config.url)
        self._client = httpx.AsyncClient(
            base_url=f"{config.rest_url}/",
            timeout=config.write_timeout,
            headers={
                "apikey": config.api_key,
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            },
            transport=transport,
        )

    @property
    def config(self) -> CloudConfig:
        return self._config

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> CloudClient:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Async context manager exit."""
        await self.close()

    # === Response handling ===

    def _table_path(self, table: str) -> str:
        return f"{self._config.table_prefix}{table}"

    def _spec(self, table: str) -> TableSpec:
        try:
            return self._tables.get(table)
        except KeyError:
            raise ValidationError(f"Table {table} is not synced") from None

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError:
            return response.text

    @classmethod
    def _error_code(cls, response: httpx.Response) -> str | None:
        body = cls._body(response)
        if isinstance(body, dict) and body.get("code") is not None:
            return str(body["code"])
        return None

    @classmethod
    def _error_message(cls, response: httpx.Response) -> str:
        body = cls._body(response)
        if isinstance(body, dict):
            parts = [str(body[key]) for key in ("message", "details", "hint") if body.get(key)]
            if parts:
                return " - ".join(parts)
        if isinstance(body, str) and body:
            return body[:200]
        return response.reason_phrase or f"HTTP {response.status_code}"

    @classmethod
    def _is_no_rows(cls, response: httpx.Response) -> bool:
        """Check for the "no row matched" signals a PATCH may return."""
        if response.status_code == 404:
            return True
        code = cls._error_code(response)
        if code in NO_ROWS_CODES:
            return True
        proxy_status = response.headers.get("proxy-status", "")
        return any(marker in proxy_status for marker in NO_ROWS_CODES)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.is_success:
            return response
        status = response.status_code
        message = self._error_message(response)
        code = self._error_code(response)
        if status in (401, 403):
            raise AuthenticationError(f"Authentication failed: {message}", status, code)
        if status == 404:
            raise NotFoundError(message, status, code)
        if status == 429:
            raise RateLimitError(f"Rate limited: {message}", status, code)
        if status >= 500:
            raise ServerError(f"Server error: {message}", status, code)
        if code == NOT_NULL_VIOLATION:
            raise ValidationError(f"Missing required field: {message}", status, code)
        raise ValidationError(message, status, code)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                path,
                params=params,
                json=json_body,
                timeout=timeout if timeout is not None else self._config.write_timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _returned_id(body: Any) -> str | None:
        if isinstance(body, list) and body and isinstance(body[0], dict):
            body = body[0]
        if isinstance(body, dict) and body.get("id") is not None:
            return str(body["id"])
        return None

    # === Writes ===

    async def upsert(self, table: str, record_id: str, data: dict[str, Any]) -> UpsertResult:
        """Update a remote row if it exists, insert it otherwise.

        Args:
            table: Synced table name.
            record_id: Remote id when known, otherwise the local id.
            data: Record with foreign keys already translated.

        Returns:
            The remote id and whether the row was created.

        Raises:
            ValidationError: If the payload is invalid (never retried).
            APIError: If the backend keeps failing.
        """
        spec = self._spec(table)
        try:
            payload = prepare_outbound(spec, data, utcnow())
        except PayloadError as e:
            raise ValidationError(str(e)) from e

        return await retry_with_backoff(
            lambda: self._upsert_once(spec, record_id, payload),
            max_retries=self._config.max_attempts - 1,
            initial_backoff=self._config.retry_backoff,
        )

    async def _upsert_once(
        self, spec: TableSpec, record_id: str, payload: dict[str, Any]
    ) -> UpsertResult:
        path = self._table_path(spec.name)

        patch_filter: tuple[str, Any] | None = None
        if is_uuid(record_id):
            patch_filter = ("id", record_id)
        elif spec.natural_key and payload.get(spec.natural_key) not in (None, ""):
            patch_filter = (spec.natural_key, payload[spec.natural_key])

        if patch_filter is not None:
            column, value = patch_filter
            response = await self._send(
                "PATCH", path, params={column: f"eq.{value}"}, json_body=payload
            )
            if response.status_code == 204:
                return UpsertResult(record_id if is_uuid(record_id) else None, created=False)
            if response.is_success:
                remote_id = self._returned_id(self._body(response))
                if remote_id is not None:
                    logger.debug("Updated %s/%s", spec.name, remote_id)
                    return UpsertResult(remote_id, created=False)
                logger.debug("PATCH %s %s=%s matched no rows", spec.name, column, value)
            elif self._is_no_rows(response):
                logger.debug("PATCH %s %s=%s found nothing, inserting", spec.name, column, value)
            else:
                self._handle_response(response)

        body = dict(payload)
        if is_uuid(record_id):
            body["id"] = record_id
        response = self._handle_response(
            await self._send("POST", path, json_body=body)
        )
        remote_id = self._returned_id(self._body(response))
        if remote_id is None and is_uuid(record_id):
            remote_id = record_id
        logger.debug("Inserted %s/%s", spec.name, remote_id)
        return UpsertResult(remote_id, created=True)

    async def soft_delete(self, table: str, record_id: str) -> None:
        """Mark a remote row deleted.

        A row that is already gone counts as deleted.

        Raises:
            ValidationError: If record_id is not a remote id.
            APIError: If the backend keeps failing.
        """
        spec = self._spec(table)
        if not is_uuid(record_id):
            raise ValidationError(f"Cannot delete {table}/{record_id}: not a remote id")

        now = format_ts(utcnow())
        payload = {"deleted_at": now}
        if spec.has_updated_at:
            payload["updated_at"] = now

        async def attempt() -> None:
            response = await self._send(
                "PATCH",
                self._table_path(table),
                params={"id": f"eq.{record_id}"},
                json_body=payload,
            )
            if response.status_code == 404:
                logger.debug("%s/%s already absent remotely", table, record_id)
                return
            self._handle_response(response)

        await retry_with_backoff(
            attempt,
            max_retries=self._config.max_attempts - 1,
            initial_backoff=self._config.retry_backoff,
        )

    # === Change enumeration ===

    async def _fetch_all(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        page_size = self._config.page_size
        rows: list[dict[str, Any]] = []
        offset = 0
        while True:
            response = self._handle_response(
                await self._send(
                    "GET",
                    self._table_path(table),
                    params={**params, "limit": str(page_size), "offset": str(offset)},
                    timeout=self._config.read_timeout,
                )
            )
            page = self._body(response)
            if not isinstance(page, list):
                break
            rows.extend(page)
            if len(page) < page_size:
                break
            offset += page_size
        return rows

    @staticmethod
    def _to_change(spec: TableSpec, row: dict[str, Any], change_type: ChangeType) -> RemoteChange:
        data = normalize_keys(row)
        if change_type is ChangeType.DELETE:
            timestamp = parse_ts(data.get("deleted_at"))
        else:
            timestamp = parse_ts(data.get(spec.change_column)) or parse_ts(data.get("created_at"))
        return RemoteChange(
            table=spec.name,
            record_id=str(data.get("id")),
            change_type=change_type,
            data=data,
            server_timestamp=timestamp,
        )

    async def get_changes(self, since: datetime | None = None) -> list[RemoteChange]:
        """Enumerate remote changes since a checkpoint.

        Tables come in dependency order; within a table, active rows in
        change order followed by deleted rows.

        Args:
            since: Checkpoint; None enumerates everything.

        Returns:
            Remote changes, normalized to snake_case records.

        Raises:
            APIError: On any failure other than a missing table.
        """
        since_ts = format_ts(since or EPOCH)
        changes: list[RemoteChange] = []

        for spec in self._tables:
            active: dict[str, str] = {
                "select": "*",
                "deleted_at": "is.null",
                "order": f"{spec.change_column}.asc",
            }
            if spec.has_updated_at:
                active["or"] = f"(updated_at.gt.{since_ts},created_at.gt.{since_ts})"
            else:
                active[spec.change_column] = f"gt.{since_ts}"

            try:
                rows = await self._fetch_all(spec.name, active)
            except NotFoundError:
                logger.info("Table %s not provisioned remotely, skipping", spec.name)
                continue
            changes.extend(self._to_change(spec, row, ChangeType.UPDATE) for row in rows)

            deleted = {
                "select": "*",
                "deleted_at": f"gt.{since_ts}",
                "order": "deleted_at.asc",
            }
            try:
                rows = await self._fetch_all(spec.name, deleted)
            except NotFoundError:
                continue
            except ValidationError as e:
                if e.status_code != 400:
                    raise
                logger.debug("Table %s has no deleted_at remotely: %s", spec.name, e)
                continue
            changes.extend(self._to_change(spec, row, ChangeType.DELETE) for row in rows)

        logger.info("Fetched %d remote changes since %s", len(changes), since_ts)
        return changes

    # === Health ===

    async def test_connection(self) -> ConnectionCheck:
        """Check that the backend is reachable and accepts the credential."""
        try:
            response = await self._send(
                "GET",
                self._table_path("customers"),
                params={"limit": "0"},
                timeout=self._config.connect_timeout,
            )
        except NetworkError as e:
            return ConnectionCheck(False, str(e))
        try:
            self._handle_response(response)
        except APIError as e:
            return ConnectionCheck(False, str(e), e.status_code)
        return ConnectionCheck(True, "Connected", response.status_code)
