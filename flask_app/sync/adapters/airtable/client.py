"""
Minimal Airtable REST client.

Covers base discovery (``meta/bases``), table schemas
(``meta/bases/{id}/tables``) and record listing with ``filterByFormula`` and
offset pagination. Every request passes through the shared rate limiter keyed
by base id, and 429/5xx responses back off (honoring ``Retry-After``) before
typed errors are raised.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Optional

import requests

from ..errors import ApiError, RateLimitError, SourceTimeoutError, parse_retry_after

logger = logging.getLogger(__name__)

API_URL = "https://api.airtable.com/v0"
DEFAULT_PAGE_SIZE = 100


class AirtableApiError(ApiError):
    """Airtable returned a non-retryable error."""


@dataclass(frozen=True)
class FieldSchema:
    id: str
    name: str
    type: str


@dataclass(frozen=True)
class TableSchema:
    id: str
    name: str
    fields: tuple[FieldSchema, ...]


@dataclass(frozen=True)
class SourceRecord:
    id: str
    fields: Mapping[str, Any]
    created_time: str | None = None


class AirtableClient:
    """HTTP client for the Airtable REST and metadata APIs."""

    def __init__(
        self,
        token: str,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = API_URL,
        timeout_s: float = 30,
        max_retries: int = 6,
        min_backoff_s: float = 0.8,
        max_backoff_s: float = 20.0,
        rate_limiter=None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._max_retries = max_retries
        self._min_backoff_s = min_backoff_s
        self._max_backoff_s = max_backoff_s
        self._session = session or requests.Session()
        self._rate_limiter = rate_limiter
        self._sleep = sleep_fn

    # Discovery ------------------------------------------------------------

    def iter_bases(self) -> Iterator[dict[str, Any]]:
        url = f"{self._base_url}/meta/bases"
        offset: str | None = None
        while True:
            query: list[tuple[str, Any]] = []
            if offset:
                query.append(("offset", offset))
            payload = self._request_json("GET", url, query=query, resource="meta")
            for base in payload.get("bases") or []:
                yield base
            offset = payload.get("offset")
            if not offset:
                break

    def list_ids_with_names(self) -> list[dict[str, str]]:
        """Return ``[{"id": ..., "name": ...}]`` for every base the token can see."""
        results: list[dict[str, str]] = []
        for base in self.iter_bases():
            base_id = base.get("id")
            if not base_id:
                continue
            results.append({"id": str(base_id), "name": str(base.get("name") or base_id)})
        return results

    # Schema and records ---------------------------------------------------

    def get_schema(self, base_id: str) -> dict[str, TableSchema]:
        url = f"{self._base_url}/meta/bases/{base_id}/tables"
        payload = self._request_json("GET", url, query=[], resource=base_id)
        tables: dict[str, TableSchema] = {}
        for table in payload.get("tables") or []:
            table_id = table.get("id")
            if not table_id:
                continue
            fields = tuple(
                FieldSchema(id=str(field["id"]), name=str(field.get("name") or ""), type=str(field.get("type") or ""))
                for field in table.get("fields") or []
                if field.get("id")
            )
            tables[str(table_id)] = TableSchema(id=str(table_id), name=str(table.get("name") or table_id), fields=fields)
        return tables

    def list_records(
        self,
        base_id: str,
        table_id: str,
        *,
        filter_formula: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Iterator[SourceRecord]:
        url = f"{self._base_url}/{base_id}/{table_id}"
        offset: str | None = None
        while True:
            query: list[tuple[str, Any]] = [("pageSize", page_size)]
            if filter_formula:
                query.append(("filterByFormula", filter_formula))
            if offset:
                query.append(("offset", offset))
            payload = self._request_json("GET", url, query=query, resource=base_id)
            for record in payload.get("records") or []:
                record_id = record.get("id")
                if not record_id:
                    raise AirtableApiError(f"Airtable returned a record without an id in {base_id}/{table_id}")
                yield SourceRecord(
                    id=str(record_id),
                    fields=record.get("fields") or {},
                    created_time=record.get("createdTime"),
                )
            offset = payload.get("offset")
            if not offset:
                break

    # Transport ------------------------------------------------------------

    def _request_json(
        self,
        method: str,
        url: str,
        *,
        query: list[tuple[str, Any]],
        resource: str,
    ) -> dict[str, Any]:
        """
        Request with back-off for 429/5xx.

        - 429: honor ``Retry-After`` when present, otherwise exponential.
        - 5xx: exponential.
        - other 4xx: immediate ``AirtableApiError``.
        """
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

        for attempt in range(self._max_retries + 1):
            if self._rate_limiter is not None:
                self._rate_limiter.acquire(resource)
            try:
                resp = self._session.request(
                    method=method,
                    url=url,
                    params=query,
                    headers=headers,
                    timeout=self._timeout_s,
                )
            except requests.Timeout as exc:
                raise SourceTimeoutError(f"Airtable request timed out after {self._timeout_s}s: {url}") from exc

            if 200 <= resp.status_code < 300:
                return resp.json()

            if resp.status_code == 429 or 500 <= resp.status_code < 600:
                retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                if attempt >= self._max_retries:
                    if resp.status_code == 429:
                        raise RateLimitError(
                            f"Airtable rate limit persisted after {attempt} retries",
                            retry_after=retry_after,
                        )
                    raise AirtableApiError(
                        f"Airtable error {resp.status_code} after {attempt} retries: {resp.text}",
                        status_code=resp.status_code,
                        body=resp.text,
                    )
                if retry_after is not None:
                    sleep_s = retry_after
                else:
                    base = min(self._max_backoff_s, self._min_backoff_s * (2**attempt))
                    sleep_s = base + (0.15 * base)
                logger.warning(
                    "Airtable returned %s; retrying in %.2fs",
                    resp.status_code,
                    sleep_s,
                    extra={"sync_airtable_status": resp.status_code, "sync_airtable_attempt": attempt + 1},
                )
                self._sleep(sleep_s)
                continue

            raise AirtableApiError(
                f"Airtable request failed {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        raise AirtableApiError(f"Airtable request exhausted retries: {url}")  # pragma: no cover


__all__ = [
    "API_URL",
    "AirtableApiError",
    "AirtableClient",
    "FieldSchema",
    "SourceRecord",
    "TableSchema",
]
