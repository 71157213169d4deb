"""
Loops contact API client.

``update_contact`` acts as create-or-update. Only HTTP 200/201 count as
success; 429 responses are retried with exponential back-off before a
``RateLimitError`` is raised.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Mapping, Optional

import requests

from flask_app.utils.normalizers import normalize_email

from ..errors import ApiError, DestinationTimeoutError, RateLimitError, parse_retry_after

logger = logging.getLogger(__name__)

API_URL = "https://app.loops.so/api/v1"
INITIAL_BACKOFF_SECONDS = 0.5
SUCCESS_STATUSES = (200, 201)

SYSTEM_FIELDS = frozenset(
    {
        "id",
        "email",
        "userId",
        "createdAt",
        "updatedAt",
        "unsubscribedAt",
        "listMemberships",
        "mailingLists",
    }
)


class LoopsApiError(ApiError):
    """Loops rejected the request."""


def _error_message(status_code: int, body: str) -> str:
    try:
        parsed = json.loads(body)
    except (TypeError, ValueError):
        parsed = None
    if isinstance(parsed, Mapping) and parsed.get("message"):
        return str(parsed["message"])
    return f"Loops API error: {status_code}"


class LoopsClient:
    """HTTP client for the Loops contacts and lists endpoints."""

    def __init__(
        self,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = API_URL,
        timeout_s: float = 30,
        max_retries: int = 5,
        rate_limiter=None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._max_retries = max_retries
        self._session = session or requests.Session()
        self._rate_limiter = rate_limiter
        self._sleep = sleep_fn

    def find_contact(self, email: str) -> dict[str, Any] | None:
        """Return the contact for ``email`` or ``None`` when Loops has no match."""
        normalized = normalize_email(email)
        if normalized is None:
            raise ValueError("email is required")
        payload = self._request("GET", "contacts/find", params={"email": normalized})
        if isinstance(payload, list):
            return dict(payload[0]) if payload else None
        if isinstance(payload, Mapping) and payload:
            return dict(payload)
        return None

    def update_contact(self, email: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Create or update the contact; returns the response body (``{"success": ..., "id": ...}``)."""
        normalized = normalize_email(email)
        if normalized is None:
            raise ValueError("email is required")
        body = {**dict(fields), "email": normalized}
        payload = self._request("PUT", "contacts/update", json_body=body)
        return dict(payload) if isinstance(payload, Mapping) else {"success": False, "response": payload}

    def list_mailing_lists(self) -> list[dict[str, Any]]:
        payload = self._request("GET", "lists")
        if not isinstance(payload, list):
            return []
        return [dict(item) for item in payload if isinstance(item, Mapping)]

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Mapping[str, Any] | None = None,
    ) -> Any:
        url = f"{self._base_url}/{path}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        retries = 0
        while True:
            if self._rate_limiter is not None:
                self._rate_limiter.acquire()
            try:
                resp = self._session.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=self._timeout_s,
                )
            except requests.Timeout as exc:
                raise DestinationTimeoutError(f"Loops API request timed out: {url}") from exc

            if resp.status_code == 429:
                retries += 1
                retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                if retries > self._max_retries:
                    raise RateLimitError(
                        _error_message(resp.status_code, resp.text)
                        if resp.text
                        else f"Rate limit exceeded after {self._max_retries} retries",
                        retry_after=retry_after,
                    )
                delay = INITIAL_BACKOFF_SECONDS * (2 ** (retries - 1))
                remaining = resp.headers.get("x-ratelimit-remaining")
                if retry_after is not None or (remaining is not None and str(remaining).strip() == "0"):
                    delay = max(delay, retry_after or 1.0, 1.0)
                logger.warning(
                    "Loops rate limited; retrying in %.2fs",
                    delay,
                    extra={"sync_loops_retry": retries, "sync_loops_path": path},
                )
                self._sleep(delay)
                continue

            if resp.status_code not in SUCCESS_STATUSES:
                raise LoopsApiError(
                    _error_message(resp.status_code, resp.text),
                    status_code=resp.status_code,
                    body=resp.text,
                )

            if not resp.text:
                return None
            try:
                return resp.json()
            except ValueError as exc:
                raise LoopsApiError(
                    f"Loops returned invalid JSON for {path}",
                    status_code=resp.status_code,
                    body=resp.text,
                ) from exc


__all__ = ["API_URL", "LoopsApiError", "LoopsClient", "SYSTEM_FIELDS"]
