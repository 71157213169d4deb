"""Airtable source adapter: readiness checks, client and discovery."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Mapping, Tuple

from ..errors import AdapterConfigError, SyncAdapterError
from .client import AirtableApiError, AirtableClient, FieldSchema, SourceRecord, TableSchema

REQUIRED_ENV_VARS: Tuple[str, ...] = ("AIRTABLE_PERSONAL_ACCESS_TOKEN",)


@dataclass(frozen=True)
class AirtableAdapterReadiness:
    missing_env_vars: Tuple[str, ...]
    auth_status: Literal["skipped", "ok", "failed"]
    auth_error: str | None = None

    @property
    def status(self) -> str:
        if self.missing_env_vars:
            return "missing-env"
        if self.auth_status == "failed":
            return "auth-error"
        return "ready"

    def messages(self) -> Tuple[str, ...]:
        messages: list[str] = []
        if self.missing_env_vars:
            messages.append(f"Missing required Airtable env vars: {', '.join(self.missing_env_vars)}")
        if self.auth_status == "failed" and self.auth_error:
            messages.append(self.auth_error)
        return tuple(messages)

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "status": self.status,
            "missing_env_vars": list(self.missing_env_vars),
            "auth_status": self.auth_status,
            "messages": list(self.messages()),
        }
        if self.auth_error:
            payload["auth_error"] = self.auth_error
        return payload


def check_airtable_adapter_readiness(
    env: Mapping[str, str] | None = None,
    *,
    require_auth_ping: bool = False,
    client: AirtableClient | None = None,
) -> AirtableAdapterReadiness:
    """
    Perform a non-raising readiness check for the Airtable adapter.

    With ``require_auth_ping`` the first page of ``meta/bases`` is requested to
    prove the token works.
    """
    env = env if env is not None else os.environ
    missing_env = tuple(sorted(var for var in REQUIRED_ENV_VARS if not env.get(var)))

    auth_status: Literal["skipped", "ok", "failed"] = "skipped"
    auth_error: str | None = None
    if require_auth_ping and not missing_env:
        client = client or AirtableClient(env["AIRTABLE_PERSONAL_ACCESS_TOKEN"], max_retries=0)
        try:
            next(iter(client.iter_bases()), None)
            auth_status = "ok"
        except SyncAdapterError as exc:
            auth_status = "failed"
            auth_error = f"Airtable authentication failed: {exc}"

    return AirtableAdapterReadiness(missing_env_vars=missing_env, auth_status=auth_status, auth_error=auth_error)


def ensure_airtable_adapter_ready(
    env: Mapping[str, str] | None = None,
    *,
    require_auth_ping: bool = False,
) -> AirtableAdapterReadiness:
    readiness = check_airtable_adapter_readiness(env, require_auth_ping=require_auth_ping)
    if readiness.missing_env_vars:
        raise AdapterConfigError(
            "Airtable adapter configured but missing required env vars: "
            + ", ".join(readiness.missing_env_vars)
            + ". Set these or disable the adapter."
        )
    if readiness.auth_status == "failed":
        raise AdapterConfigError(readiness.auth_error or "Airtable authentication failed.")
    return readiness


__all__ = [
    "REQUIRED_ENV_VARS",
    "AirtableAdapterReadiness",
    "AirtableApiError",
    "AirtableClient",
    "FieldSchema",
    "SourceRecord",
    "TableSchema",
    "check_airtable_adapter_readiness",
    "ensure_airtable_adapter_ready",
]
