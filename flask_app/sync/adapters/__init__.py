"""Source and destination adapter interfaces."""

from __future__ import annotations

from typing import Any, Iterator, Mapping, Protocol

from .errors import (
    TRANSIENT_ERRORS,
    AdapterConfigError,
    AdapterTimeoutError,
    ApiError,
    DestinationTimeoutError,
    RateLimitError,
    SourceTimeoutError,
    SyncAdapterError,
)


class DiscoveryAdapter(Protocol):
    """Lists every identifier visible at a source system."""

    def list_ids_with_names(self) -> list[dict[str, str]]: ...


class SourceAdapter(DiscoveryAdapter, Protocol):
    def get_schema(self, source_id: str) -> Mapping[str, Any]: ...

    def list_records(self, source_id: str, table_id: str, *, filter_formula: str | None = None) -> Iterator[Any]: ...


class DestinationAdapter(Protocol):
    def find_contact(self, email: str) -> dict[str, Any] | None: ...

    def update_contact(self, email: str, fields: Mapping[str, Any]) -> dict[str, Any]: ...

    def list_mailing_lists(self) -> list[dict[str, Any]]: ...


__all__ = [
    "AdapterConfigError",
    "AdapterTimeoutError",
    "DestinationTimeoutError",
    "SourceTimeoutError",
    "ApiError",
    "DestinationAdapter",
    "DiscoveryAdapter",
    "RateLimitError",
    "SourceAdapter",
    "SyncAdapterError",
    "TRANSIENT_ERRORS",
]
