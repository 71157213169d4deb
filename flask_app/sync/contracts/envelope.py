"""Typed field-update contracts shared by the outbox builder and the dispatcher.

Envelope payloads are persisted as JSON, so these types convert to and from
plain mappings at the storage boundary. Nothing downstream of
``FieldUpdate.from_payload`` handles untyped entries.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Strategy(str, enum.Enum):
    """How a destination field update is applied."""

    UPSERT = "upsert"
    OVERRIDE = "override"


def parse_timestamp(value: object | None) -> datetime:
    """Parse an ISO-8601 timestamp, falling back to the epoch for anything unparsable."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return EPOCH
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return EPOCH
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class FieldUpdate:
    """A single destination field value with its strategy and edit timestamp."""

    value: Any
    strategy: Strategy = Strategy.UPSERT
    modified_at: str | None = None

    @property
    def modified_at_dt(self) -> datetime:
        return parse_timestamp(self.modified_at)

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.value, "strategy": self.strategy.value, "modified_at": self.modified_at}

    @classmethod
    def from_payload(cls, entry: Mapping[str, Any]) -> "FieldUpdate":
        raw_strategy = str(entry.get("strategy") or Strategy.UPSERT.value).lower()
        try:
            strategy = Strategy(raw_strategy)
        except ValueError:
            strategy = Strategy.UPSERT
        return cls(value=entry.get("value"), strategy=strategy, modified_at=entry.get("modified_at"))


@dataclass(frozen=True)
class ChangedField:
    """A source field that changed (or was first observed) during a poll."""

    field_id: str
    field_name: str
    value: Any
    old_value: Any
    modified_at: str

    @property
    def baseline_key(self) -> str:
        return f"{self.field_id}/{self.field_name}"


def payload_from_updates(updates: Mapping[str, FieldUpdate]) -> dict[str, dict[str, Any]]:
    return {name: update.to_payload() for name, update in updates.items()}


def updates_from_payload(payload: Mapping[str, Any] | None) -> dict[str, FieldUpdate]:
    updates: dict[str, FieldUpdate] = {}
    for name, entry in (payload or {}).items():
        if isinstance(entry, Mapping):
            updates[str(name)] = FieldUpdate.from_payload(entry)
        else:
            updates[str(name)] = FieldUpdate(value=entry)
    return updates
