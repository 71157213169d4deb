"""Typed contracts exchanged between sync pipeline stages."""

from __future__ import annotations

from .envelope import (
    EPOCH,
    ChangedField,
    FieldUpdate,
    Strategy,
    format_timestamp,
    parse_timestamp,
    payload_from_updates,
    updates_from_payload,
)

__all__ = [
    "EPOCH",
    "ChangedField",
    "FieldUpdate",
    "Strategy",
    "format_timestamp",
    "parse_timestamp",
    "payload_from_updates",
    "updates_from_payload",
]
