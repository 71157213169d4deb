"""Value normalization applied once at the ingestion boundary."""

from __future__ import annotations

import json
from typing import Any


def normalize_source_value(value: Any) -> Any:
    """
    Normalize a raw source value before comparison or enqueueing.

    Lists drop ``None`` entries; an empty list becomes ``None`` and a
    single-element list collapses to its (normalized) element. Strings are
    stripped and blank strings become ``None``.
    """
    if isinstance(value, (list, tuple)):
        compacted = [item for item in value if item is not None]
        if not compacted:
            return None
        if len(compacted) == 1:
            return normalize_source_value(compacted[0])
        return compacted
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def canonicalize(value: Any) -> Any:
    """Deep-normalize mapping keys to strings so equal structures compare equal."""
    if isinstance(value, dict):
        return {str(key): canonicalize(item) for key, item in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [canonicalize(item) for item in value]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(canonicalize(value), sort_keys=True, separators=(",", ":"), default=str)


def values_equal(left: Any, right: Any) -> bool:
    return canonical_json(left) == canonical_json(right)


def normalize_email(value: Any) -> str | None:
    """Strip and lowercase an email address; blanks normalize to ``None``."""
    if value is None:
        return None
    normalized = str(value).strip().lower()
    return normalized or None
