"""
Config lookups shared by the sync engine's CLI, tasks and factories.
"""

from __future__ import annotations

from typing import Any, Tuple

from flask import current_app


def _config(app=None):
    return (app or current_app).config


def is_sync_enabled(app=None) -> bool:
    return bool(_config(app).get("SYNC_ENABLED", False))


def get_sync_adapters(app=None) -> Tuple[str, ...]:
    """Return the configured source adapter identifiers in declaration order."""
    return tuple(_config(app).get("SYNC_ADAPTERS", ()))


def sync_setting(name: str, default: Any = None, app=None) -> Any:
    """Read ``SYNC_<name>`` from config, falling back to ``default`` for blanks."""
    value = _config(app).get(f"SYNC_{name}")
    if value is None or value == "":
        return default
    return value


def sync_int(name: str, default: int, app=None) -> int:
    """Integer variant of ``sync_setting``; unparsable values fall back to ``default``."""
    value = sync_setting(name, default, app)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def sync_float(name: str, default: float, app=None) -> float:
    value = sync_setting(name, default, app)
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default
