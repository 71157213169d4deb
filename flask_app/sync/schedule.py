"""Load the periodic task schedule consumed by Celery beat."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml


class ScheduleLoadError(RuntimeError):
    """Raised when the schedule file is missing or malformed."""


@dataclass(frozen=True)
class ScheduleEntry:
    name: str
    task: str
    every: float
    kwargs: Mapping[str, Any] = field(default_factory=dict)

    def as_beat_entry(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "schedule": timedelta(seconds=self.every),
            "kwargs": dict(self.kwargs),
        }


def load_schedule(path: str | Path) -> tuple[ScheduleEntry, ...]:
    """
    Parse a YAML schedule file.

    The file holds a ``schedule`` mapping of entry name to
    ``{task, every, kwargs?}`` where ``every`` is a positive number of seconds.
    """
    path = Path(path)
    if not path.exists():
        raise ScheduleLoadError(f"Schedule file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ScheduleLoadError(f"Failed to parse schedule YAML at {path}: {exc}") from exc

    if not isinstance(raw, Mapping):
        raise ScheduleLoadError(f"Schedule file {path} must contain a mapping.")
    payload = raw.get("schedule") or {}
    if not isinstance(payload, Mapping):
        raise ScheduleLoadError("'schedule' must be a mapping of entry name to definition.")

    entries: list[ScheduleEntry] = []
    for name, details in payload.items():
        if not isinstance(details, Mapping):
            raise ScheduleLoadError(f"Schedule entry {name!r} must be a mapping, got {details!r}")
        task = str(details.get("task") or "").strip()
        if not task:
            raise ScheduleLoadError(f"Schedule entry {name!r} is missing 'task'.")
        try:
            every = float(details["every"])
        except KeyError as exc:
            raise ScheduleLoadError(f"Schedule entry {name!r} is missing 'every'.") from exc
        except (TypeError, ValueError) as exc:
            raise ScheduleLoadError(f"Schedule entry {name!r} has an invalid 'every': {exc}") from exc
        if every <= 0:
            raise ScheduleLoadError(f"Schedule entry {name!r} must run at a positive interval.")
        kwargs = details.get("kwargs") or {}
        if not isinstance(kwargs, Mapping):
            raise ScheduleLoadError(f"Schedule entry {name!r} kwargs must be a mapping.")
        entries.append(ScheduleEntry(name=str(name), task=task, every=every, kwargs=dict(kwargs)))
    return tuple(entries)


def beat_schedule(path: str | Path) -> Dict[str, dict[str, Any]]:
    """Return a ``beat_schedule`` mapping built from the YAML file at ``path``."""
    return {entry.name: entry.as_beat_entry() for entry in load_schedule(path)}


__all__ = ["ScheduleEntry", "ScheduleLoadError", "beat_schedule", "load_schedule"]
