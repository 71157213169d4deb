"""
Ignore-pattern matching for discovered source identifiers.

Patterns of the literal form ``^id$`` are answered from a set; everything else
is evaluated with the ``regex`` engine under a per-pattern time budget so a
pathological pattern cannot stall reconciliation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

import regex
from sqlalchemy import select
from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import DeletedReason, SyncSource, SyncSourceIgnore

logger = logging.getLogger(__name__)

MAX_PATTERN_LENGTH = SyncSourceIgnore.MAX_PATTERN_LENGTH
REGEX_TIMEOUT_SECONDS = 0.01
EXACT_PATTERN = re.compile(r"\A\^(.+)\$\Z", re.DOTALL)
SPECIAL_CHARS = re.compile(r"[.*+?^$|\\\[\]{}()]")


class IgnorePatternError(ValueError):
    """Raised when an ignore pattern cannot be stored."""


def validate_pattern(pattern: str) -> str:
    """Validate a pattern for storage, returning it stripped."""
    pattern = (pattern or "").strip()
    if not pattern:
        raise IgnorePatternError("Pattern must not be blank.")
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise IgnorePatternError(f"Pattern is too long (max {MAX_PATTERN_LENGTH} characters).")
    try:
        regex.compile(pattern)
    except regex.error as exc:
        raise IgnorePatternError(f"Pattern is not a valid regex: {exc}") from exc
    return pattern


def exact_literal(pattern: str) -> str | None:
    """Return the literal id for ``^id$`` patterns without other metacharacters."""
    match = EXACT_PATTERN.match(pattern)
    if match is None:
        return None
    body = match.group(1)
    if SPECIAL_CHARS.search(body):
        return None
    return body


@dataclass(frozen=True)
class _CompiledPattern:
    record: SyncSourceIgnore | None
    pattern: str
    compiled: "regex.Pattern"


class IgnoreMatcher:
    """Decide whether a source identifier is excluded from tracking."""

    def __init__(
        self,
        records: Iterable[SyncSourceIgnore] = (),
        *,
        timeout: float = REGEX_TIMEOUT_SECONDS,
    ):
        self.timeout = timeout
        self._exact: dict[str, list[SyncSourceIgnore]] = {}
        self._regexes: list[_CompiledPattern] = []
        for record in records:
            self._add(record)

    @classmethod
    def from_patterns(cls, patterns: Sequence[str], *, timeout: float = REGEX_TIMEOUT_SECONDS) -> "IgnoreMatcher":
        return cls(
            (SyncSourceIgnore(source="", source_id=pattern) for pattern in patterns),
            timeout=timeout,
        )

    @classmethod
    def for_source(cls, source: str, *, session: Session | None = None) -> "IgnoreMatcher":
        session = session or db.session
        records = session.scalars(
            select(SyncSourceIgnore).where(SyncSourceIgnore.source == source).order_by(SyncSourceIgnore.id)
        ).all()
        return cls(records)

    def _add(self, record: SyncSourceIgnore) -> None:
        pattern = record.source_id or ""
        if not pattern:
            return
        if len(pattern) > MAX_PATTERN_LENGTH:
            logger.warning(
                "Ignoring over-long ignore pattern",
                extra={"sync_ignore_id": record.id, "sync_ignore_length": len(pattern)},
            )
            return
        literal = exact_literal(pattern)
        if literal is not None:
            self._exact.setdefault(literal, []).append(record)
            return
        try:
            compiled = regex.compile(pattern)
        except regex.error as exc:
            logger.error(
                "Invalid ignore pattern %r: %s",
                pattern,
                exc,
                extra={"sync_ignore_id": record.id},
            )
            return
        self._regexes.append(_CompiledPattern(record=record, pattern=pattern, compiled=compiled))

    @property
    def exact_ids(self) -> frozenset[str]:
        return frozenset(self._exact)

    @property
    def regex_count(self) -> int:
        return len(self._regexes)

    def _search(self, entry: _CompiledPattern, source_id: str) -> bool:
        try:
            return entry.compiled.search(source_id, timeout=self.timeout) is not None
        except TimeoutError:
            logger.warning(
                "Ignore pattern timed out; treating as non-match",
                extra={
                    "sync_ignore_id": getattr(entry.record, "id", None),
                    "sync_ignore_pattern": entry.pattern,
                },
            )
            return False

    def match(self, source_id: str) -> bool:
        source_id = str(source_id)
        if source_id in self._exact:
            return True
        return any(self._search(entry, source_id) for entry in self._regexes)

    def matching_records(self, source_id: str) -> list[SyncSourceIgnore]:
        """Return every stored pattern matching ``source_id`` (for diagnostics)."""
        source_id = str(source_id)
        matches: list[SyncSourceIgnore] = list(self._exact.get(source_id, ()))
        for entry in self._regexes:
            if entry.record is not None and self._search(entry, source_id):
                matches.append(entry.record)
        unique: list[SyncSourceIgnore] = []
        seen: set[int] = set()
        for record in matches:
            if id(record) in seen:
                continue
            seen.add(id(record))
            unique.append(record)
        return unique


def add_ignore(
    source: str,
    pattern: str,
    *,
    reason: str | None = None,
    session: Session | None = None,
) -> tuple[SyncSourceIgnore, list[SyncSource]]:
    """
    Store an ignore pattern and retire the active sources it now matches.

    Returns the stored pattern and the sources that were retired.
    """
    session = session or db.session
    pattern = validate_pattern(pattern)
    existing = session.scalar(
        select(SyncSourceIgnore).where(SyncSourceIgnore.source == source, SyncSourceIgnore.source_id == pattern)
    )
    if existing is not None:
        raise IgnorePatternError(f"Pattern {pattern!r} already exists for source {source!r}.")
    record = SyncSourceIgnore(source=source, source_id=pattern, reason=reason)
    session.add(record)

    matcher = IgnoreMatcher([record])
    retired: list[SyncSource] = []
    for sync_source in session.scalars(SyncSource.active_only().where(SyncSource.source == source)):
        if matcher.match(sync_source.source_id):
            sync_source.soft_delete(DeletedReason.IGNORED_PATTERN)
            retired.append(sync_source)
    session.commit()
    return record, retired


def remove_ignore(source: str, pattern: str, *, session: Session | None = None) -> bool:
    """
    Delete a stored ignore pattern. Sources it retired stay retired until restored.

    Returns ``False`` when no such pattern exists.
    """
    session = session or db.session
    record = session.scalar(
        select(SyncSourceIgnore).where(SyncSourceIgnore.source == source, SyncSourceIgnore.source_id == pattern)
    )
    if record is None:
        return False
    session.delete(record)
    session.commit()
    logger.info("Removed ignore pattern", extra={"sync_source": source, "sync_ignore_pattern": pattern})
    return True


__all__ = [
    "EXACT_PATTERN",
    "IgnoreMatcher",
    "IgnorePatternError",
    "MAX_PATTERN_LENGTH",
    "REGEX_TIMEOUT_SECONDS",
    "add_ignore",
    "remove_ignore",
    "exact_literal",
    "validate_pattern",
]
