"""
Source pollers.

``AirtablePoller`` walks a base's schema, finds the email field and the tagged
fields of each table, detects field-level changes against the baseline store
and queues one outbox envelope per changed row.

Per row, changes are previewed read-only first, the envelope is prepared
(which may call the extraction collaborator), and only then are the baselines
and the envelope written together in one commit. A failing extraction
therefore leaves the row's baselines untouched and the change is detected
again on the next poll.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol, Sequence

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from flask_app.models.base import db
from flask_app.models.sync import SyncSource
from flask_app.utils.normalizers import normalize_email, normalize_source_value

from ..adapters.airtable.client import AirtableClient, FieldSchema, SourceRecord, TableSchema
from ..contracts import ChangedField, format_timestamp, parse_timestamp
from .change_detector import ChangeDetector
from .outbox import SPECIAL_FIELDS, OutboxBuilder, destination_mapping, is_list_field, special_field_name

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)
FINGERPRINTS_KEY = "field_fingerprints"


class Poller(Protocol):
    def poll(self, sync_source: SyncSource) -> "PollSummary": ...


@dataclass
class PollSummary:
    sync_source_id: int
    started_at: datetime
    tables: int = 0
    tables_skipped: int = 0
    full_resync_tables: list[str] = field(default_factory=list)
    records: int = 0
    changed_records: int = 0
    envelopes: int = 0
    skipped_invalid_email: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "sync_source_id": self.sync_source_id,
            "started_at": format_timestamp(self.started_at),
            "tables": self.tables,
            "tables_skipped": self.tables_skipped,
            "full_resync_tables": list(self.full_resync_tables),
            "records": self.records,
            "changed_records": self.changed_records,
            "envelopes": self.envelopes,
            "skipped_invalid_email": self.skipped_invalid_email,
        }


def find_email_field(table: TableSchema) -> FieldSchema | None:
    for candidate in table.fields:
        if (candidate.name or "").strip().lower() == "email":
            return candidate
    return None


def is_tracked_field(name: str) -> bool:
    """Tag prefixes match case-insensitively; destination names must start lowercase."""
    if is_list_field(name):
        return True
    special = special_field_name(name)
    if special is not None:
        return special.lower() in SPECIAL_FIELDS
    return destination_mapping(name) is not None


def find_tracked_fields(table: TableSchema) -> list[FieldSchema]:
    """Return the fields whose values propagate to the destination."""
    return [candidate for candidate in table.fields if is_tracked_field(candidate.name or "")]


def field_fingerprint(fields: Sequence[FieldSchema]) -> list[list[str]]:
    return sorted([candidate.id, candidate.type] for candidate in fields)


def needs_full_fetch(previous: Sequence[Sequence[str]] | None, current: Sequence[Sequence[str]]) -> bool:
    """A table is re-read in full when any tracked field is new or changed type."""
    if previous is None:
        return True
    known = {tuple(pair) for pair in previous}
    return any(tuple(pair) not in known for pair in current)


def _formula_timestamp(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def build_filter_formula(email_field_name: str, modified_since: datetime | None = None) -> str:
    """
    Restrict records to rows with a plausible email address and, when given,
    to rows created or modified after ``modified_since``.
    """
    ref = "{" + email_field_name + "}"
    email_condition = (
        f"AND(LEN({ref}) > 0, FIND('@', {ref}) > 0, FIND('@', {ref}) < LEN({ref}), "
        f"FIND('.', {ref}, FIND('@', {ref})) > 0, FIND('.', {ref}, FIND('@', {ref})) < LEN({ref}))"
    )
    if modified_since is None:
        return email_condition
    stamp = _formula_timestamp(modified_since)
    time_condition = f'OR(LAST_MODIFIED_TIME() > "{stamp}", CREATED_TIME() > "{stamp}")'
    return f"AND({email_condition}, {time_condition})"


def is_valid_email(value: str) -> bool:
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


class AirtablePoller:
    """Poll one Airtable base for tagged-field changes."""

    def __init__(
        self,
        client: AirtableClient,
        *,
        session: Session | None = None,
        detector: ChangeDetector | None = None,
        builder: OutboxBuilder | None = None,
        clock: Callable[[], datetime] | None = None,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
    ):
        self.client = client
        self.session = session or db.session
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.detector = detector or ChangeDetector(self.session, clock=self.clock)
        self.builder = builder or OutboxBuilder(self.session, clock=self.clock)
        self.safety_margin = safety_margin

    def poll(self, sync_source: SyncSource) -> PollSummary:
        started_at = self.clock()
        summary = PollSummary(sync_source_id=sync_source.id, started_at=started_at)
        base_id = sync_source.source_id

        tables = self.client.get_schema(base_id)
        previous = dict((sync_source.metadata_json or {}).get(FINGERPRINTS_KEY) or {})
        fingerprints: dict[str, list[list[str]]] = {}
        cursor = parse_timestamp(sync_source.cursor) if sync_source.cursor else None

        for table in tables.values():
            summary.tables += 1
            email_field = find_email_field(table)
            tracked = find_tracked_fields(table)
            if email_field is None or not tracked:
                summary.tables_skipped += 1
                logger.debug(
                    "Skipping table without an email field or tagged fields",
                    extra={"sync_source_id": sync_source.id, "sync_table_id": table.id},
                )
                continue

            fingerprint = field_fingerprint(tracked)
            fingerprints[table.id] = fingerprint
            full_fetch = cursor is None or needs_full_fetch(previous.get(table.id), fingerprint)
            if full_fetch and cursor is not None:
                summary.full_resync_tables.append(table.id)
                logger.info(
                    "Tagged fields changed; re-reading every row",
                    extra={"sync_source_id": sync_source.id, "sync_table_id": table.id},
                )
            since = None if full_fetch else cursor - self.safety_margin
            formula = build_filter_formula(email_field.name, since)
            records = list(self.client.list_records(base_id, table.id, filter_formula=formula))
            for record in records:
                summary.records += 1
                self._process_record(sync_source, table, email_field, tracked, record, summary)

        metadata = dict(sync_source.metadata_json or {})
        metadata[FINGERPRINTS_KEY] = fingerprints
        sync_source.metadata_json = metadata
        flag_modified(sync_source, "metadata_json")
        sync_source.cursor = format_timestamp(started_at)
        self.session.commit()

        logger.info(
            "Polled %s record(s) from %s; queued %s envelope(s)",
            summary.records,
            sync_source.humanized_name,
            summary.envelopes,
            extra={f"sync_poll_{key}": value for key, value in summary.as_dict().items()},
        )
        return summary

    def _process_record(
        self,
        sync_source: SyncSource,
        table: TableSchema,
        email_field: FieldSchema,
        tracked: Sequence[FieldSchema],
        record: SourceRecord,
        summary: PollSummary,
    ) -> None:
        fields = record.fields or {}
        email = normalize_email(normalize_source_value(fields.get(email_field.name)))
        if not email or not is_valid_email(email):
            summary.skipped_invalid_email += 1
            logger.warning(
                "Skipping record with an invalid email",
                extra={"sync_source_id": sync_source.id, "sync_table_id": table.id, "sync_record_id": record.id},
            )
            return

        row_id = f"{table.id}/{record.id}"
        observed_at = format_timestamp(self.clock())
        changed: list[ChangedField] = []
        for tracked_field in tracked:
            value = fields.get(tracked_field.name)
            key = f"{tracked_field.id}/{tracked_field.name}"
            result = self.detector.preview(sync_source.id, row_id, key, value)
            if result.should_forward:
                changed.append(
                    ChangedField(
                        field_id=tracked_field.id,
                        field_name=tracked_field.name,
                        value=normalize_source_value(value),
                        old_value=result.former_value,
                        modified_at=observed_at,
                    )
                )

        try:
            envelope = None
            if changed:
                summary.changed_records += 1
                envelope = self.builder.prepare(email, sync_source, table.id, record.id, changed)
            for tracked_field in tracked:
                key = f"{tracked_field.id}/{tracked_field.name}"
                self.detector.detect_change(sync_source.id, row_id, key, fields.get(tracked_field.name))
            if envelope is not None:
                self.session.add(envelope)
                summary.envelopes += 1
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise


__all__ = [
    "AirtablePoller",
    "DEFAULT_SAFETY_MARGIN",
    "FINGERPRINTS_KEY",
    "PollSummary",
    "Poller",
    "build_filter_formula",
    "field_fingerprint",
    "find_email_field",
    "find_tracked_fields",
    "is_valid_email",
    "needs_full_fetch",
]
