"""
Turn a row's changed source fields into one queued outbox envelope.

Source field names carry their destination mapping:

- ``Loops - firstName``: upsert ``firstName``
- ``Loops - Override - firstName``: override ``firstName``
- ``Loops List - <label>``: comma-separated list ids merged into ``mailingLists``
- ``Loops - Special - setFullName`` / ``setFullAddress``: free text routed
  through the extraction collaborator
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import EnvelopeStatus, OutboxEnvelope, SyncSource
from flask_app.utils.normalizers import normalize_email, normalize_source_value

from ..contracts import ChangedField, FieldUpdate, Strategy, format_timestamp, parse_timestamp, payload_from_updates
from ..extraction import Extractor
from ..extraction.processors import extract_full_address, extract_full_name

logger = logging.getLogger(__name__)

FIELD_TAG = "Loops"
MAILING_LISTS_FIELD = "mailingLists"
ADDRESS_UPDATED_FIELD = "addressLastUpdatedAt"
SPECIAL_FIELDS = frozenset({"setfullname", "setfulladdress"})

LIST_FIELD_PATTERN = re.compile(rf"\A{FIELD_TAG}\s*List\s*-\s*.+\Z", re.IGNORECASE | re.DOTALL)
SPECIAL_FIELD_PATTERN = re.compile(rf"\A{FIELD_TAG}\s*-\s*Special\s*-\s*(?P<name>\S+)\Z", re.IGNORECASE)
OVERRIDE_FIELD_PATTERN = re.compile(rf"\A{FIELD_TAG}\s*-\s*Override\s*-\s*(?P<name>.+)\Z", re.IGNORECASE)
UPSERT_FIELD_PATTERN = re.compile(rf"\A{FIELD_TAG}\s*-\s*(?P<name>.+)\Z", re.IGNORECASE)
DESTINATION_NAME_PATTERN = re.compile(r"\A[a-z][a-zA-Z0-9]*\Z")


def destination_mapping(field_name: str) -> tuple[str, Strategy] | None:
    """
    Map a tagged source field name to ``(destination_name, strategy)``.

    Returns ``None`` for list, special and untagged fields, and for names that
    do not start with a lowercase letter.
    """
    name = (field_name or "").strip()
    if LIST_FIELD_PATTERN.match(name) or SPECIAL_FIELD_PATTERN.match(name):
        return None
    match = OVERRIDE_FIELD_PATTERN.match(name)
    strategy = Strategy.OVERRIDE
    if match is None:
        match = UPSERT_FIELD_PATTERN.match(name)
        strategy = Strategy.UPSERT
    if match is None:
        return None
    destination = match.group("name").strip()
    if not DESTINATION_NAME_PATTERN.match(destination):
        return None
    return destination, strategy


def is_list_field(field_name: str) -> bool:
    return bool(LIST_FIELD_PATTERN.match((field_name or "").strip()))


def special_field_name(field_name: str) -> str | None:
    match = SPECIAL_FIELD_PATTERN.match((field_name or "").strip())
    return match.group("name") if match else None


def parse_list_ids(value: Any) -> list[str]:
    """Split comma-separated (or multi-valued) list ids, trimmed and de-duplicated in order."""
    if value is None:
        return []
    items: Iterable[Any] = value if isinstance(value, (list, tuple)) else [value]
    ids: list[str] = []
    for item in items:
        if item is None:
            continue
        for part in str(item).split(","):
            part = part.strip()
            if part and part not in ids:
                ids.append(part)
    return ids


def humanized_source(sync_source: SyncSource | None) -> str:
    if sync_source is None:
        return "Unknown"
    return f"{sync_source.source.replace('_', ' ').capitalize()} - {sync_source.humanized_name}"


class OutboxBuilder:
    """Build queued envelopes from changed source fields."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        extractor: Extractor | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session = session or db.session
        self.extractor = extractor
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def build(
        self,
        email: str | None,
        sync_source: SyncSource | None,
        table_id: str,
        record_id: str,
        changed_fields: Sequence[ChangedField],
    ) -> OutboxEnvelope | None:
        """Create and commit an envelope; returns ``None`` when nothing maps."""
        envelope = self.prepare(email, sync_source, table_id, record_id, changed_fields)
        if envelope is None:
            return None
        self.session.add(envelope)
        self.session.commit()
        return envelope

    def prepare(
        self,
        email: str | None,
        sync_source: SyncSource | None,
        table_id: str,
        record_id: str,
        changed_fields: Sequence[ChangedField],
    ) -> OutboxEnvelope | None:
        """Return an unsaved envelope for the changed fields, or ``None``."""
        email_normalized = normalize_email(email)
        if not email_normalized:
            logger.warning(
                "Skipping outbox envelope without an email",
                extra={"sync_table_id": table_id, "sync_record_id": record_id},
            )
            return None

        updates: dict[str, FieldUpdate] = {}
        field_provenance: list[dict[str, Any]] = []
        list_ids: list[str] = []
        list_modified_at: datetime | None = None

        for changed in changed_fields:
            entry: dict[str, Any] = {
                "sync_source_field_id": changed.field_id,
                "sync_source_field_name": changed.field_name,
                "former_sync_source_value": changed.old_value,
                "new_sync_source_value": changed.value,
                "modified_at": changed.modified_at,
            }

            if is_list_field(changed.field_name):
                ids = parse_list_ids(changed.value)
                if not ids:
                    continue
                for list_id in ids:
                    if list_id not in list_ids:
                        list_ids.append(list_id)
                modified = parse_timestamp(changed.modified_at)
                if list_modified_at is None or modified > list_modified_at:
                    list_modified_at = modified
                entry["destination_fields"] = [MAILING_LISTS_FIELD]
                entry["mailing_list_ids"] = ids
                field_provenance.append(entry)
                continue

            special = special_field_name(changed.field_name)
            if special is not None:
                derived = self._special_updates(special, changed)
                if not derived:
                    continue
                updates.update(derived)
                entry["destination_fields"] = sorted(derived)
                entry["derivation"] = {"kind": "extraction", "processor": special}
                field_provenance.append(entry)
                continue

            mapping = destination_mapping(changed.field_name)
            if mapping is None:
                logger.info(
                    "Skipping unrecognized source field",
                    extra={"sync_field_name": changed.field_name, "sync_record_id": record_id},
                )
                continue
            destination, strategy = mapping
            updates[destination] = FieldUpdate(
                value=normalize_source_value(changed.value),
                strategy=strategy,
                modified_at=changed.modified_at,
            )
            entry["destination_fields"] = [destination]
            field_provenance.append(entry)

        if list_ids:
            updates[MAILING_LISTS_FIELD] = FieldUpdate(
                value={list_id: True for list_id in list_ids},
                strategy=Strategy.OVERRIDE,
                modified_at=format_timestamp(list_modified_at or self.clock()),
            )

        if not updates:
            return None

        return OutboxEnvelope(
            email_normalized=email_normalized,
            payload=payload_from_updates(updates),
            status=EnvelopeStatus.QUEUED,
            provenance=self._provenance(sync_source, table_id, record_id, field_provenance),
            sync_source_id=sync_source.id if sync_source is not None else None,
        )

    def _special_updates(self, special: str, changed: ChangedField) -> dict[str, FieldUpdate]:
        raw = normalize_source_value(changed.value)
        if raw is None:
            return {}
        if self.extractor is None:
            logger.warning(
                "No extractor configured; skipping special field",
                extra={"sync_field_name": changed.field_name},
            )
            return {}

        key = special.lower()
        if key == "setfullname":
            parts = extract_full_name(str(raw), self.extractor)
            return {
                name: FieldUpdate(value=value, strategy=Strategy.UPSERT, modified_at=changed.modified_at)
                for name, value in parts.items()
            }
        if key == "setfulladdress":
            parts = extract_full_address(str(raw), self.extractor)
            derived = {
                name: FieldUpdate(value=value, strategy=Strategy.UPSERT, modified_at=changed.modified_at)
                for name, value in parts.items()
            }
            if derived:
                derived[ADDRESS_UPDATED_FIELD] = FieldUpdate(
                    value=changed.modified_at,
                    strategy=Strategy.OVERRIDE,
                    modified_at=changed.modified_at,
                )
            return derived

        logger.warning("Unknown special field", extra={"sync_field_name": changed.field_name})
        return {}

    @staticmethod
    def _provenance(
        sync_source: SyncSource | None,
        table_id: str,
        record_id: str,
        fields: list[dict[str, Any]],
    ) -> dict[str, Any]:
        source_type = sync_source.source if sync_source is not None else "unknown"
        provenance: dict[str, Any] = {
            "sync_source_id": sync_source.id if sync_source is not None else None,
            "sync_source_type": source_type,
            "sync_source_table_id": table_id,
            "sync_source_record_id": record_id,
            "fields": fields,
            "created_from": f"{source_type}_poller",
        }
        if sync_source is not None:
            metadata = {k: v for k, v in (sync_source.metadata_json or {}).items() if k != "field_fingerprints"}
            provenance["sync_source_metadata"] = {"source_id": sync_source.source_id, **metadata}
        return provenance


__all__ = [
    "ADDRESS_UPDATED_FIELD",
    "FIELD_TAG",
    "MAILING_LISTS_FIELD",
    "SPECIAL_FIELDS",
    "OutboxBuilder",
    "destination_mapping",
    "humanized_source",
    "is_list_field",
    "parse_list_ids",
    "special_field_name",
]
