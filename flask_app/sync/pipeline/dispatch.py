"""
Deliver queued outbox envelopes to the destination.

Work is partitioned by destination identity (the normalized email). Each
identity is processed under a non-blocking identity lock; contention skips the
identity until the next pass. Per identity the queued envelopes are merged
(latest ``modified_at`` wins per field), mailing lists are de-duplicated and
validated, redundant upserts are suppressed against destination baselines,
and a single update call is made. Baselines, audit entries, subscriptions and
envelope statuses are written in one transaction once the call succeeds.
"""

from __future__ import annotations

import logging
import traceback
import uuid
from collections import Counter
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import (
    ContactChangeAudit,
    DestinationFieldBaseline,
    EnvelopeStatus,
    ListSubscription,
    MailingList,
    OutboxEnvelope,
    SyncSource,
)
from flask_app.models.sync.baselines import DEFAULT_DESTINATION_TTL_DAYS
from flask_app.utils.normalizers import canonicalize, values_equal

from ..adapters import TRANSIENT_ERRORS, ApiError, DestinationAdapter
from ..contracts import FieldUpdate, Strategy, format_timestamp, updates_from_payload
from ..metrics import record_destination_call, record_envelope_status
from .catalog import catalog_is_empty, sync_mailing_lists_exclusively
from .contacts import seed_field_baselines, seed_list_subscriptions
from .locks import identity_lock_key, try_lock
from .outbox import MAILING_LISTS_FIELD, humanized_source

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_USER_GROUP = "Hack Clubber"
BACKTRACE_LINES = 10


@dataclass
class MergedField:
    update: FieldUpdate
    envelope: OutboxEnvelope | None


@dataclass
class IdentityResult:
    email_normalized: str
    envelope_ids: list[int] = field(default_factory=list)
    statuses: dict[int, str] = field(default_factory=dict)
    sent_payload: dict[str, Any] = field(default_factory=dict)
    invalid_list_ids: list[str] = field(default_factory=list)


@dataclass
class DispatchSummary:
    batches: int = 0
    identities: int = 0
    skipped_locked: list[str] = field(default_factory=list)
    statuses: Counter = field(default_factory=Counter)

    def as_dict(self) -> dict[str, Any]:
        return {
            "batches": self.batches,
            "identities": self.identities,
            "skipped_locked": len(self.skipped_locked),
            "statuses": dict(self.statuses),
        }


def _list_ids(update: FieldUpdate) -> dict[str, bool]:
    value = update.value if isinstance(update.value, Mapping) else {}
    return {str(list_id): True for list_id, wanted in value.items() if wanted}


def merge_envelopes(envelopes: Sequence[OutboxEnvelope]) -> dict[str, MergedField]:
    """
    Combine payloads; per field the entry with the latest ``modified_at`` wins.

    Subscriptions are append-only, so ``mailingLists`` is the union of every
    envelope's list ids, stamped with the latest ``modified_at``.
    """
    merged: dict[str, MergedField] = {}
    for envelope in envelopes:
        for name, update in updates_from_payload(envelope.payload).items():
            current = merged.get(name)
            newer = current is None or update.modified_at_dt > current.update.modified_at_dt
            if name == MAILING_LISTS_FIELD and current is not None:
                latest = update if newer else current.update
                merged[name] = MergedField(
                    update=FieldUpdate(
                        value={**_list_ids(current.update), **_list_ids(update)},
                        strategy=latest.strategy,
                        modified_at=latest.modified_at,
                    ),
                    envelope=envelope if newer else current.envelope,
                )
            elif newer:
                merged[name] = MergedField(update=update, envelope=envelope)
    return merged


def apply_strategies(updates: Mapping[str, FieldUpdate]) -> dict[str, Any]:
    """Upserts drop null values; overrides are always sent."""
    payload: dict[str, Any] = {}
    for name, update in updates.items():
        if update.strategy is Strategy.OVERRIDE or update.value is not None:
            payload[name] = update.value
    return payload


def _error_detail(exc: BaseException, *, stage: str, payload: Mapping[str, Any] | None = None) -> dict[str, Any]:
    detail: dict[str, Any] = {
        "message": str(exc),
        "class": exc.__class__.__name__,
        "stage": stage,
        "backtrace": traceback.format_exception(type(exc), exc, exc.__traceback__)[-BACKTRACE_LINES:],
        "occurred_at": format_timestamp(datetime.now(timezone.utc)),
    }
    if payload is not None:
        detail["destination_payload_sent"] = dict(payload)
    if isinstance(exc, ApiError):
        detail["status_code"] = exc.status_code
        detail["response"] = exc.body
    return detail


class DispatchWorker:
    """Claim queued envelopes and deliver them per destination identity."""

    def __init__(
        self,
        client: DestinationAdapter,
        *,
        session: Session | None = None,
        default_list_id: str | None = None,
        default_user_group: str = DEFAULT_USER_GROUP,
        baseline_ttl_days: int = DEFAULT_DESTINATION_TTL_DAYS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] | None = None,
        lock: Callable[[int], AbstractContextManager[bool]] = try_lock,
    ):
        self.client = client
        self.session = session or db.session
        self.default_list_id = (default_list_id or "").strip() or None
        self.default_user_group = default_user_group
        self.baseline_ttl_days = baseline_ttl_days
        self.batch_size = batch_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.lock = lock

    # Batch loop ---------------------------------------------------------

    def claim_identities(self, exclude: Sequence[str] = ()) -> list[str]:
        """
        Pick the identities of the oldest queued envelopes, in creation order.

        ``SKIP LOCKED`` only keeps this query from waiting on rows another
        worker is finishing; the row locks end with the commit below. Two
        workers may pick the same identity, and the identity lock taken in
        ``dispatch_identity`` decides which one sends.
        """
        stmt = (
            select(OutboxEnvelope.id, OutboxEnvelope.email_normalized)
            .where(OutboxEnvelope.status == EnvelopeStatus.QUEUED)
            .order_by(OutboxEnvelope.created_at, OutboxEnvelope.id)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )
        if exclude:
            stmt = stmt.where(OutboxEnvelope.email_normalized.not_in(list(exclude)))
        try:
            rows = self.session.execute(stmt).all()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        identities: list[str] = []
        for _, email in rows:
            if email not in identities:
                identities.append(email)
        return identities

    def run(self) -> DispatchSummary:
        summary = DispatchSummary()
        while True:
            identities = self.claim_identities(exclude=summary.skipped_locked)
            if not identities:
                break
            summary.batches += 1
            for email in identities:
                result = self.dispatch_identity(email)
                if result is None:
                    summary.skipped_locked.append(email)
                    continue
                summary.identities += 1
                summary.statuses.update(result.statuses.values())
        if summary.identities or summary.skipped_locked:
            logger.info(
                "Dispatched outbox for %s identit(ies)",
                summary.identities,
                extra={f"sync_dispatch_{key}": value for key, value in summary.as_dict().items()},
            )
        return summary

    # Per identity -------------------------------------------------------

    def dispatch_identity(self, email_normalized: str) -> IdentityResult | None:
        """Process every queued envelope for one identity; ``None`` when its lock is held elsewhere."""
        with self.lock(identity_lock_key(email_normalized)) as acquired:
            if not acquired:
                logger.debug("Identity is being dispatched elsewhere", extra={"sync_email": email_normalized})
                return None
            try:
                return self._dispatch_locked(email_normalized)
            finally:
                # Nothing may stay pending on the session once the lock is gone.
                self.session.rollback()

    def _queued_envelopes(self, email_normalized: str) -> list[OutboxEnvelope]:
        return list(
            self.session.scalars(
                select(OutboxEnvelope)
                .where(
                    OutboxEnvelope.email_normalized == email_normalized,
                    OutboxEnvelope.status == EnvelopeStatus.QUEUED,
                )
                .order_by(OutboxEnvelope.created_at, OutboxEnvelope.id)
            )
        )

    def _dispatch_locked(self, email_normalized: str) -> IdentityResult:
        result = IdentityResult(email_normalized=email_normalized)
        envelopes = self._queued_envelopes(email_normalized)
        if not envelopes:
            return result
        result.envelope_ids = [envelope.id for envelope in envelopes]
        sync_source = self._sync_source_for(envelopes)

        try:
            contact_exists = self._contact_exists(email_normalized) if sync_source is not None else True
        except Exception as exc:
            self._record_error(envelopes, exc, _error_detail(exc, stage="preflight_check"))
            raise

        try:
            merged = merge_envelopes(envelopes)
            injected_lists: set[str] = set()
            if not contact_exists:
                self._inject_initial_fields(merged, sync_source)
                if self.default_list_id:
                    injected_lists.add(self.default_list_id)
            invalid_ids = self._resolve_mailing_lists(email_normalized, merged, injected_lists)
            result.invalid_list_ids = invalid_ids

            baselines = self._baselines_for(email_normalized)
            now = self.clock()
            filtered: dict[str, MergedField] = {}
            for name, entry in merged.items():
                if entry.update.strategy is Strategy.UPSERT:
                    baseline = baselines.get(name)
                    if (
                        baseline is not None
                        and not baseline.is_expired(now)
                        and values_equal(baseline.last_sent_value, canonicalize(entry.update.value))
                    ):
                        continue
                filtered[name] = entry
            payload = apply_strategies({name: entry.update for name, entry in filtered.items()})
        except Exception as exc:
            self._record_error(envelopes, exc, _error_detail(exc, stage="processing"))
            raise

        if not payload:
            self._finish(envelopes, payload, invalid_ids, result)
            return result

        pre_call = {name: baseline.last_sent_value for name, baseline in baselines.items()}
        try:
            response = self.client.update_contact(email_normalized, payload) or {}
            if response.get("success") is False:
                raise ApiError(f"Destination update did not succeed: {response!r}", body=response)
        except Exception as exc:
            record_destination_call("failure")
            logger.error(
                "Destination update failed for %s: %s",
                email_normalized,
                exc,
                extra={"sync_email": email_normalized, "sync_envelope_ids": result.envelope_ids},
            )
            self._record_error(envelopes, exc, _error_detail(exc, stage="update_contact", payload=payload))
            raise
        record_destination_call("success")

        request_id = str(response.get("id") or response.get("request_id") or uuid.uuid4())
        try:
            self._record_success(
                email_normalized,
                envelopes,
                filtered,
                payload,
                baselines,
                pre_call,
                response,
                request_id,
            )
            self._finish(envelopes, payload, invalid_ids, result)
        except Exception as exc:
            self.session.rollback()
            self._mark_failed(envelopes, _error_detail(exc, stage="record_success", payload=payload))
            raise
        result.sent_payload = payload
        return result

    # Steps --------------------------------------------------------------

    def _sync_source_for(self, envelopes: Sequence[OutboxEnvelope]) -> SyncSource | None:
        for envelope in envelopes:
            source_id = envelope.sync_source_id or (envelope.provenance or {}).get("sync_source_id")
            if source_id:
                found = self.session.get(SyncSource, int(source_id))
                if found is not None:
                    return found
        return None

    def _contact_exists(self, email_normalized: str) -> bool:
        """
        Any local destination baseline means the contact exists. Otherwise ask
        the destination; a found contact seeds baselines from its writable
        fields and subscriptions from its list memberships.
        """
        has_baseline = self.session.scalar(
            select(DestinationFieldBaseline.id).where(DestinationFieldBaseline.email_normalized == email_normalized).limit(1)
        )
        if has_baseline is not None:
            return True

        contact = self.client.find_contact(email_normalized)
        if contact is None:
            return False

        now = self.clock()
        seeded = seed_field_baselines(
            self.session, email_normalized, contact, now=now, expires_in_days=self.baseline_ttl_days
        )
        subscriptions = seed_list_subscriptions(self.session, email_normalized, contact, now=now)
        self.session.commit()
        logger.info(
            "Seeded %s destination baseline(s) from existing contact",
            seeded,
            extra={"sync_email": email_normalized, "sync_seeded": seeded, "sync_subscriptions": subscriptions},
        )
        return True

    def _inject_initial_fields(self, merged: dict[str, MergedField], sync_source: SyncSource | None) -> None:
        stamp = format_timestamp(self.clock())
        initial = {
            "userGroup": self.default_user_group,
            "source": humanized_source(sync_source),
        }
        for name, value in initial.items():
            if name not in merged and value:
                merged[name] = MergedField(
                    update=FieldUpdate(value=value, strategy=Strategy.UPSERT, modified_at=stamp),
                    envelope=None,
                )
        if self.default_list_id:
            entry = merged.get(MAILING_LISTS_FIELD)
            lists = dict(entry.update.value or {}) if entry is not None and isinstance(entry.update.value, dict) else {}
            lists.setdefault(self.default_list_id, True)
            merged[MAILING_LISTS_FIELD] = MergedField(
                update=FieldUpdate(
                    value=lists,
                    strategy=Strategy.OVERRIDE,
                    modified_at=entry.update.modified_at if entry is not None else stamp,
                ),
                envelope=entry.envelope if entry is not None else None,
            )

    def _resolve_mailing_lists(
        self,
        email_normalized: str,
        merged: dict[str, MergedField],
        injected: set[str],
    ) -> list[str]:
        """
        Drop already-subscribed list ids, then keep only ids present in the
        catalog. Returns requested ids the catalog does not know; injected
        defaults that are unknown are dropped without a warning.
        """
        entry = merged.get(MAILING_LISTS_FIELD)
        if entry is None:
            return []
        value = entry.update.value if isinstance(entry.update.value, dict) else {}
        requested = [str(list_id) for list_id, wanted in value.items() if wanted]

        subscribed = set(
            self.session.scalars(
                select(ListSubscription.list_id).where(ListSubscription.email_normalized == email_normalized)
            )
        )
        pending = [list_id for list_id in requested if list_id not in subscribed]
        if not pending:
            del merged[MAILING_LISTS_FIELD]
            return []

        if catalog_is_empty(self.session):
            sync_mailing_lists_exclusively(self.client, session=self.session)
        known = set(
            self.session.scalars(select(MailingList.list_id).where(MailingList.list_id.in_(pending)))
        )
        valid = [list_id for list_id in pending if list_id in known]
        invalid = [list_id for list_id in pending if list_id not in known and list_id not in injected]
        dropped_defaults = [list_id for list_id in pending if list_id not in known and list_id in injected]
        if dropped_defaults:
            logger.info(
                "Default mailing list is not in the catalog; omitting it",
                extra={"sync_email": email_normalized, "sync_list_ids": dropped_defaults},
            )
        if invalid:
            logger.warning(
                "Unknown mailing list ids requested",
                extra={"sync_email": email_normalized, "sync_list_ids": invalid},
            )

        if valid:
            merged[MAILING_LISTS_FIELD] = MergedField(
                update=FieldUpdate(
                    value={list_id: True for list_id in valid},
                    strategy=Strategy.OVERRIDE,
                    modified_at=entry.update.modified_at,
                ),
                envelope=entry.envelope,
            )
        else:
            del merged[MAILING_LISTS_FIELD]
        return invalid

    def _baselines_for(self, email_normalized: str) -> dict[str, DestinationFieldBaseline]:
        rows = self.session.scalars(
            select(DestinationFieldBaseline).where(DestinationFieldBaseline.email_normalized == email_normalized)
        )
        return {row.field_name: row for row in rows}

    # Outcome recording --------------------------------------------------

    def _record_success(
        self,
        email_normalized: str,
        envelopes: Sequence[OutboxEnvelope],
        filtered: Mapping[str, MergedField],
        payload: Mapping[str, Any],
        baselines: dict[str, DestinationFieldBaseline],
        pre_call: Mapping[str, Any],
        response: Mapping[str, Any],
        request_id: str,
    ) -> None:
        now = self.clock()
        for name, value in payload.items():
            if name == MAILING_LISTS_FIELD:
                continue
            entry = filtered[name]
            sent_value = canonicalize(value)
            baseline = baselines.get(name)
            if baseline is None:
                baseline = DestinationFieldBaseline(email_normalized=email_normalized, field_name=name)
                self.session.add(baseline)
                baselines[name] = baseline
            baseline.update_sent_value(sent_value, now=now, expires_in_days=self.baseline_ttl_days)

            former = pre_call.get(name)
            if name in pre_call and values_equal(former, sent_value):
                continue
            if name not in pre_call and sent_value is None:
                continue
            self.session.add(
                self._audit(
                    email_normalized,
                    name,
                    former,
                    sent_value,
                    entry,
                    payload,
                    response,
                    request_id,
                    now,
                )
            )

        if MAILING_LISTS_FIELD in payload:
            self._record_subscriptions(
                email_normalized,
                list(payload[MAILING_LISTS_FIELD]),
                filtered[MAILING_LISTS_FIELD],
                envelopes,
                request_id,
                now,
            )

    def _audit(
        self,
        email_normalized: str,
        name: str,
        former: Any,
        sent_value: Any,
        entry: MergedField,
        payload: Mapping[str, Any],
        response: Mapping[str, Any],
        request_id: str,
        now: datetime,
    ) -> ContactChangeAudit:
        provenance = dict(entry.envelope.provenance or {}) if entry.envelope is not None else {}
        field_provenance = next(
            (
                item
                for item in provenance.get("fields") or []
                if name in (item.get("destination_fields") or [])
            ),
            {},
        )
        audit_provenance: dict[str, Any] = {
            "sync_source_type": provenance.get("sync_source_type"),
            "destination_response": dict(response),
            "destination_payload_sent": dict(payload),
        }
        if provenance.get("sync_source_metadata"):
            audit_provenance["sync_source_metadata"] = provenance["sync_source_metadata"]
        if field_provenance.get("derivation"):
            audit_provenance["derivation"] = field_provenance["derivation"]
        if entry.envelope is None:
            audit_provenance["initial_field"] = True

        return ContactChangeAudit(
            occurred_at=now,
            email_normalized=email_normalized,
            field_name=name,
            former_value=former,
            new_value=sent_value,
            former_source_value=field_provenance.get("former_sync_source_value"),
            new_source_value=field_provenance.get("new_sync_source_value"),
            strategy=entry.update.strategy.value,
            sync_source_id=provenance.get("sync_source_id"),
            sync_source_table_id=provenance.get("sync_source_table_id"),
            sync_source_record_id=provenance.get("sync_source_record_id"),
            sync_source_field_id=field_provenance.get("sync_source_field_id"),
            provenance=audit_provenance,
            request_id=request_id,
        )

    def _record_subscriptions(
        self,
        email_normalized: str,
        list_ids: Sequence[str],
        entry: MergedField,
        envelopes: Sequence[OutboxEnvelope],
        request_id: str,
        now: datetime,
    ) -> None:
        names = dict(
            self.session.execute(
                select(MailingList.list_id, MailingList.name).where(MailingList.list_id.in_(list(list_ids)))
            ).all()
        )
        requested_by: dict[str, OutboxEnvelope] = {}
        for envelope in envelopes:
            lists_entry = (envelope.payload or {}).get(MAILING_LISTS_FIELD)
            if lists_entry:
                for list_id in _list_ids(FieldUpdate.from_payload(lists_entry)):
                    requested_by.setdefault(list_id, envelope)
        for list_id in list_ids:
            source_envelope = requested_by.get(list_id, entry.envelope)
            provenance = dict(source_envelope.provenance or {}) if source_envelope is not None else {}
            try:
                with self.session.begin_nested():
                    self.session.add(
                        ListSubscription(email_normalized=email_normalized, list_id=list_id, subscribed_at=now)
                    )
            except IntegrityError:
                logger.debug(
                    "Subscription already recorded",
                    extra={"sync_email": email_normalized, "sync_list_id": list_id},
                )
                continue
            try:
                with self.session.begin_nested():
                    self.session.add(
                        ContactChangeAudit(
                            occurred_at=now,
                            email_normalized=email_normalized,
                            field_name=f"mailingList:{list_id}",
                            former_value=False,
                            new_value=True,
                            strategy="subscribe",
                            sync_source_id=provenance.get("sync_source_id"),
                            sync_source_table_id=provenance.get("sync_source_table_id"),
                            sync_source_record_id=provenance.get("sync_source_record_id"),
                            provenance={
                                "list": {"id": list_id, "name": names.get(list_id)},
                                "sync_source_type": provenance.get("sync_source_type"),
                            },
                            request_id=request_id,
                        )
                    )
            except SQLAlchemyError as exc:
                logger.error(
                    "Failed to write subscription audit; subscription kept: %s",
                    exc,
                    extra={"sync_email": email_normalized, "sync_list_id": list_id},
                )

    def _finish(
        self,
        envelopes: Sequence[OutboxEnvelope],
        payload: Mapping[str, Any],
        invalid_ids: Sequence[str],
        result: IdentityResult,
    ) -> None:
        now = self.clock()
        invalid = set(invalid_ids)
        sent_list_ids = set(payload.get(MAILING_LISTS_FIELD) or {})
        for envelope in envelopes:
            own_fields = set((envelope.payload or {}).keys())
            transmitted = (own_fields & set(payload)) - {MAILING_LISTS_FIELD}
            warned: list[str] = []
            if MAILING_LISTS_FIELD in own_fields:
                requested = _list_ids(FieldUpdate.from_payload(envelope.payload[MAILING_LISTS_FIELD] or {}))
                # Only this envelope's own ids count; merged lists carry other envelopes' ids too.
                if sent_list_ids.intersection(requested):
                    transmitted.add(MAILING_LISTS_FIELD)
                warned = [list_id for list_id in requested if list_id in invalid]

            if not transmitted:
                status = EnvelopeStatus.IGNORED_NOOP
            elif transmitted == own_fields and not warned:
                status = EnvelopeStatus.SENT
            else:
                status = EnvelopeStatus.PARTIALLY_SENT

            error = None
            if warned:
                error = {"validation_warnings": {"invalid_list_ids": warned}}
            # A transient error recorded by an earlier attempt no longer applies.
            envelope.error = error
            envelope.mark(status, now=now)
            result.statuses[envelope.id] = status.value
        self.session.commit()
        for status, count in Counter(result.statuses.values()).items():
            record_envelope_status(status, count)

    def _record_error(self, envelopes: Sequence[OutboxEnvelope], exc: BaseException, error: dict[str, Any]) -> None:
        """Rate limits and timeouts leave envelopes queued for the retry; anything else fails them."""
        if not isinstance(exc, TRANSIENT_ERRORS):
            self._mark_failed(envelopes, error)
            return
        self.session.rollback()
        for envelope in envelopes:
            envelope.error = {**error, "retryable": True}
        self.session.commit()
        logger.warning(
            "Transient destination error; envelopes stay queued",
            extra={"sync_envelope_ids": [envelope.id for envelope in envelopes], "sync_error_class": error["class"]},
        )

    def _mark_failed(self, envelopes: Sequence[OutboxEnvelope], error: dict[str, Any]) -> None:
        self.session.rollback()
        now = self.clock()
        for envelope in envelopes:
            envelope.mark(EnvelopeStatus.FAILED, error=error, now=now)
        self.session.commit()
        record_envelope_status(EnvelopeStatus.FAILED.value, len(envelopes))


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DispatchSummary",
    "DispatchWorker",
    "IdentityResult",
    "MergedField",
    "apply_strategies",
    "merge_envelopes",
]
