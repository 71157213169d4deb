"""
Operational CLI for the sync engine (``flask sync ...``).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import AppGroup, ScriptInfo
from sqlalchemy import select

from flask_app.models.base import db
from flask_app.models.sync import DeletedReason, SourceType, SyncSource, SyncSourceIgnore
from flask_app.utils.sync import get_sync_adapters, is_sync_enabled, sync_int

from . import factories
from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .pipeline.catalog import sync_mailing_lists_exclusively
from .pipeline.contacts import refresh_contact_from_destination
from .pipeline.ignore_matcher import IgnorePatternError, add_ignore, remove_ignore
from .pipeline.pruning import (
    prune_destination_baselines,
    prune_extraction_entries,
    prune_field_baselines,
    prune_outbox,
)
from .pipeline.reconciler import DiscoveryReconciler
from .pipeline.scheduler import SourceNotFoundError

SOURCE_CHOICES = click.Choice([member.value for member in SourceType])


@click.group(name="sync", cls=AppGroup, invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    Sync engine management commands.

    Displays configured adapters when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_sync_enabled(app):
        raise click.ClickException("Sync engine is disabled via SYNC_ENABLED=false. Enable it to run sync commands.")
    if ctx.invoked_subcommand is None:
        adapters = get_sync_adapters(app)
        if not adapters:
            click.echo("No sync adapters configured.")
        else:
            click.echo("Enabled sync adapters:")
            for adapter in adapters:
                click.echo(f"  - {adapter}")


def get_disabled_sync_group() -> click.Group:
    """Return a minimal command group that informs the operator the engine is disabled."""

    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Sync Celery app is unavailable. Ensure SYNC_ENABLED=true and the application factory ran init_sync."
        )
    return celery_app


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _resolve_source(identifier: str, source: Optional[str]) -> SyncSource:
    try:
        return factories.build_scheduler().resolve(identifier, source=source)
    except SourceNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc


# Worker ---------------------------------------------------------------------


@sync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the sync background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("sync", {})
    if not state.get("worker_enabled") and not app.config.get("SYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: SYNC_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    state = app.extensions.get("sync")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting sync worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    _echo_json(payload)


@sync_cli.command("beat")
@click.option("--loglevel", default="info", show_default=True)
@click.option(
    "--schedule-db",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Where beat stores its last-run state (defaults to the instance folder).",
)
@click.pass_context
def beat_run(ctx, loglevel: str, schedule_db: Optional[Path]):
    """Start Celery beat with the YAML-defined periodic schedule."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    schedule_db = schedule_db or Path(app.instance_path) / "celerybeat-schedule"
    schedule_db.parent.mkdir(parents=True, exist_ok=True)
    entries = sorted(celery_app.conf.beat_schedule or ())
    click.echo(f"Starting sync beat with {len(entries)} schedule entr{'y' if len(entries) == 1 else 'ies'}")
    try:
        celery_app.start(argv=["beat", "--loglevel", loglevel, "--schedule", str(schedule_db)])
    except KeyboardInterrupt:
        click.echo("Beat shutdown requested. Exiting...")


# Pipeline stages ------------------------------------------------------------


@sync_cli.command("discover")
@click.pass_context
def discover(ctx):
    """Reconcile tracked sources against every base the source tokens can see."""
    ctx.ensure_object(ScriptInfo).load_app()
    adapters = list(factories.discovery_adapters())
    if not adapters:
        raise click.ClickException("No discovery adapters are configured with credentials.")
    summaries = DiscoveryReconciler(db.session).reconcile_all(adapters)
    _echo_json([summary.as_dict() for summary in summaries])


@sync_cli.command("enqueue")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Poll reserved sources in this process instead of queueing them for the worker.",
)
@click.pass_context
def enqueue(ctx, inline: bool):
    """Reserve due sources and queue a poll for each."""
    ctx.ensure_object(ScriptInfo).load_app()
    from .tasks import poll_source

    if inline:
        dispatch = lambda sync_source_id: poll_source.apply(args=(sync_source_id,))  # noqa: E731
    else:
        dispatch = lambda sync_source_id: poll_source.delay(sync_source_id)  # noqa: E731
    summary = factories.build_scheduler().enqueue_due(dispatch, batch_size=sync_int("ENQUEUE_BATCH_SIZE", 200))
    click.echo(f"Reserved {summary.reserved} source(s) in {summary.batches} batch(es).")


@sync_cli.command("dispatch")
@click.pass_context
def dispatch(ctx):
    """Deliver queued outbox envelopes to the destination."""
    ctx.ensure_object(ScriptInfo).load_app()
    summary = factories.build_dispatch_worker().run()
    _echo_json(summary.as_dict())


@sync_cli.command("refresh-contact")
@click.argument("email")
@click.option("--enqueue", "enqueue_only", is_flag=True, help="Queue the refresh for the worker instead.")
@click.pass_context
def refresh_contact(ctx, email: str, enqueue_only: bool):
    """Reseed a contact's destination baselines and list subscriptions from the destination."""
    ctx.ensure_object(ScriptInfo).load_app()
    if enqueue_only:
        from .tasks import refresh_contact_task

        refresh_contact_task.delay(email)
        click.echo("Refresh queued.")
        return
    try:
        summary = refresh_contact_from_destination(
            factories.build_loops_client(),
            email,
            session=db.session,
            expires_in_days=sync_int("DESTINATION_BASELINE_TTL_DAYS", 90),
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="EMAIL") from exc
    if not summary.found:
        raise click.ClickException(f"No destination contact for {summary.email_normalized}.")
    _echo_json(summary.as_dict())


# Sources --------------------------------------------------------------------


@sync_cli.command("sources")
@click.option(
    "--lifecycle",
    type=click.Choice(["active", "deleted", "all"]),
    default="active",
    show_default=True,
)
@click.option("--source", type=SOURCE_CHOICES, help="Restrict to one source system.")
@click.pass_context
def list_sources(ctx, lifecycle: str, source: Optional[str]):
    """List tracked sources."""
    ctx.ensure_object(ScriptInfo).load_app()
    stmt = {
        "active": SyncSource.active_only,
        "deleted": SyncSource.deleted_only,
        "all": SyncSource.include_deleted,
    }[lifecycle]()
    if source:
        stmt = stmt.where(SyncSource.source == source)
    rows = db.session.scalars(stmt.order_by(SyncSource.source, SyncSource.source_id)).all()
    if not rows:
        click.echo("No sync sources found.")
        return
    for row in rows:
        state = "active" if not row.is_deleted else f"deleted ({row.deleted_reason.value if row.deleted_reason else '-'})"
        click.echo(
            f"{row.id}\t{row.source}:{row.source_id}\t{row.humanized_name}\t{state}\t"
            f"failures={row.consecutive_failures}\tnext_poll_at={row.next_poll_at}"
        )


@sync_cli.command("full-resync")
@click.argument("identifier")
@click.option("--source", type=SOURCE_CHOICES, help="Source system when IDENTIFIER is an external id.")
@click.option("--enqueue", "enqueue_now", is_flag=True, help="Queue a poll immediately.")
@click.pass_context
def full_resync(ctx, identifier: str, source: Optional[str], enqueue_now: bool):
    """Clear the cursor and field fingerprints so the next poll re-reads every row."""
    ctx.ensure_object(ScriptInfo).load_app()
    row = _resolve_source(identifier, source)
    factories.build_scheduler().request_full_resync(row.id)
    click.echo(f"Full resync requested for {row.source}:{row.source_id} (id={row.id}).")
    if enqueue_now:
        from .tasks import poll_source

        poll_source.delay(row.id)
        click.echo("Poll queued.")


@sync_cli.command("retire")
@click.argument("identifier")
@click.option("--source", type=SOURCE_CHOICES, help="Source system when IDENTIFIER is an external id.")
@click.pass_context
def retire(ctx, identifier: str, source: Optional[str]):
    """Manually retire a tracked source. Discovery will not revive it."""
    ctx.ensure_object(ScriptInfo).load_app()
    row = _resolve_source(identifier, source)
    if row.is_deleted:
        raise click.ClickException(f"Sync source {row.id} is already retired.")
    factories.build_scheduler().retire(row.id, DeletedReason.MANUAL)
    click.echo(f"Retired {row.source}:{row.source_id} (id={row.id}).")


@sync_cli.command("restore")
@click.argument("identifier")
@click.option("--source", type=SOURCE_CHOICES, help="Source system when IDENTIFIER is an external id.")
@click.pass_context
def restore(ctx, identifier: str, source: Optional[str]):
    """Reactivate a retired source."""
    ctx.ensure_object(ScriptInfo).load_app()
    row = _resolve_source(identifier, source)
    if not row.is_deleted:
        raise click.ClickException(f"Sync source {row.id} is already active.")
    try:
        factories.build_scheduler().restore(row.id)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restored {row.source}:{row.source_id} (id={row.id}).")


# Ignore patterns ------------------------------------------------------------


@sync_cli.group(name="ignore")
def ignore_group():
    """Manage ignore patterns for discovered source ids."""


@ignore_group.command("add")
@click.argument("pattern")
@click.option("--source", type=SOURCE_CHOICES, default=SourceType.AIRTABLE.value, show_default=True)
@click.option("--reason", help="Why this pattern is ignored.")
@click.pass_context
def ignore_add(ctx, pattern: str, source: str, reason: Optional[str]):
    """Add a pattern (``^id$`` for an exact id) and retire the sources it matches."""
    ctx.ensure_object(ScriptInfo).load_app()
    try:
        record, retired = add_ignore(source, pattern, reason=reason, session=db.session)
    except IgnorePatternError as exc:
        db.session.rollback()
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Added ignore pattern {record.source_id!r} for {source}; retired {len(retired)} source(s).")


@ignore_group.command("remove")
@click.argument("pattern")
@click.option("--source", type=SOURCE_CHOICES, default=SourceType.AIRTABLE.value, show_default=True)
@click.pass_context
def ignore_remove(ctx, pattern: str, source: str):
    """Remove a pattern. Retired sources stay retired until restored."""
    ctx.ensure_object(ScriptInfo).load_app()
    if not remove_ignore(source, pattern, session=db.session):
        raise click.ClickException(f"No ignore pattern {pattern!r} for {source}.")
    click.echo(f"Removed ignore pattern {pattern!r} for {source}.")


@ignore_group.command("list")
@click.option("--source", type=SOURCE_CHOICES, help="Restrict to one source system.")
@click.pass_context
def ignore_list(ctx, source: Optional[str]):
    ctx.ensure_object(ScriptInfo).load_app()
    stmt = select(SyncSourceIgnore).order_by(SyncSourceIgnore.source, SyncSourceIgnore.source_id)
    if source:
        stmt = stmt.where(SyncSourceIgnore.source == source)
    rows = db.session.scalars(stmt).all()
    if not rows:
        click.echo("No ignore patterns configured.")
        return
    for row in rows:
        click.echo(f"{row.source}\t{row.source_id}\t{row.reason or ''}")


# Mailing lists and retention --------------------------------------------------


@sync_cli.group(name="lists")
def lists_group():
    """Manage the destination mailing-list catalog."""


@lists_group.command("sync")
@click.pass_context
def lists_sync(ctx):
    """Refresh the local mailing-list catalog from the destination."""
    ctx.ensure_object(ScriptInfo).load_app()
    summary = sync_mailing_lists_exclusively(factories.build_loops_client(), session=db.session)
    if summary is None:
        raise click.ClickException("Another process is already syncing the mailing-list catalog.")
    click.echo(f"Mailing lists synced: {summary.created} created, {summary.updated} updated, {summary.deleted} deleted.")


@sync_cli.command("prune")
@click.option("--field-baselines-days", type=int, help="Override SYNC_PRUNE_FIELD_BASELINES_DAYS.")
@click.option("--destination-baselines-days", type=int, help="Override SYNC_PRUNE_DESTINATION_BASELINES_DAYS.")
@click.option("--outbox-days", type=int, help="Override SYNC_PRUNE_OUTBOX_DAYS.")
@click.option("--extraction-cache-days", type=int, help="Override SYNC_PRUNE_EXTRACTION_CACHE_DAYS.")
@click.pass_context
def prune(
    ctx,
    field_baselines_days: Optional[int],
    destination_baselines_days: Optional[int],
    outbox_days: Optional[int],
    extraction_cache_days: Optional[int],
):
    """Run every retention pruner once."""
    ctx.ensure_object(ScriptInfo).load_app()
    results = {
        "field_baselines": prune_field_baselines(
            field_baselines_days or sync_int("PRUNE_FIELD_BASELINES_DAYS", 30), session=db.session
        ),
        "destination_baselines": prune_destination_baselines(
            destination_baselines_days or sync_int("PRUNE_DESTINATION_BASELINES_DAYS", 90), session=db.session
        ),
        "outbox": prune_outbox(outbox_days or sync_int("PRUNE_OUTBOX_DAYS", 30), session=db.session),
        "extraction_cache": prune_extraction_entries(
            extraction_cache_days or sync_int("PRUNE_EXTRACTION_CACHE_DAYS", 90), session=db.session
        ),
    }
    _echo_json(results)
