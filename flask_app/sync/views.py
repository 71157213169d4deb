"""
Sync blueprint endpoints for engine and worker health.
"""

from __future__ import annotations

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, select

from flask_app.models.base import db
from flask_app.models.sync import OutboxEnvelope, SyncSource

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .registry import AdapterDescriptor

sync_blueprint = Blueprint("sync", __name__, url_prefix="/sync")


def _serialize_adapter(adapter: AdapterDescriptor, readiness: dict) -> dict:
    return {
        "name": adapter.name,
        "title": adapter.title,
        "summary": adapter.summary,
        "optional_dependencies": list(adapter.optional_dependencies),
        "readiness": readiness.get(adapter.name, {}),
    }


def _source_counts() -> dict[str, int]:
    active = db.session.scalar(
        select(func.count()).select_from(SyncSource).where(SyncSource.deleted_at.is_(None))
    )
    deleted = db.session.scalar(
        select(func.count()).select_from(SyncSource).where(SyncSource.deleted_at.is_not(None))
    )
    return {"active": int(active or 0), "deleted": int(deleted or 0)}


def _outbox_counts() -> dict[str, int]:
    rows = db.session.execute(
        select(OutboxEnvelope.status, func.count()).group_by(OutboxEnvelope.status)
    ).all()
    return {getattr(status, "value", status): int(count) for status, count in rows}


@sync_blueprint.get("/health")
def sync_healthcheck():
    """Report engine state, configured adapters and their readiness."""
    state = current_app.extensions.get("sync", {})
    adapters = state.get("active_adapters", ())
    readiness = state.get("adapter_readiness", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "adapters": [_serialize_adapter(adapter, readiness) for adapter in adapters],
                "sources": _source_counts(),
                "outbox": _outbox_counts(),
            }
        ),
        200,
    )


@sync_blueprint.get("/worker_health")
def sync_worker_health():
    """Validate worker availability via the heartbeat task."""
    state = current_app.extensions.get("sync", {})
    enabled = state.get("enabled", False)
    worker_enabled = state.get("worker_enabled", False)
    try:
        timeout_seconds = float(request.args.get("timeout", 5))
    except (TypeError, ValueError):
        timeout_seconds = 5.0

    payload = {
        "sync_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set SYNC_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        payload["status"] = "ok"
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover - surfaced to the caller
        current_app.logger.exception("Sync worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500
