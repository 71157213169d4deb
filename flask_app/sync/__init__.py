"""
Sync engine feature package.

Mounts the health blueprint and ``flask sync`` CLI when ``SYNC_ENABLED`` is
set, validates configured adapters against the registry and records adapter
readiness for the health endpoint.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Tuple

from flask import Flask

from flask_app.utils.sync import get_sync_adapters, is_sync_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .metrics import record_adapter_status
from .registry import AdapterDescriptor, get_adapter_registry, resolve_adapters
from .views import sync_blueprint

SYNC_EXTENSION_KEY = "sync"

__all__ = [
    "SYNC_EXTENSION_KEY",
    "get_adapter_readiness",
    "get_celery_app",
    "init_sync",
    "refresh_adapter_readiness",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_adapters": (),
            "active_adapters": (),
            "worker_enabled": False,
            "celery_app": None,
            "adapter_readiness": {},
        },
    )


def _compute_adapter_readiness(
    app: Flask,
    descriptors: Iterable[AdapterDescriptor],
    *,
    require_auth_ping: bool = False,
) -> Dict[str, Dict[str, Any]]:
    readiness: Dict[str, Dict[str, Any]] = {}
    for descriptor in descriptors:
        payload: Dict[str, Any] = {
            "name": descriptor.name,
            "title": descriptor.title,
            "optional_dependencies": descriptor.optional_dependencies,
        }
        if descriptor.name == "airtable":
            from .adapters.airtable import check_airtable_adapter_readiness

            result = check_airtable_adapter_readiness(app.config, require_auth_ping=require_auth_ping)
            payload.update(result.as_dict())
        else:
            missing = [var for var in descriptor.required_env_vars if not app.config.get(var)]
            payload.update(
                {
                    "status": "missing-env" if missing else "ready",
                    "missing_env_vars": missing,
                    "auth_status": "skipped",
                    "messages": [],
                }
            )
        readiness[descriptor.name] = payload
        record_adapter_status(descriptor.name, payload.get("status") == "ready")
    return readiness


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def _warn_unready(app: Flask, descriptors: Iterable[AdapterDescriptor], readiness: Mapping[str, Dict[str, Any]]) -> None:
    for descriptor in descriptors:
        payload = readiness.get(descriptor.name, {})
        status = payload.get("status")
        if status and status != "ready":
            messages = list(payload.get("messages") or ())
            app.logger.warning(
                "Sync adapter '%s' not ready (status=%s). %s",
                descriptor.name,
                status,
                "; ".join(messages) if messages else "No additional context provided.",
                extra={
                    "sync_adapter": descriptor.name,
                    "sync_adapter_status": status,
                    "sync_adapter_missing_env": payload.get("missing_env_vars"),
                },
            )


def init_sync(app: Flask) -> None:
    """
    Conditionally mount the sync blueprint, CLI and Celery app.

    State is recorded in ``app.extensions['sync']``.
    """
    enabled = is_sync_enabled(app)
    configured_adapters: Tuple[str, ...] = get_sync_adapters(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_adapters": configured_adapters,
            "worker_enabled": bool(app.config.get("SYNC_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        state["active_adapters"] = ()
        state["adapter_readiness"] = {}
        _set_cli(app, enabled=False)
        app.logger.info("Sync engine disabled via SYNC_ENABLED flag; skipping registration.")
        return

    descriptors = tuple(resolve_adapters(configured_adapters, get_adapter_registry()))
    state["active_adapters"] = descriptors
    ensure_celery_app(app, state)

    readiness_map = _compute_adapter_readiness(app, descriptors)
    state["adapter_readiness"] = readiness_map
    _warn_unready(app, descriptors, readiness_map)

    if sync_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(sync_blueprint)
    elif sync_blueprint.name not in app.blueprints:
        app.logger.warning("Sync blueprint registration skipped because the app has already handled its first request.")
    _set_cli(app, enabled=True)

    app.logger.info("Sync engine enabled with adapters: %s", ", ".join(d.name for d in descriptors) or "none")


def get_adapter_readiness(app: Flask) -> Mapping[str, Dict[str, Any]]:
    """Return cached adapter readiness information."""
    return dict(_ensure_extension_state(app).get("adapter_readiness", {}))


def refresh_adapter_readiness(app: Flask, *, require_auth_ping: bool = False) -> Mapping[str, Dict[str, Any]]:
    """Recompute adapter readiness, optionally pinging the source API."""
    state = _ensure_extension_state(app)
    readiness_map = _compute_adapter_readiness(
        app, state.get("active_adapters", ()), require_auth_ping=require_auth_ping
    )
    state["adapter_readiness"] = readiness_map
    return dict(readiness_map)
