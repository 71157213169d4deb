import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict

import pytest
from flask import Flask

from flask_app.sync import get_celery_app, init_sync
from flask_app.sync.celery_app import DEFAULT_QUEUE_NAME
from flask_app.sync.schedule import ScheduleLoadError, load_schedule

SCHEDULE_PATH = Path(__file__).resolve().parents[1] / "config" / "sync_schedule.yaml"
EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def build_sync_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with the sync engine enabled for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        SYNC_ENABLED=True,
        SYNC_ADAPTERS=("airtable",),
        AIRTABLE_PERSONAL_ACCESS_TOKEN="pat-test",
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
    )
    app.config.update(overrides)
    init_sync(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_sync_app(
        CELERY_BROKER_URL=None,
        CELERY_RESULT_BACKEND=None,
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.beat_schedule == {}


def test_celery_config_accepts_json_string(tmp_path):
    app = build_sync_app(
        CELERY_BROKER_URL=None,
        CELERY_RESULT_BACKEND=None,
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG=json.dumps({"task_always_eager": True, "worker_prefetch_multiplier": 4}),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.task_always_eager is True
    assert celery_app.conf.worker_prefetch_multiplier == 4


def test_celery_registers_sync_tasks_and_beat_schedule(app):
    celery_app = get_celery_app(app)

    for name in (
        "sync.healthcheck",
        "sync.discovery.reconcile",
        "sync.sources.enqueue_due",
        "sync.sources.poll",
        "sync.outbox.dispatch",
        "sync.lists.sync_catalog",
        "sync.contacts.refresh",
        "sync.prune.outbox",
    ):
        assert name in celery_app.tasks
    schedule = celery_app.conf.beat_schedule
    assert schedule["sources-enqueue-due"]["task"] == "sync.sources.enqueue_due"
    assert schedule["sources-enqueue-due"]["schedule"] == timedelta(seconds=15)


def test_disabled_engine_has_no_celery_app():
    app = build_sync_app(SYNC_ENABLED=False)

    assert get_celery_app(app) is None
    assert app.extensions["sync"]["enabled"] is False
    result = app.test_cli_runner().invoke(args=["sync"])
    assert result.exit_code != 0
    assert "SYNC_ENABLED=false" in result.output


def test_unknown_adapter_is_rejected():
    with pytest.raises(ValueError, match="Unknown sync adapters"):
        build_sync_app(SYNC_ADAPTERS=("airtable", "hubspot"), CELERY_CONFIG=EAGER)


def test_worker_ping_cli():
    app = build_sync_app(SYNC_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)

    runner = app.test_cli_runner()
    result = runner.invoke(args=["sync", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch):
    app = build_sync_app(SYNC_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    result = app.test_cli_runner().invoke(
        args=["sync", "worker", "run", "--loglevel", "debug", "--concurrency", "2", "--pool", "solo"]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == ["worker", "--loglevel", "debug", "-Q", "sync", "--concurrency", "2", "--pool", "solo"]
    assert app.extensions["sync"]["worker_enabled"] is True


def test_beat_starts_with_schedule_entries(app, monkeypatch, tmp_path):
    celery_app = get_celery_app(app)
    calls: Dict[str, Any] = {}
    monkeypatch.setattr(celery_app, "start", lambda argv=None: calls.setdefault("argv", argv))

    result = app.test_cli_runner().invoke(args=["sync", "beat", "--schedule-db", str(tmp_path / "beat-state")])

    assert result.exit_code == 0, result.output
    assert "8 schedule entries" in result.output
    assert calls["argv"][:3] == ["beat", "--loglevel", "info"]


def test_worker_health_endpoint_states():
    app = build_sync_app(CELERY_CONFIG=EAGER)
    client = app.test_client()

    disabled_resp = client.get("/sync/worker_health")
    assert disabled_resp.status_code == 200
    disabled_payload = disabled_resp.get_json()
    assert disabled_payload["status"] == "disabled"
    assert disabled_payload["worker_enabled"] is False

    eager_app = build_sync_app(SYNC_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)
    ok_resp = eager_app.test_client().get("/sync/worker_health")
    assert ok_resp.status_code == 200
    ok_payload = ok_resp.get_json()
    assert ok_payload["status"] == "ok"
    assert ok_payload["heartbeat"]["status"] == "ok"
    assert ok_payload["queue"] == "sync"


def test_repository_schedule_loads():
    entries = {entry.name: entry for entry in load_schedule(SCHEDULE_PATH)}

    assert len(entries) == 8
    assert entries["outbox-dispatch"].task == "sync.outbox.dispatch"
    assert entries["prune-outbox"].every == 86400


@pytest.mark.parametrize(
    "content, message",
    [
        ("schedule: [1, 2]", "must be a mapping"),
        ("schedule:\n  a:\n    every: 10\n", "missing 'task'"),
        ("schedule:\n  a:\n    task: x\n", "missing 'every'"),
        ("schedule:\n  a:\n    task: x\n    every: -1\n", "positive"),
        ("schedule:\n  a:\n    task: x\n    every: soon\n", "invalid 'every'"),
        ("schedule: {a: [", "Failed to parse"),
    ],
)
def test_malformed_schedule_files_are_rejected(tmp_path, content, message):
    path = tmp_path / "schedule.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ScheduleLoadError, match=message):
        load_schedule(path)


def test_missing_schedule_file(tmp_path):
    with pytest.raises(ScheduleLoadError, match="not found"):
        load_schedule(tmp_path / "nope.yaml")
