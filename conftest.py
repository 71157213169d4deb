# conftest.py

import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import create_app  # noqa: E402
from flask_app.models import SyncSource, db  # noqa: E402
from flask_app.sync.adapters.airtable import FieldSchema, SourceRecord, TableSchema  # noqa: E402

SCHEDULE_PATH = Path(__file__).parent / "config" / "sync_schedule.yaml"


def build_test_app(db_uri, **overrides):
    """Create an isolated sync app with an eager in-memory Celery configuration."""
    config = {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": db_uri,
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 5}},
        "SECRET_KEY": "test-secret-key-for-testing-only",
        "SYNC_ENABLED": True,
        "SYNC_ADAPTERS": ("airtable",),
        "SYNC_WORKER_ENABLED": False,
        "SYNC_SCHEDULE_PATH": str(SCHEDULE_PATH),
        "CELERY_BROKER_URL": "memory://",
        "CELERY_RESULT_BACKEND": "cache+memory://",
        "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
        "AIRTABLE_PERSONAL_ACCESS_TOKEN": "pat-test",
        "LOOPS_API_KEY": "loops-test",
        "OPENAI_API_KEY": None,
        "ENABLE_FILE_LOGGING": False,
        "ENABLE_CONSOLE_LOGGING": False,
    }
    config.update(overrides)
    return create_app(config)


@pytest.fixture
def db_path():
    """Per-test SQLite file; lock rows and buckets need real cross-connection visibility."""
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")
    try:
        yield temp_db
    finally:
        try:
            os.close(db_fd)
        except OSError:
            pass
        for suffix in ("", "-wal", "-shm"):
            try:
                if os.path.exists(temp_db + suffix):
                    os.unlink(temp_db + suffix)
            except OSError:
                pass


@pytest.fixture
def app_overrides():
    """Override in a test module to adjust the app configuration."""
    return {}


@pytest.fixture(scope="function")
def app(db_path, app_overrides):
    """Create and configure a test Flask application"""
    flask_app = build_test_app(f"sqlite:///{db_path}", **app_overrides)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


# Collaborator fakes ---------------------------------------------------------


class FakeLoopsClient:
    """In-memory destination recording every call."""

    def __init__(self, contacts=None, lists=None):
        self.contacts = {email: dict(fields) for email, fields in (contacts or {}).items()}
        self.lists = list(lists or [])
        self.find_calls = []
        self.update_calls = []
        self.list_calls = 0
        self.fail_with = None
        self.response = None

    def find_contact(self, email):
        self.find_calls.append(email)
        contact = self.contacts.get(email)
        return dict(contact) if contact is not None else None

    def update_contact(self, email, fields):
        self.update_calls.append((email, dict(fields)))
        if self.fail_with is not None:
            raise self.fail_with
        contact = self.contacts.setdefault(email, {"email": email, "id": f"contact-{len(self.contacts) + 1}"})
        for name, value in fields.items():
            if name != "mailingLists":
                contact[name] = value
        if self.response is not None:
            return dict(self.response)
        return {"success": True, "id": f"req-{len(self.update_calls)}"}

    def list_mailing_lists(self):
        self.list_calls += 1
        return [dict(item) for item in self.lists]


class FakeAirtableClient:
    """In-memory Airtable with schemas and records per base."""

    def __init__(self, bases=None):
        self.bases = list(bases or [])
        self.schemas = {}
        self.records = {}
        self.formulas = []

    def list_ids_with_names(self):
        return [dict(base) for base in self.bases]

    def get_schema(self, base_id):
        return dict(self.schemas.get(base_id, {}))

    def list_records(self, base_id, table_id, *, filter_formula=None):
        self.formulas.append((base_id, table_id, filter_formula))
        return iter(list(self.records.get((base_id, table_id), [])))

    def add_table(self, base_id, table_id, fields, name="People"):
        schema = TableSchema(
            id=table_id,
            name=name,
            fields=tuple(FieldSchema(id=field_id, name=field_name, type=field_type) for field_id, field_name, field_type in fields),
        )
        self.schemas.setdefault(base_id, {})[table_id] = schema
        return schema

    def set_records(self, base_id, table_id, records):
        self.records[(base_id, table_id)] = [
            SourceRecord(id=record_id, fields=dict(fields)) for record_id, fields in records
        ]


class FakeExtractor:
    """Returns canned structured output and records prompts."""

    def __init__(self, response=None, error=None):
        self.response = dict(response or {})
        self.error = error
        self.calls = []

    def extract_structured(self, prompt, schema):
        self.calls.append((prompt, dict(schema)))
        if self.error is not None:
            raise self.error
        return dict(self.response)


@pytest.fixture
def loops_client():
    return FakeLoopsClient()


@pytest.fixture
def airtable_client():
    return FakeAirtableClient()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def make_source():
    """Factory persisting an active sync source."""

    def _make(source_id="appBase1", **kwargs):
        values = {
            "source": "airtable",
            "source_id": source_id,
            "next_poll_at": datetime.now(timezone.utc),
        }
        values.update(kwargs)
        row = SyncSource(**values)
        db.session.add(row)
        db.session.commit()
        return row

    return _make
