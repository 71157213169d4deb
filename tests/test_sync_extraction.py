from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from flask_app.models import ExtractionCacheEntry, db
from flask_app.sync.extraction import ExtractionError
from flask_app.sync.extraction.cache import CachedExtractor, cache_key, prune_extraction_cache
from flask_app.sync.extraction.openai_client import OpenAIExtractor
from flask_app.sync.extraction.processors import extract_full_address, extract_full_name
from flask_app.sync.extraction.prompts import FULL_NAME

SCHEMA = {"type": "object", "properties": {"firstName": {"type": "string"}}}


def _entries():
    return db.session.scalar(select(func.count()).select_from(ExtractionCacheEntry))


def test_cache_key_depends_on_prompt_schema_and_temperature():
    base = cache_key("prompt", SCHEMA)
    assert base == cache_key("prompt", dict(reversed(list(SCHEMA.items()))))
    assert base != cache_key("prompt!", SCHEMA)
    assert base != cache_key("prompt", {"type": "object"})
    assert base != cache_key("prompt", SCHEMA, temperature=0.7)


def test_cached_extractor_calls_backend_once(app, extractor):
    extractor.response = {"firstName": "Zach"}
    cached = CachedExtractor(extractor)

    assert cached.extract_structured("who is this", SCHEMA) == {"firstName": "Zach"}
    extractor.response = {"firstName": "Someone else"}
    assert cached.extract_structured("who is this", SCHEMA) == {"firstName": "Zach"}

    assert len(extractor.calls) == 1
    assert _entries() == 1
    entry = db.session.scalar(select(ExtractionCacheEntry))
    assert entry.request_json["prompt"] == "who is this"
    assert entry.response_json == {"parsed": {"firstName": "Zach"}}
    assert entry.bytes_size > 0


def test_backend_failures_are_not_cached(app, extractor):
    extractor.error = ExtractionError("down")
    cached = CachedExtractor(extractor)

    with pytest.raises(ExtractionError):
        cached.extract_structured("who is this", SCHEMA)
    assert _entries() == 0


def test_prune_removes_idle_entries(app, extractor):
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    extractor.response = {"firstName": "Old"}
    CachedExtractor(extractor, clock=lambda: now - timedelta(days=120)).extract_structured("old", SCHEMA)
    CachedExtractor(extractor, clock=lambda: now - timedelta(days=5)).extract_structured("fresh", SCHEMA)

    assert prune_extraction_cache(timedelta(days=90), session=db.session, now=now) == 1
    assert db.session.scalar(select(ExtractionCacheEntry.request_json))["prompt"] == "fresh"


def test_processors_keep_declared_output_fields(extractor):
    extractor.response = {"firstName": "Zach", "lastName": "Latta", "middleName": "x"}

    assert extract_full_name("zach latta", extractor) == {"firstName": "Zach", "lastName": "Latta"}
    assert extract_full_name("   ", extractor) == {}
    assert len(extractor.calls) == 1
    assert extractor.calls[0][1] == FULL_NAME.schema

    extractor.response = {"addressCity": "Shelburne", "addressZipCode": "05482", "unrelated": 1}
    assert extract_full_address("Shelburne VT 05482", extractor) == {
        "addressCity": "Shelburne",
        "addressZipCode": "05482",
    }


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _openai(content):
    completions = FakeCompletions(content)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIExtractor("sk-test", client=client), completions


def test_openai_extractor_parses_json_content():
    extractor, completions = _openai('{"firstName": "Zach"}')

    assert extractor.extract_structured("zach", SCHEMA) == {"firstName": "Zach"}
    request = completions.requests[0]
    assert request["response_format"] == {"type": "json_object"}
    assert request["temperature"] == 0
    assert request["messages"][1] == {"role": "user", "content": "zach"}


@pytest.mark.parametrize("content", [None, "not json", "[1, 2]"])
def test_openai_extractor_rejects_unusable_content(content):
    extractor, _ = _openai(content)

    with pytest.raises(ExtractionError):
        extractor.extract_structured("zach", SCHEMA)
