from __future__ import annotations

import json

import pytest
import requests

from flask_app.sync.adapters import DestinationTimeoutError, RateLimitError, SourceTimeoutError
from flask_app.sync.adapters.airtable import (
    AirtableApiError,
    AirtableClient,
    check_airtable_adapter_readiness,
    ensure_airtable_adapter_ready,
)
from flask_app.sync.adapters.errors import AdapterConfigError, parse_retry_after
from flask_app.sync.adapters.loops import LoopsApiError, LoopsClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text if text is not None else ("" if payload is None else json.dumps(payload))

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, **kwargs):
        self.calls.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _airtable(responses, **kwargs):
    session = FakeSession(responses)
    sleeps = []
    client = AirtableClient("pat-test", session=session, sleep_fn=sleeps.append, **kwargs)
    return client, session, sleeps


def test_airtable_discovery_follows_offsets():
    client, session, _ = _airtable(
        [
            FakeResponse(payload={"bases": [{"id": "appA", "name": "Alpha"}], "offset": "next"}),
            FakeResponse(payload={"bases": [{"id": "appB"}, {"name": "no id"}]}),
        ]
    )

    assert client.list_ids_with_names() == [{"id": "appA", "name": "Alpha"}, {"id": "appB", "name": "appB"}]
    assert session.calls[1]["params"] == [("offset", "next")]
    assert session.calls[0]["headers"]["Authorization"] == "Bearer pat-test"


def test_airtable_schema_and_records():
    client, session, _ = _airtable(
        [
            FakeResponse(
                payload={
                    "tables": [
                        {
                            "id": "tbl1",
                            "name": "People",
                            "fields": [
                                {"id": "fld1", "name": "Email", "type": "email"},
                                {"id": "fld2", "name": "Loops - firstName", "type": "singleLineText"},
                            ],
                        }
                    ]
                }
            ),
            FakeResponse(payload={"records": [{"id": "rec1", "fields": {"Email": "a@b.com"}}], "offset": "o1"}),
            FakeResponse(payload={"records": [{"id": "rec2", "fields": {}}]}),
        ]
    )

    tables = client.get_schema("appA")
    assert [field.name for field in tables["tbl1"].fields] == ["Email", "Loops - firstName"]

    records = list(client.list_records("appA", "tbl1", filter_formula="TRUE()"))
    assert [record.id for record in records] == ["rec1", "rec2"]
    assert ("filterByFormula", "TRUE()") in session.calls[1]["params"]
    assert ("offset", "o1") in session.calls[2]["params"]
    assert session.calls[1]["url"].endswith("/appA/tbl1")


def test_airtable_retries_429_honoring_retry_after():
    client, _, sleeps = _airtable(
        [
            FakeResponse(status_code=429, headers={"Retry-After": "3"}, text="slow down"),
            FakeResponse(status_code=503, text="unavailable"),
            FakeResponse(payload={"bases": []}),
        ],
        min_backoff_s=1.0,
    )

    assert client.list_ids_with_names() == []
    assert sleeps[0] == 3.0
    assert sleeps[1] == pytest.approx(2.0 * 1.15)


def test_airtable_persistent_429_raises_rate_limit_error():
    client, _, _ = _airtable([FakeResponse(status_code=429, text="")] * 3, max_retries=2)

    with pytest.raises(RateLimitError):
        client.list_ids_with_names()


def test_airtable_client_errors_are_not_retried():
    client, session, sleeps = _airtable([FakeResponse(status_code=403, text="forbidden")])

    with pytest.raises(AirtableApiError) as exc:
        client.get_schema("appA")
    assert exc.value.status_code == 403
    assert len(session.calls) == 1
    assert sleeps == []


def test_airtable_timeout_is_typed():
    client, _, _ = _airtable([requests.Timeout("slow")])

    with pytest.raises(SourceTimeoutError):
        client.get_schema("appA")


def test_airtable_requests_pass_through_rate_limiter():
    class RecordingLimiter:
        def __init__(self):
            self.resources = []

        def acquire(self, resource="global"):
            self.resources.append(resource)
            return 0.0

    limiter = RecordingLimiter()
    client, _, _ = _airtable([FakeResponse(payload={"tables": []})], rate_limiter=limiter)

    client.get_schema("appA")
    assert limiter.resources == ["appA"]


def test_airtable_readiness_reports_missing_token_and_auth_failures():
    missing = check_airtable_adapter_readiness({})
    assert missing.status == "missing-env"
    with pytest.raises(AdapterConfigError):
        ensure_airtable_adapter_ready({})

    failing, _, _ = _airtable([FakeResponse(status_code=401, text="bad token")], max_retries=0)
    readiness = check_airtable_adapter_readiness(
        {"AIRTABLE_PERSONAL_ACCESS_TOKEN": "pat-bad"},
        require_auth_ping=True,
        client=failing,
    )
    assert readiness.status == "auth-error"
    assert "authentication failed" in readiness.as_dict()["messages"][0]

    ok = check_airtable_adapter_readiness({"AIRTABLE_PERSONAL_ACCESS_TOKEN": "pat"})
    assert ok.status == "ready"
    assert ok.auth_status == "skipped"


def _loops(responses, **kwargs):
    session = FakeSession(responses)
    sleeps = []
    client = LoopsClient("loops-test", session=session, sleep_fn=sleeps.append, **kwargs)
    return client, session, sleeps


def test_loops_find_contact_normalizes_email():
    client, session, _ = _loops([FakeResponse(payload=[{"id": "c1", "email": "jane@hackclub.com"}]), FakeResponse(payload=[])])

    assert client.find_contact("  Jane@HackClub.com ")["id"] == "c1"
    assert session.calls[0]["params"] == {"email": "jane@hackclub.com"}
    assert client.find_contact("nobody@hackclub.com") is None


def test_loops_update_contact_sends_email_in_body():
    client, session, _ = _loops([FakeResponse(payload={"success": True, "id": "c1"})])

    response = client.update_contact("Jane@HackClub.com", {"firstName": "Jane"})

    assert response == {"success": True, "id": "c1"}
    assert session.calls[0]["method"] == "PUT"
    assert session.calls[0]["json"] == {"firstName": "Jane", "email": "jane@hackclub.com"}


def test_loops_retries_rate_limits_then_gives_up():
    client, session, sleeps = _loops(
        [FakeResponse(status_code=429, text="")] * 3,
        max_retries=2,
    )

    with pytest.raises(RateLimitError):
        client.list_mailing_lists()
    assert len(session.calls) == 3
    assert sleeps == [0.5, 1.0]


def test_loops_rate_limit_waits_at_least_retry_after():
    client, _, sleeps = _loops(
        [FakeResponse(status_code=429, headers={"Retry-After": "4"}, text=""), FakeResponse(payload=[])],
    )

    assert client.list_mailing_lists() == []
    assert sleeps == [4.0]


def test_loops_errors_carry_message_and_status():
    client, _, _ = _loops([FakeResponse(status_code=400, payload={"message": "Invalid field"})])

    with pytest.raises(LoopsApiError) as exc:
        client.update_contact("a@b.com", {"bogus": 1})
    assert str(exc.value) == "Invalid field"
    assert exc.value.status_code == 400


def test_loops_timeout_is_typed():
    client, _, _ = _loops([requests.Timeout("slow")])

    with pytest.raises(DestinationTimeoutError):
        client.list_mailing_lists()


def test_parse_retry_after():
    assert parse_retry_after("2.5") == 2.5
    assert parse_retry_after("-1") == 0.0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None
