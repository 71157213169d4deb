from __future__ import annotations

from datetime import datetime, timezone

from flask_app.sync.contracts import EPOCH, FieldUpdate, Strategy, format_timestamp, parse_timestamp, updates_from_payload
from flask_app.utils.normalizers import canonical_json, normalize_email, normalize_source_value, values_equal


def test_single_element_list_unwraps():
    assert normalize_source_value(["Jane"]) == "Jane"
    assert normalize_source_value([" Jane "]) == "Jane"


def test_empty_and_null_only_lists_become_none():
    assert normalize_source_value([]) is None
    assert normalize_source_value([None, None]) is None


def test_multi_element_list_drops_nulls_and_keeps_order():
    assert normalize_source_value(["b", None, "a"]) == ["b", "a"]


def test_blank_strings_become_none():
    assert normalize_source_value("   ") is None
    assert normalize_source_value("  hi ") == "hi"
    assert normalize_source_value(0) == 0
    assert normalize_source_value(False) is False


def test_canonical_json_ignores_key_order():
    assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == canonical_json({"a": {"c": 3, "d": 2}, "b": 1})
    assert values_equal({"x": [1, 2]}, {"x": [1, 2]})
    assert not values_equal([1, 2], [2, 1])


def test_normalize_email():
    assert normalize_email("  Jane@Hackclub.COM ") == "jane@hackclub.com"
    assert normalize_email("   ") is None
    assert normalize_email(None) is None


def test_parse_timestamp_falls_back_to_epoch():
    assert parse_timestamp(None) == EPOCH
    assert parse_timestamp("not a date") == EPOCH
    parsed = parse_timestamp("2024-03-01T12:00:00Z")
    assert parsed == datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
    assert format_timestamp(parsed) == "2024-03-01T12:00:00Z"


def test_updates_from_payload_defaults_unknown_strategy_to_upsert():
    updates = updates_from_payload(
        {
            "firstName": {"value": "Jane", "strategy": "OVERRIDE", "modified_at": "2024-01-01T00:00:00Z"},
            "lastName": {"value": "Doe", "strategy": "bogus"},
            "legacy": "raw",
        }
    )
    assert updates["firstName"] == FieldUpdate("Jane", Strategy.OVERRIDE, "2024-01-01T00:00:00Z")
    assert updates["lastName"].strategy is Strategy.UPSERT
    assert updates["legacy"].value == "raw"
    assert updates["legacy"].modified_at_dt == EPOCH
