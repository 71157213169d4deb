from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from flask_app.models import FieldValueBaseline, db
from flask_app.sync.pipeline.change_detector import ChangeDetector


class StepClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def _detector():
    clock = StepClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
    return ChangeDetector(db.session, clock=clock), clock


def test_first_observation_creates_baseline(app, make_source):
    source = make_source()
    detector, _ = _detector()

    result = detector.detect_change(source.id, "tbl/rec1", "fld1/Loops - firstName", "Jane")
    db.session.commit()

    assert result.first_time is True
    assert result.changed is False
    assert result.should_forward is True
    baseline = db.session.scalar(select(FieldValueBaseline))
    assert baseline.last_known_value == "Jane"
    assert baseline.checked_count == 1


def test_repeated_value_is_not_a_change(app, make_source):
    source = make_source()
    detector, clock = _detector()
    detector.detect_change(source.id, "tbl/rec1", "fld1", ["Jane"])
    clock.advance(minutes=1)

    result = detector.detect_change(source.id, "tbl/rec1", "fld1", "  Jane ")
    db.session.commit()

    assert result.changed is False
    assert result.first_time is False
    baseline = result.baseline
    assert baseline.checked_count == 2
    assert baseline.value_last_updated_at.replace(tzinfo=timezone.utc) == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_value_flip_back_and_forth_is_detected_each_time(app, make_source):
    source = make_source()
    detector, clock = _detector()
    detector.detect_change(source.id, "row", "field", "A")

    outcomes = []
    for value in ("B", "A", "A"):
        clock.advance(seconds=30)
        result = detector.detect_change(source.id, "row", "field", value)
        outcomes.append((result.changed, result.former_value))
    db.session.commit()

    assert outcomes == [(True, "A"), (True, "B"), (False, "A")]
    assert db.session.scalar(select(func.count()).select_from(FieldValueBaseline)) == 1


def test_mapping_key_order_is_not_a_change(app, make_source):
    source = make_source()
    detector, _ = _detector()
    detector.detect_change(source.id, "row", "field", {"b": 1, "a": 2})

    result = detector.detect_change(source.id, "row", "field", {"a": 2, "b": 1})

    assert result.changed is False


def test_preview_does_not_write(app, make_source):
    source = make_source()
    detector, _ = _detector()

    first = detector.preview(source.id, "row", "field", "A")
    assert first.first_time is True
    assert db.session.scalar(select(func.count()).select_from(FieldValueBaseline)) == 0

    detector.detect_change(source.id, "row", "field", "A")
    db.session.commit()
    preview = detector.preview(source.id, "row", "field", "B")

    assert preview.changed is True
    assert preview.former_value == "A"
    baseline = db.session.scalar(select(FieldValueBaseline))
    assert baseline.last_known_value == "A"
    assert baseline.checked_count == 1


def test_prune_stale_removes_unchecked_baselines(app, make_source):
    source = make_source()
    detector, clock = _detector()
    detector.detect_change(source.id, "old", "field", "A")
    clock.advance(days=40)
    detector.detect_change(source.id, "fresh", "field", "A")
    db.session.commit()

    deleted = detector.prune_stale(timedelta(days=30))

    assert deleted == 1
    remaining = db.session.scalars(select(FieldValueBaseline.row_id)).all()
    assert remaining == ["fresh"]
