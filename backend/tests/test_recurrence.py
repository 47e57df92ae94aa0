"""Unit tests for recurrence rules and series expansion."""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from groupcal.features.sync.models import RecurrenceRule
from groupcal.features.sync.recurrence import expand, next_occurrence, series_last_day


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def starts(events):
    return [e.start for e in events]


def test_weekly_on_two_days_stops_at_count(make_event):
    root = make_event(
        id="r1",
        start=utc(2026, 3, 2, 10),
        recurrence_rule={"frequency": "weekly", "days_of_week": [1, 3], "count": 4},
    )
    result = expand(root, [], utc(2026, 3, 1), utc(2026, 4, 30))
    assert starts(result) == [
        utc(2026, 3, 2, 10), utc(2026, 3, 4, 10), utc(2026, 3, 9, 10), utc(2026, 3, 11, 10),
    ]
    assert all(e.id == "r1" and e.parent_event_id == "r1" for e in result)
    assert all(e.end - e.start == timedelta(hours=1) for e in result)


def test_biweekly_skips_alternate_weeks(make_event):
    root = make_event(
        start=utc(2026, 3, 2, 10),
        recurrence_rule={"frequency": "weekly", "interval": 2, "days_of_week": [1, 3]},
    )
    result = expand(root, [], utc(2026, 3, 1), utc(2026, 3, 20))
    assert starts(result) == [
        utc(2026, 3, 2, 10), utc(2026, 3, 4, 10), utc(2026, 3, 16, 10), utc(2026, 3, 18, 10),
    ]


def test_monthly_on_31st_clamps_without_drifting(make_event):
    root = make_event(start=utc(2026, 1, 31, 10), recurrence_rule={"frequency": "monthly"})
    result = expand(root, [], utc(2026, 1, 1), utc(2026, 4, 30, 23))
    assert [e.start.date().isoformat() for e in result] == [
        "2026-01-31", "2026-02-28", "2026-03-31", "2026-04-30",
    ]


def test_yearly_on_leap_day_clamps(make_event):
    root = make_event(start=utc(2028, 2, 29, 9), recurrence_rule={"frequency": "yearly"})
    result = expand(root, [], utc(2028, 1, 1), utc(2030, 12, 31))
    assert [e.start.date().isoformat() for e in result] == ["2028-02-29", "2029-02-28", "2030-02-28"]


def test_cancelled_exception_suppresses_occurrence(make_event):
    root = make_event(id="r1", start=utc(2026, 3, 2, 10), recurrence_rule={"frequency": "weekly"})
    cancelled = make_event(
        id="x1",
        start=utc(2026, 3, 9, 10),
        parent_event_id="r1",
        is_recurrence_exception=True,
        original_occurrence_date=utc(2026, 3, 9, 10),
        is_public=False,
    )
    result = expand(root, [cancelled], utc(2026, 3, 1), utc(2026, 3, 22))
    assert starts(result) == [utc(2026, 3, 2, 10), utc(2026, 3, 16, 10)]


def test_modified_exception_replaces_occurrence(make_event):
    root = make_event(id="r1", start=utc(2026, 3, 2, 10), recurrence_rule={"frequency": "weekly"})
    moved = make_event(
        id="x1",
        title="Moved",
        start=utc(2026, 3, 10, 14),
        parent_event_id="r1",
        is_recurrence_exception=True,
        original_occurrence_date=utc(2026, 3, 9, 10),
    )
    result = expand(root, [moved], utc(2026, 3, 1), utc(2026, 3, 17))
    assert [(e.id, e.start) for e in result] == [
        ("r1", utc(2026, 3, 2, 10)),
        ("x1", utc(2026, 3, 10, 14)),
        ("r1", utc(2026, 3, 16, 10)),
    ]


def test_newest_exception_wins_on_same_day(make_event):
    root = make_event(id="r1", start=utc(2026, 3, 2, 10), recurrence_rule={"frequency": "daily"})
    older = make_event(
        id="x1", title="Old", start=utc(2026, 3, 3, 11), parent_event_id="r1",
        is_recurrence_exception=True, original_occurrence_date=utc(2026, 3, 3, 10),
        updated_at=utc(2026, 2, 1),
    )
    newer = make_event(
        id="x2", title="New", start=utc(2026, 3, 3, 12), parent_event_id="r1",
        is_recurrence_exception=True, original_occurrence_date=utc(2026, 3, 3, 10),
        updated_at=utc(2026, 2, 2),
    )
    result = expand(root, [older, newer], utc(2026, 3, 3), utc(2026, 3, 3, 23))
    assert [e.title for e in result] == ["New"]


def test_unmatched_exceptions_in_window(make_event):
    root = make_event(id="r1", start=utc(2026, 3, 2, 10), recurrence_rule={"frequency": "weekly"})
    # Wednesdays never line up with a Monday series
    moved = make_event(
        id="x1", title="Extra", start=utc(2026, 3, 4, 15), parent_event_id="r1",
        is_recurrence_exception=True, original_occurrence_date=utc(2026, 3, 4, 10),
    )
    cancelled = make_event(
        id="x2", start=utc(2026, 3, 11, 10), parent_event_id="r1",
        is_recurrence_exception=True, original_occurrence_date=utc(2026, 3, 11, 10), is_public=False,
    )
    outside = make_event(
        id="x3", start=utc(2026, 5, 6, 10), parent_event_id="r1",
        is_recurrence_exception=True, original_occurrence_date=utc(2026, 5, 6, 10),
    )
    result = expand(root, [moved, cancelled, outside], utc(2026, 3, 1), utc(2026, 3, 17))
    assert [(e.id, e.start) for e in result] == [
        ("r1", utc(2026, 3, 2, 10)),
        ("x1", utc(2026, 3, 4, 15)),
        ("r1", utc(2026, 3, 9, 10)),
        ("r1", utc(2026, 3, 16, 10)),
    ]


def test_recurrence_end_date_is_inclusive_by_day(make_event):
    root = make_event(
        start=utc(2026, 3, 2, 10),
        recurrence_rule={"frequency": "daily"},
        recurrence_end_date=utc(2026, 3, 5),
    )
    result = expand(root, [], utc(2026, 3, 1), utc(2026, 3, 31))
    assert [e.start.day for e in result] == [2, 3, 4, 5]


def test_earlier_of_rule_end_and_series_end_applies(make_event):
    root = make_event(
        start=utc(2026, 3, 2, 10),
        recurrence_rule={"frequency": "daily", "end_date": "2026-03-10T00:00:00Z"},
        recurrence_end_date=utc(2026, 3, 4),
    )
    assert series_last_day(root).isoformat() == "2026-03-04"


def test_count_includes_occurrences_before_window(make_event):
    root = make_event(start=utc(2026, 3, 2, 10), recurrence_rule={"frequency": "daily", "count": 5})
    result = expand(root, [], utc(2026, 3, 5), utc(2026, 3, 31))
    assert [e.start.day for e in result] == [5, 6]


def test_non_recurring_event_passes_through_when_in_window(make_event):
    event = make_event(start=utc(2026, 3, 2, 10))
    assert expand(event, [], utc(2026, 3, 1), utc(2026, 3, 3)) == [event]
    assert expand(event, [], utc(2026, 3, 5), utc(2026, 3, 6)) == []


def test_next_occurrence_after_instant(make_event):
    root = make_event(start=utc(2026, 3, 2, 10), recurrence_rule={"frequency": "weekly"})
    upcoming = next_occurrence(root, utc(2026, 3, 3))
    assert upcoming.start == utc(2026, 3, 9, 10)

    finished = make_event(start=utc(2026, 3, 2, 10), recurrence_rule={"frequency": "weekly", "count": 1})
    assert next_occurrence(finished, utc(2026, 3, 3)) is None


# ── Rule model ───────────────────────────────────────────

def test_describe_rules():
    assert RecurrenceRule(frequency="daily").describe() == "Every day"
    assert (
        RecurrenceRule(frequency="weekly", interval=2, days_of_week=[3, 1], count=4).describe()
        == "Every 2 weeks on Mon and Wed, 4 times"
    )
    assert RecurrenceRule(frequency="monthly", day_of_month=31).describe() == "Every month on the 31st"
    assert (
        RecurrenceRule(
            frequency="yearly", month_of_year=7, day_of_month=4, end_date=utc(2030, 12, 31)
        ).describe()
        == "Every year on July 4, until Dec 31, 2030"
    )


def test_count_and_end_date_are_exclusive():
    with pytest.raises(ValidationError):
        RecurrenceRule(frequency="daily", count=3, end_date=utc(2026, 4, 1))


def test_days_of_week_out_of_range_rejected():
    with pytest.raises(ValidationError):
        RecurrenceRule(frequency="weekly", days_of_week=[7])


def test_rule_stored_as_json_text_is_parsed(make_event):
    event = make_event(recurrence_rule='{"frequency": "weekly", "interval": 3}')
    assert event.recurrence_rule.interval == 3
    assert event.is_root


def test_exception_without_parent_rejected(make_event):
    with pytest.raises(ValidationError):
        make_event(is_recurrence_exception=True)
