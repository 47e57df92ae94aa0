"""Tests for the widget export slice."""
from datetime import timedelta

from groupcal.features.sync.models import DisplayEvent, MergedEventSet
from groupcal.features.sync.widget import widget_slice


def merged_of(events, now):
    return MergedEventSet(
        group_id="g1",
        user_id="alice",
        window_start=now - timedelta(days=30),
        window_end=now + timedelta(days=365),
        events=[DisplayEvent.from_event(e) for e in events],
    )


def test_only_relevant_upcoming_events(make_event, now):
    events = [
        make_event(id="mine", user_id="alice", event_type="personal", title="Gym"),
        make_event(id="theirs", user_id="bob", event_type="personal", title="Bob's gym"),
        make_event(id="attending", user_id="bob", title="Dinner"),
        make_event(id="not-attending", user_id="bob", title="Bob's meeting"),
        make_event(id="created", user_id="alice", title="Alice's party"),
        make_event(id="past", user_id="alice", title="Yesterday", start=now - timedelta(days=1)),
        make_event(id="far", user_id="alice", title="Next year", start=now + timedelta(days=90)),
    ]
    result = widget_slice(merged_of(events, now), "alice", {"attending"}, now)
    assert sorted(e.id for e in result) == ["attending", "created", "mine"]


def test_holidays_and_birthdays_hidden(make_event, now):
    events = [
        make_event(id="h", user_id="alice", title="Public Holiday"),
        make_event(id="b", user_id="alice", title="Lunch", calendar_name="Birthdays"),
        make_event(id="ok", user_id="alice", title="Lunch"),
    ]
    merged = merged_of(events, now)
    assert [e.id for e in widget_slice(merged, "alice", set(), now)] == ["ok"]
    assert len(widget_slice(merged, "alice", set(), now, hide_holidays=False)) == 3


def test_occurrence_counts_as_attended_through_parent(make_event, now):
    occurrence = make_event(id="x1", user_id="bob", parent_event_id="r1")
    result = widget_slice(merged_of([occurrence], now), "alice", {"r1"}, now)
    assert [e.id for e in result] == ["x1"]


def test_ongoing_event_included_and_sorted(make_event, now):
    later = make_event(id="later", user_id="alice", start=now + timedelta(hours=5))
    ongoing = make_event(id="ongoing", user_id="alice", start=now - timedelta(minutes=30))
    result = widget_slice(merged_of([later, ongoing], now), "alice", set(), now)
    assert [e.id for e in result] == ["ongoing", "later"]
    assert result[0].calendar_title == "Group calendar"
