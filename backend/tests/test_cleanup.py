"""Tests for the three local-copy cleanup passes."""
import pytest

from groupcal.core.exceptions import LocalStoreError, RemoteStoreError
from groupcal.features.sync.cleanup import run_cleanup
from groupcal.features.sync.models import (
    EventStatus,
    OutcomeStatus,
    PendingDeletion,
    SyncPhase,
    SyncReport,
)


@pytest.fixture
def report():
    return SyncReport(group_id="g1", user_id="alice")


@pytest.mark.asyncio
async def test_deleted_event_removes_linked_copy(remote, local, link_store, report, make_local, now):
    local._events["local-1"] = make_local("local-1", "Gone", now)
    link_store.set_link("e1", "local-1")

    await run_cleanup(remote, local, link_store, "alice", report)

    assert local.get("local-1") is None
    assert link_store.get_local_id("e1") is None
    [outcome] = report.outcomes_for(SyncPhase.CLEANUP_DELETED)
    assert (outcome.item_id, outcome.status, outcome.detail) == ("e1", OutcomeStatus.OK, "link_store")


@pytest.mark.asyncio
async def test_rain_checked_event_removes_linked_copy(
    remote, local, link_store, report, make_event, make_local, now
):
    remote.add_event(make_event(id="e1", event_status=EventStatus.RAIN_CHECKED))
    local._events["local-1"] = make_local("local-1", "Picnic", now)
    link_store.set_link("e1", "local-1")

    await run_cleanup(remote, local, link_store, "alice", report)

    assert local.get("local-1") is None
    assert link_store.links() == {}


@pytest.mark.asyncio
async def test_live_event_keeps_its_copy(remote, local, link_store, report, make_event, make_local, now):
    remote.add_event(make_event(id="e1"))
    local._events["local-1"] = make_local("local-1", "Standup", now)
    link_store.set_link("e1", "local-1")

    await run_cleanup(remote, local, link_store, "alice", report)

    assert local.get("local-1") is not None
    assert link_store.get_local_id("e1") == "local-1"
    assert report.outcomes == []


@pytest.mark.asyncio
async def test_already_forgotten_event_needs_no_local_call(remote, local, link_store, report):
    await run_cleanup(remote, local, link_store, "alice", report)
    await run_cleanup(remote, local, link_store, "alice", report)

    assert local.calls == []
    assert report.outcomes == []


@pytest.mark.asyncio
async def test_pending_queue_is_consumed(remote, local, link_store, report, make_local, now):
    local._events["local-2"] = make_local("local-2", "Queued", now)
    link_store.set_link("e2", "local-2")
    remote.pending = [
        PendingDeletion(id="pd-1", user_id="alice", local_calendar_event_id="local-2", event_id="e2"),
        PendingDeletion(id="pd-2", user_id="alice", local_calendar_event_id="local-404"),
        PendingDeletion(id="pd-3", user_id="bob", local_calendar_event_id="local-7"),
    ]

    # e2 is absent remotely, so the link-store pass gets there first
    await run_cleanup(remote, local, link_store, "alice", report)

    assert local.get("local-2") is None
    assert [p.id for p in remote.pending] == ["pd-3"]
    assert link_store.links() == {}
    assert all(o.status == OutcomeStatus.OK for o in report.outcomes)


@pytest.mark.asyncio
async def test_pending_row_consumed_even_when_local_delete_fails(
    remote, local, link_store, report, monkeypatch
):
    async def broken_delete(local_id):
        raise LocalStoreError("calendar locked")

    monkeypatch.setattr(local, "delete", broken_delete)
    remote.pending = [PendingDeletion(id="pd-1", user_id="alice", local_calendar_event_id="local-1")]

    await run_cleanup(remote, local, link_store, "alice", report)

    assert remote.pending == []
    [outcome] = report.outcomes_for(SyncPhase.CLEANUP_DELETED, OutcomeStatus.ERROR)
    assert "pending_queue" in outcome.detail


@pytest.mark.asyncio
async def test_orphaned_attendee_row_cleaned_up(remote, local, link_store, report, make_local, now):
    local._events["local-3"] = make_local("local-3", "Orphan", now)
    remote.add_attendee("e3", "alice", local_calendar_event_id="local-3")
    remote.add_attendee("e3", "bob")

    await run_cleanup(remote, local, link_store, "alice", report)

    assert local.get("local-3") is None
    assert [(a.event_id, a.user_id) for a in remote.attendees] == [("e3", "bob")]
    assert report.outcomes_for(SyncPhase.CLEANUP_DELETED)[0].detail == "orphaned_attendee"


@pytest.mark.asyncio
async def test_remote_failure_propagates(remote, local, link_store, report):
    remote.fail["fetch_pending_deletions"] = RemoteStoreError()
    with pytest.raises(RemoteStoreError):
        await run_cleanup(remote, local, link_store, "alice", report)


@pytest.mark.asyncio
async def test_unreadable_but_live_event_keeps_its_copy(
    remote, local, link_store, report, make_event, make_local, monkeypatch, now
):
    remote.add_event(make_event(id="e1"))
    local._events["local-1"] = make_local("local-1", "Standup", now)
    link_store.set_link("e1", "local-1")
    remote.add_attendee("e1", "alice", local_calendar_event_id="local-1")
    fetch_attendances = remote.fetch_attendances

    async def without_embedded_event(user_id, linked=None):
        # What the Supabase store returns when the joined row fails validation
        return [a.model_copy(update={"event": None}) for a in await fetch_attendances(user_id, linked)]

    monkeypatch.setattr(remote, "fetch_attendances", without_embedded_event)
    await run_cleanup(remote, local, link_store, "alice", report)

    assert local.get("local-1") is not None
    assert link_store.get_local_id("e1") == "local-1"
    assert [a.user_id for a in remote.attendees] == ["alice"]
    assert report.outcomes == []
