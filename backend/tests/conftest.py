"""Shared fixtures: an in-memory remote store, a fixed clock and row builders."""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from groupcal.config import Settings
from groupcal.core.exceptions import RemoteStoreError
from groupcal.features.sync.link_store import LinkStore
from groupcal.features.sync.local_store import InMemoryLocalStore
from groupcal.features.sync.models import (
    Attendance,
    AttendeeRecord,
    CalendarEvent,
    GroupMembership,
    LocalEvent,
    PendingDeletion,
)
from groupcal.features.sync.orchestrator import SyncOrchestrator

# Monday
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _in_window(event: CalendarEvent, start: datetime, end: datetime) -> bool:
    return event.start <= end and (event.end >= start or event.recurrence_rule is not None)


class InMemoryRemoteStore:
    """RemoteStore over plain lists. ``fail[name]`` makes that method raise."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.events: dict[str, CalendarEvent] = {}
        self.attendees: list[AttendeeRecord] = []
        self.pending: list[PendingDeletion] = []
        self.memberships: list[GroupMembership] = []
        self.upsert_batches: list[list[dict]] = []
        self.fail: dict[str, Exception] = {}
        self.calls: list[str] = []

    def new_id(self, prefix: str = "row") -> str:
        return f"{prefix}-{next(self._ids):04d}"

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        await asyncio.sleep(0)
        if name in self.fail:
            raise self.fail[name]

    # ── Seeding ──────────────────────────────────────────

    def add_event(self, event: CalendarEvent) -> CalendarEvent:
        self.events[event.id] = event
        return event

    def add_member(self, group_id: str, user_id: str) -> None:
        self.memberships.append(GroupMembership(group_id=group_id, user_id=user_id))

    def add_attendee(self, event_id: str, user_id: str | None, **fields) -> AttendeeRecord:
        record = AttendeeRecord(id=self.new_id("att"), event_id=event_id, user_id=user_id, **fields)
        self.attendees.append(record)
        return record

    def edit_event(self, event_id: str, **fields) -> CalendarEvent:
        event = self.events[event_id].model_copy(update=fields)
        self.events[event_id] = event
        return event

    # ── Liveness / cleanup ───────────────────────────────

    async def fetch_event_statuses(self, event_ids):
        await self._enter("fetch_event_statuses")
        return {i: self.events[i].event_status for i in event_ids if i in self.events}

    async def fetch_pending_deletions(self, user_id):
        await self._enter("fetch_pending_deletions")
        return [p for p in self.pending if p.user_id == user_id]

    async def delete_pending_deletions(self, deletion_ids):
        await self._enter("delete_pending_deletions")
        self.pending = [p for p in self.pending if p.id not in set(deletion_ids)]

    async def insert_pending_deletions(self, rows):
        await self._enter("insert_pending_deletions")
        for row in rows:
            self.pending.append(PendingDeletion(id=self.new_id("pd"), **row))

    # ── Attendees ────────────────────────────────────────

    async def fetch_attendances(self, user_id, linked=None):
        await self._enter("fetch_attendances")
        result = []
        for a in self.attendees:
            if a.user_id != user_id:
                continue
            if linked is True and a.local_calendar_event_id is None:
                continue
            if linked is False and a.local_calendar_event_id is not None:
                continue
            result.append(Attendance(attendee=a, event=self.events.get(a.event_id)))
        return result

    async def link_attendees(self, event_id, user_id, local_id):
        await self._enter("link_attendees")
        count = 0
        for i, a in enumerate(self.attendees):
            if a.event_id == event_id and a.user_id == user_id and a.local_calendar_event_id is None:
                self.attendees[i] = a.model_copy(update={"local_calendar_event_id": local_id})
                count += 1
        return count

    async def delete_attendees(self, attendee_ids):
        await self._enter("delete_attendees")
        self.attendees = [a for a in self.attendees if a.id not in set(attendee_ids)]

    async def insert_attendees(self, rows):
        await self._enter("insert_attendees")
        for row in rows:
            self.attendees.append(AttendeeRecord(id=self.new_id("att"), **row))

    async def fetch_attendees(self, event_ids):
        await self._enter("fetch_attendees")
        return [a for a in self.attendees if a.event_id in set(event_ids)]

    async def fetch_attended_event_ids(self, user_ids):
        await self._enter("fetch_attended_event_ids")
        return {a.event_id for a in self.attendees if a.user_id and a.user_id in set(user_ids)}

    # ── Groups ───────────────────────────────────────────

    async def fetch_user_group_ids(self, user_id):
        await self._enter("fetch_user_group_ids")
        return sorted({m.group_id for m in self.memberships if m.user_id == user_id})

    async def fetch_group_member_ids(self, group_ids):
        await self._enter("fetch_group_member_ids")
        return sorted({m.user_id for m in self.memberships if m.group_id in set(group_ids)})

    async def fetch_member_group_ids(self, user_ids):
        await self._enter("fetch_member_group_ids")
        return sorted({m.group_id for m in self.memberships if m.user_id in set(user_ids)})

    # ── Events ───────────────────────────────────────────

    async def fetch_exceptions(self, group_ids):
        await self._enter("fetch_exceptions")
        return [
            e for e in self.events.values()
            if e.is_recurrence_exception and e.group_id in set(group_ids)
        ]

    async def fetch_series_exceptions(self, parent_id):
        await self._enter("fetch_series_exceptions")
        return [
            e for e in self.events.values()
            if e.is_recurrence_exception and e.parent_event_id == parent_id
        ]

    async def fetch_group_events(self, group_ids, start, end):
        await self._enter("fetch_group_events")
        return [
            e for e in self.events.values()
            if e.is_group and e.is_active and e.group_id in set(group_ids) and _in_window(e, start, end)
        ]

    async def fetch_group_events_by_id(self, event_ids, start, end):
        await self._enter("fetch_group_events_by_id")
        return [
            e for e in self.events.values()
            if e.id in set(event_ids) and e.is_group and e.is_active and _in_window(e, start, end)
        ]

    async def fetch_personal_events(self, user_ids, start, end):
        await self._enter("fetch_personal_events")
        return [
            e for e in self.events.values()
            if not e.is_group and e.is_active and e.owner_user_id in set(user_ids)
            and _in_window(e, start, end)
        ]

    async def upsert_personal_events(self, rows):
        await self._enter("upsert_personal_events")
        keys = [(r["user_id"], r["group_id"], r["original_event_id"]) for r in rows]
        if len(keys) != len(set(keys)):
            raise RemoteStoreError("ON CONFLICT DO UPDATE command cannot affect row a second time")
        self.upsert_batches.append(rows)
        for row in rows:
            existing = next(
                (
                    e for e in self.events.values()
                    if not e.is_group
                    and (e.owner_user_id, e.group_id, e.original_event_id)
                    == (row["user_id"], row["group_id"], row["original_event_id"])
                ),
                None,
            )
            event_id = existing.id if existing else self.new_id("evt")
            base = existing.to_row() if existing else {}
            self.events[event_id] = CalendarEvent.model_validate({**base, **row, "id": event_id})

    async def get_event(self, event_id):
        await self._enter("get_event")
        return self.events.get(event_id)

    async def insert_event(self, row):
        await self._enter("insert_event")
        event = CalendarEvent.model_validate({"id": self.new_id("evt"), **row})
        self.events[event.id] = event
        return event

    async def update_event(self, event_id, fields):
        await self._enter("update_event")
        current = self.events.get(event_id)
        if current is None:
            return None
        event = CalendarEvent.model_validate({**current.to_row(), **fields})
        self.events[event_id] = event
        return event

    async def delete_event(self, event_id):
        await self._enter("delete_event")
        self.events.pop(event_id, None)
        self.attendees = [a for a in self.attendees if a.event_id != event_id]

    async def delete_series_children(self, parent_id):
        await self._enter("delete_series_children")
        for event_id in [e.id for e in self.events.values() if e.parent_event_id == parent_id]:
            self.events.pop(event_id)


# ── Fixtures ─────────────────────────────────────────────

@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        CALENDAR_TIMEZONE="UTC",
        LOCAL_WINDOW_DAYS=14,
        FETCH_PAST_DAYS=30,
        FETCH_FUTURE_DAYS=365,
        SYNC_INTERVAL_MINUTES=15,
        SYNC_DEBOUNCE_SECONDS=5,
    )


@pytest.fixture
def make_event():
    """Build a CalendarEvent from remote-style columns with sensible defaults."""
    counter = itertools.count(1)

    def _make(**fields) -> CalendarEvent:
        n = next(counter)
        start = fields.pop("start", NOW + timedelta(days=1, hours=1))
        duration = fields.pop("duration", timedelta(hours=1))
        row = {
            "id": f"e{n}",
            "user_id": "bob",
            "group_id": "g1",
            "title": f"Event {n}",
            "start_date": start,
            "end_date": start + duration,
            "event_type": "group",
            "updated_at": NOW - timedelta(days=1),
        }
        row.update(fields)
        return CalendarEvent.model_validate(row)

    return _make


@pytest.fixture
def make_local():
    def _make(local_id: str, title: str, start: datetime, hours: int = 1, **fields) -> LocalEvent:
        return LocalEvent(local_id=local_id, title=title, start=start, end=start + timedelta(hours=hours), **fields)

    return _make


@pytest.fixture
def remote():
    store = InMemoryRemoteStore()
    store.add_member("g1", "alice")
    store.add_member("g1", "bob")
    return store


@pytest.fixture
def local():
    return InMemoryLocalStore()


@pytest.fixture
def link_store(tmp_path):
    return LinkStore(tmp_path / "links.json")


@pytest.fixture
def orchestrator(remote, local, link_store, settings):
    return SyncOrchestrator(remote, local, link_store, settings=settings, clock=lambda: NOW)


@pytest.fixture
def now():
    return NOW
