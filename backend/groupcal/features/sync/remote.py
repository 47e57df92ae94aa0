"""
Sync feature: Remote Store Client.

``RemoteStore`` is what the orchestrator, the cleanup passes and the event
service talk to. ``SupabaseRemoteStore`` implements it over the Supabase
async client; PostgREST and transport failures come out as
``RemoteStoreError`` / ``AuthError``.
"""

import logging
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import httpx
from supabase import AsyncClient, PostgrestAPIError

from groupcal.core.exceptions import AuthError, RemoteStoreError
from groupcal.features.sync.models import (
    Attendance,
    AttendeeRecord,
    CalendarEvent,
    EventStatus,
    PendingDeletion,
    parse_rows,
)

logger = logging.getLogger(__name__)

EVENTS = "calendar_events"
ATTENDEES = "event_attendees"
PENDING_DELETIONS = "pending_local_calendar_deletions"
GROUP_MEMBERS = "group_members"

PERSONAL_UPSERT_CONFLICT = "user_id,group_id,original_event_id"

_AUTH_CODES = {"PGRST301", "PGRST302", "42501"}


@runtime_checkable
class RemoteStore(Protocol):
    """Async capability over the shared remote tables."""

    # Liveness / cleanup
    async def fetch_event_statuses(self, event_ids: list[str]) -> dict[str, EventStatus | None]: ...
    async def fetch_pending_deletions(self, user_id: str) -> list[PendingDeletion]: ...
    async def delete_pending_deletions(self, deletion_ids: list[str]) -> None: ...
    async def insert_pending_deletions(self, rows: list[dict]) -> None: ...

    # Attendees
    async def fetch_attendances(self, user_id: str, linked: bool | None = None) -> list[Attendance]: ...
    async def link_attendees(self, event_id: str, user_id: str, local_id: str) -> int: ...
    async def delete_attendees(self, attendee_ids: list[str]) -> None: ...
    async def insert_attendees(self, rows: list[dict]) -> None: ...
    async def fetch_attendees(self, event_ids: list[str]) -> list[AttendeeRecord]: ...
    async def fetch_attended_event_ids(self, user_ids: list[str]) -> set[str]: ...

    # Groups
    async def fetch_user_group_ids(self, user_id: str) -> list[str]: ...
    async def fetch_group_member_ids(self, group_ids: list[str]) -> list[str]: ...
    async def fetch_member_group_ids(self, user_ids: list[str]) -> list[str]: ...

    # Events
    async def fetch_exceptions(self, group_ids: list[str]) -> list[CalendarEvent]: ...
    async def fetch_series_exceptions(self, parent_id: str) -> list[CalendarEvent]: ...
    async def fetch_group_events(
        self, group_ids: list[str], start: datetime, end: datetime
    ) -> list[CalendarEvent]: ...
    async def fetch_group_events_by_id(
        self, event_ids: list[str], start: datetime, end: datetime
    ) -> list[CalendarEvent]: ...
    async def fetch_personal_events(
        self, user_ids: list[str], start: datetime, end: datetime
    ) -> list[CalendarEvent]: ...
    async def upsert_personal_events(self, rows: list[dict]) -> None: ...
    async def get_event(self, event_id: str) -> CalendarEvent | None: ...
    async def insert_event(self, row: dict) -> CalendarEvent: ...
    async def update_event(self, event_id: str, fields: dict) -> CalendarEvent | None: ...
    async def delete_event(self, event_id: str) -> None: ...
    async def delete_series_children(self, parent_id: str) -> None: ...


def _translate(error: Exception, action: str) -> Exception:
    """Map a PostgREST/httpx failure onto the sync error taxonomy."""
    if isinstance(error, PostgrestAPIError):
        code = str(error.code or "")
        if code in _AUTH_CODES or "jwt" in str(error.message or "").lower():
            return AuthError(detail=f"{action}: {error.message}")
        return RemoteStoreError(f"Remote query failed: {action}", detail=error.message)
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code in (401, 403):
        return AuthError(detail=f"{action}: HTTP {error.response.status_code}")
    return RemoteStoreError(f"Remote store unreachable: {action}", detail=str(error))


def _active_only(rows: list[CalendarEvent]) -> list[CalendarEvent]:
    return [r for r in rows if r.is_active]


class SupabaseRemoteStore:
    """RemoteStore over ``supabase.AsyncClient``."""

    def __init__(self, db: AsyncClient):
        self.db = db

    async def _run(self, query, action: str) -> list[dict]:
        try:
            result = await query.execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise _translate(e, action) from e
        return result.data or []

    def _window(self, query, start: datetime, end: datetime):
        # Recurring roots are kept regardless of where their first occurrence falls
        return query.lte("start_date", end.isoformat()).or_(
            f"end_date.gte.{start.isoformat()},recurrence_rule.not.is.null"
        )

    # ── Liveness / cleanup ───────────────────────────────

    async def fetch_event_statuses(self, event_ids: list[str]) -> dict[str, EventStatus | None]:
        if not event_ids:
            return {}
        rows = await self._run(
            self.db.table(EVENTS).select("id, event_status").in_("id", event_ids),
            "fetch event statuses",
        )
        statuses: dict[str, EventStatus | None] = {}
        for row in rows:
            raw = row.get("event_status")
            try:
                statuses[str(row["id"])] = EventStatus(raw) if raw else None
            except ValueError:
                # Unknown states (e.g. "rescheduled") are not live
                statuses[str(row["id"])] = EventStatus.RAIN_CHECKED
        return statuses

    async def fetch_pending_deletions(self, user_id: str) -> list[PendingDeletion]:
        rows = await self._run(
            self.db.table(PENDING_DELETIONS).select("*").eq("user_id", user_id),
            "fetch pending deletions",
        )
        return parse_rows(PendingDeletion, rows)

    async def delete_pending_deletions(self, deletion_ids: list[str]) -> None:
        if not deletion_ids:
            return
        await self._run(
            self.db.table(PENDING_DELETIONS).delete().in_("id", deletion_ids),
            "delete pending deletions",
        )

    async def insert_pending_deletions(self, rows: list[dict]) -> None:
        if not rows:
            return
        await self._run(self.db.table(PENDING_DELETIONS).insert(rows), "queue pending deletions")

    # ── Attendees ────────────────────────────────────────

    async def fetch_attendances(self, user_id: str, linked: bool | None = None) -> list[Attendance]:
        query = (
            self.db.table(ATTENDEES)
            .select(f"*, {EVENTS}(*)")
            .eq("user_id", user_id)
        )
        if linked is True:
            query = query.not_.is_("local_calendar_event_id", "null")
        elif linked is False:
            query = query.is_("local_calendar_event_id", "null")
        rows = await self._run(query, "fetch attendances")

        attendances: list[Attendance] = []
        for row in rows:
            embedded = row.pop(EVENTS, None)
            attendee = parse_rows(AttendeeRecord, [row])
            if not attendee:
                continue
            event = parse_rows(CalendarEvent, [embedded]) if embedded else []
            attendances.append(Attendance(attendee=attendee[0], event=event[0] if event else None))
        return attendances

    async def link_attendees(self, event_id: str, user_id: str, local_id: str) -> int:
        """Write ``local_id`` to every still-unlinked row for (event, user)."""
        rows = await self._run(
            self.db.table(ATTENDEES)
            .update({"local_calendar_event_id": local_id})
            .eq("event_id", event_id)
            .eq("user_id", user_id)
            .is_("local_calendar_event_id", "null"),
            "link attendees",
        )
        return len(rows)

    async def delete_attendees(self, attendee_ids: list[str]) -> None:
        if not attendee_ids:
            return
        await self._run(self.db.table(ATTENDEES).delete().in_("id", attendee_ids), "delete attendees")

    async def insert_attendees(self, rows: list[dict]) -> None:
        if not rows:
            return
        await self._run(self.db.table(ATTENDEES).insert(rows), "insert attendees")

    async def fetch_attendees(self, event_ids: list[str]) -> list[AttendeeRecord]:
        if not event_ids:
            return []
        rows = await self._run(
            self.db.table(ATTENDEES).select("*, users(display_name)").in_("event_id", event_ids),
            "fetch attendees",
        )
        for row in rows:
            user = row.pop("users", None) or {}
            if not row.get("display_name"):
                row["display_name"] = user.get("display_name")
        return parse_rows(AttendeeRecord, rows)

    async def fetch_attended_event_ids(self, user_ids: list[str]) -> set[str]:
        if not user_ids:
            return set()
        rows = await self._run(
            self.db.table(ATTENDEES).select("event_id, user_id").in_("user_id", user_ids),
            "fetch attended event ids",
        )
        return {str(r["event_id"]) for r in rows if r.get("user_id")}

    # ── Groups ───────────────────────────────────────────

    async def fetch_user_group_ids(self, user_id: str) -> list[str]:
        rows = await self._run(
            self.db.table(GROUP_MEMBERS).select("group_id").eq("user_id", user_id),
            "fetch user groups",
        )
        return sorted({str(r["group_id"]) for r in rows})

    async def fetch_group_member_ids(self, group_ids: list[str]) -> list[str]:
        if not group_ids:
            return []
        rows = await self._run(
            self.db.table(GROUP_MEMBERS).select("user_id").in_("group_id", group_ids),
            "fetch group members",
        )
        return sorted({str(r["user_id"]) for r in rows})

    async def fetch_member_group_ids(self, user_ids: list[str]) -> list[str]:
        if not user_ids:
            return []
        rows = await self._run(
            self.db.table(GROUP_MEMBERS).select("group_id, user_id").in_("user_id", user_ids),
            "fetch member groups",
        )
        return sorted({str(r["group_id"]) for r in rows})

    # ── Events ───────────────────────────────────────────

    async def fetch_exceptions(self, group_ids: list[str]) -> list[CalendarEvent]:
        if not group_ids:
            return []
        rows = await self._run(
            self.db.table(EVENTS)
            .select("*")
            .in_("group_id", group_ids)
            .eq("is_recurrence_exception", True),
            "fetch recurrence exceptions",
        )
        return parse_rows(CalendarEvent, rows)

    async def fetch_series_exceptions(self, parent_id: str) -> list[CalendarEvent]:
        rows = await self._run(
            self.db.table(EVENTS)
            .select("*")
            .eq("parent_event_id", parent_id)
            .eq("is_recurrence_exception", True),
            "fetch series exceptions",
        )
        return parse_rows(CalendarEvent, rows)

    async def fetch_group_events(
        self, group_ids: list[str], start: datetime, end: datetime
    ) -> list[CalendarEvent]:
        if not group_ids:
            return []
        query = (
            self.db.table(EVENTS)
            .select("*")
            .in_("group_id", group_ids)
            .eq("event_type", "group")
        )
        rows = await self._run(self._window(query, start, end).order("start_date"), "fetch group events")
        return _active_only(parse_rows(CalendarEvent, rows))

    async def fetch_group_events_by_id(
        self, event_ids: list[str], start: datetime, end: datetime
    ) -> list[CalendarEvent]:
        if not event_ids:
            return []
        query = (
            self.db.table(EVENTS)
            .select("*")
            .in_("id", event_ids)
            .eq("event_type", "group")
        )
        rows = await self._run(self._window(query, start, end).order("start_date"), "fetch attended events")
        return _active_only(parse_rows(CalendarEvent, rows))

    async def fetch_personal_events(
        self, user_ids: list[str], start: datetime, end: datetime
    ) -> list[CalendarEvent]:
        if not user_ids:
            return []
        query = (
            self.db.table(EVENTS)
            .select("*")
            .in_("user_id", user_ids)
            .eq("event_type", "personal")
        )
        rows = await self._run(self._window(query, start, end).order("start_date"), "fetch personal events")
        return _active_only(parse_rows(CalendarEvent, rows))

    async def upsert_personal_events(self, rows: list[dict]) -> None:
        if not rows:
            return
        await self._run(
            self.db.table(EVENTS).upsert(rows, on_conflict=PERSONAL_UPSERT_CONFLICT),
            "upload personal events",
        )

    async def get_event(self, event_id: str) -> CalendarEvent | None:
        rows = await self._run(self.db.table(EVENTS).select("*").eq("id", event_id), "get event")
        parsed = parse_rows(CalendarEvent, rows)
        return parsed[0] if parsed else None

    async def insert_event(self, row: dict) -> CalendarEvent:
        rows = await self._run(self.db.table(EVENTS).insert(row), "insert event")
        parsed = parse_rows(CalendarEvent, rows)
        if not parsed:
            raise RemoteStoreError("Insert returned no usable row", detail=str(rows))
        return parsed[0]

    async def update_event(self, event_id: str, fields: dict[str, Any]) -> CalendarEvent | None:
        rows = await self._run(
            self.db.table(EVENTS).update(fields).eq("id", event_id), "update event"
        )
        parsed = parse_rows(CalendarEvent, rows)
        return parsed[0] if parsed else None

    async def delete_event(self, event_id: str) -> None:
        await self._run(self.db.table(EVENTS).delete().eq("id", event_id), "delete event")

    async def delete_series_children(self, parent_id: str) -> None:
        await self._run(
            self.db.table(EVENTS).delete().eq("parent_event_id", parent_id),
            "delete series exceptions",
        )
