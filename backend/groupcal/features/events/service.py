"""
Events feature: Service layer for event lifecycle operations.

Deleting, per-occurrence edits, "this and future" splits and the
rain-check state machine. Every write stamps ``updated_at`` so invitees'
next sync picks the change up.
"""

import logging
from collections.abc import Callable
from datetime import datetime, time, timedelta, timezone, tzinfo

from groupcal.core.exceptions import (
    EventNotFoundError,
    InvalidOccurrenceError,
    PermissionDeniedError,
    RainCheckError,
    RemoteStoreError,
)
from groupcal.features.events.schemas import (
    OccurrenceModify,
    RescheduleRequest,
    SeriesSplit,
)
from groupcal.features.sync.models import (
    AttendeeRecord,
    AttendeeStatus,
    CalendarEvent,
    EventStatus,
    ensure_aware,
)
from groupcal.features.sync.recurrence import expand
from groupcal.features.sync.remote import RemoteStore

logger = logging.getLogger(__name__)


class EventService:
    """Lifecycle operations on ``calendar_events`` rows, acting as ``user_id``."""

    def __init__(
        self,
        remote: RemoteStore,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.remote = remote
        self.tz = tz or timezone.utc
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> str:
        return self._clock().isoformat()

    # ── Lookups ──────────────────────────────────────────

    async def get_event(self, event_id: str) -> CalendarEvent:
        event = await self.remote.get_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def _update(self, event_id: str, fields: dict) -> CalendarEvent:
        updated = await self.remote.update_event(event_id, {**fields, "updated_at": self._now()})
        if updated is None:
            raise EventNotFoundError(event_id)
        return updated

    @staticmethod
    def _require_owner(event: CalendarEvent, user_id: str) -> None:
        if event.owner_user_id != user_id:
            raise PermissionDeniedError()

    async def _series_root(self, user_id: str, event_id: str) -> CalendarEvent:
        root = await self.get_event(event_id)
        self._require_owner(root, user_id)
        if not root.is_root:
            raise InvalidOccurrenceError(event_id, "Event is not the root of a recurring series.")
        return root

    def _occurrence_on(self, root: CalendarEvent, occurrence_date: datetime) -> CalendarEvent:
        """The generated occurrence on ``occurrence_date``'s calendar day."""
        day = ensure_aware(occurrence_date).astimezone(self.tz).date()
        day_start = datetime.combine(day, time.min, tzinfo=self.tz)
        day_end = datetime.combine(day, time.max, tzinfo=self.tz)
        for occurrence in expand(root, [], day_start, day_end, self.tz):
            if occurrence.start.astimezone(self.tz).date() == day:
                return occurrence
        raise InvalidOccurrenceError(root.id, f"The series has no occurrence on {day.isoformat()}.")

    async def _existing_exception(self, root: CalendarEvent, occurrence: CalendarEvent) -> CalendarEvent | None:
        day = occurrence.start.astimezone(self.tz).date()
        for exception in await self.remote.fetch_series_exceptions(root.id):
            if exception.original_occurrence_date.astimezone(self.tz).date() == day:
                return exception
        return None

    async def _copy_attendees(self, source: CalendarEvent, target: CalendarEvent) -> int:
        """Invite the source event's attendees to ``target`` (links are per-event, so not copied)."""
        attendees: list[AttendeeRecord] = await self.remote.fetch_attendees([source.id])
        rows = [
            {
                "event_id": target.id,
                "user_id": a.user_id,
                "display_name": a.display_name or "",
                "status": (
                    AttendeeStatus.GOING.value if a.user_id == target.owner_user_id
                    else AttendeeStatus.INVITED.value
                ),
            }
            for a in attendees
        ]
        await self.remote.insert_attendees(rows)
        return len(rows)

    # ── Delete ───────────────────────────────────────────

    async def delete_event(self, user_id: str, event_id: str) -> int:
        """Delete an event (and, for a series, its exceptions).

        Every invitee with a local copy gets a pending local deletion
        queued. Returns how many were queued.
        """
        event = await self.get_event(event_id)
        self._require_owner(event, user_id)

        attendees = await self.remote.fetch_attendees([event_id])
        pending: dict[tuple[str, str], dict] = {}
        for attendee in attendees:
            if attendee.user_id and attendee.local_calendar_event_id:
                key = (attendee.user_id, attendee.local_calendar_event_id)
                pending[key] = {
                    "user_id": attendee.user_id,
                    "local_calendar_event_id": attendee.local_calendar_event_id,
                    "event_id": event_id,
                }
        try:
            await self.remote.insert_pending_deletions(list(pending.values()))
        except RemoteStoreError as e:
            # Link-store and orphaned-attendee cleanup still catch these copies
            logger.warning(f"Could not queue local deletions for {event_id}: {e.message}")

        if event.is_root:
            await self.remote.delete_series_children(event_id)
        await self.remote.delete_event(event_id)
        logger.info(f"Deleted event {event_id}; queued {len(pending)} local deletions")
        return len(pending)

    # ── Recurrence exceptions ────────────────────────────

    async def cancel_occurrence(
        self, user_id: str, event_id: str, occurrence_date: datetime
    ) -> CalendarEvent:
        """Hide one occurrence. Reuses an existing exception for that day."""
        root = await self._series_root(user_id, event_id)
        occurrence = self._occurrence_on(root, occurrence_date)
        existing = await self._existing_exception(root, occurrence)
        if existing is not None:
            return await self._update(existing.id, {"is_public": False})

        return await self.remote.insert_event({
            "user_id": user_id,
            "group_id": root.group_id,
            "title": root.title,
            "start_date": occurrence.start.isoformat(),
            "end_date": occurrence.end.isoformat(),
            "is_all_day": root.all_day,
            "is_public": False,
            "event_type": root.event_type.value,
            "parent_event_id": root.id,
            "is_recurrence_exception": True,
            "original_occurrence_date": occurrence.start.isoformat(),
            "updated_at": self._now(),
        })

    async def modify_occurrence(
        self, user_id: str, event_id: str, data: OccurrenceModify
    ) -> CalendarEvent:
        """Replace one occurrence with new details. Reuses an existing exception for that day."""
        root = await self._series_root(user_id, event_id)
        occurrence = self._occurrence_on(root, data.occurrence_date)
        fields = {
            "title": data.title,
            "start_date": ensure_aware(data.start).isoformat(),
            "end_date": ensure_aware(data.end).isoformat(),
            "is_all_day": data.all_day,
            "location": data.location,
            "notes": data.notes,
            "is_public": True,
        }
        existing = await self._existing_exception(root, occurrence)
        if existing is not None:
            return await self._update(existing.id, fields)

        return await self.remote.insert_event({
            **fields,
            "user_id": user_id,
            "group_id": root.group_id,
            "category_id": root.category_id,
            "event_type": root.event_type.value,
            "parent_event_id": root.id,
            "is_recurrence_exception": True,
            "original_occurrence_date": occurrence.start.isoformat(),
            "updated_at": self._now(),
        })

    async def split_series(self, user_id: str, event_id: str, data: SeriesSplit) -> CalendarEvent:
        """End the series the day before ``from_date`` and start a new one there."""
        root = await self._series_root(user_id, event_id)
        occurrence = self._occurrence_on(root, data.from_date)
        if occurrence.start <= root.start:
            raise InvalidOccurrenceError(
                event_id, "Splitting at the first occurrence would empty the series; edit it instead."
            )

        day_before = occurrence.start - timedelta(days=1)
        await self._update(root.id, {"recurrence_end_date": day_before.isoformat()})

        start = ensure_aware(data.start) if data.start is not None else occurrence.start
        end = ensure_aware(data.end) if data.end is not None else start + (root.end - root.start)
        rule = data.recurrence_rule or root.recurrence_rule
        continuation = await self.remote.insert_event({
            "user_id": user_id,
            "group_id": root.group_id,
            "title": data.title if data.title is not None else root.title,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "is_all_day": data.all_day if data.all_day is not None else root.all_day,
            "location": data.location if data.location is not None else root.location,
            "notes": data.notes if data.notes is not None else root.notes,
            "category_id": root.category_id,
            "event_type": root.event_type.value,
            "is_public": True,
            "recurrence_rule": rule.model_dump(mode="json"),
            "updated_at": self._now(),
        })
        if root.is_group:
            await self._copy_attendees(root, continuation)
        logger.info(f"Split series {root.id} at {occurrence.start.date()} into {continuation.id}")
        return continuation

    # ── Rain check ───────────────────────────────────────

    async def _rain_checkable(self, event_id: str) -> CalendarEvent:
        event = await self.get_event(event_id)
        if not event.is_group:
            raise RainCheckError("Only group events can be rain-checked")
        if not event.is_active:
            raise RainCheckError("Event is already rain-checked")
        return event

    async def rain_check(self, user_id: str, event_id: str, reason: str | None = None) -> CalendarEvent:
        """Creator rain-checks directly: active -> rain_checked."""
        event = await self._rain_checkable(event_id)
        if event.owner_user_id != user_id:
            raise RainCheckError(
                "Only the creator can rain-check directly",
                detail="Request a rain check instead.",
            )
        return await self._update(event_id, {
            "event_status": EventStatus.RAIN_CHECKED.value,
            "rain_checked_at": self._now(),
            "rain_check_reason": reason or event.rain_check_reason,
        })

    async def request_rain_check(
        self, user_id: str, event_id: str, reason: str | None = None
    ) -> CalendarEvent:
        """An attendee asks the creator to rain-check: active -> active + pending request."""
        event = await self._rain_checkable(event_id)
        if event.owner_user_id == user_id:
            raise RainCheckError("The creator rain-checks directly", detail="No request needed.")
        if event.rain_check_requested_by is not None:
            raise RainCheckError("A rain check is already pending for this event")
        attendees = await self.remote.fetch_attendees([event_id])
        if not any(a.user_id == user_id for a in attendees):
            raise PermissionDeniedError("Only attendees can request a rain check")
        return await self._update(event_id, {
            "rain_check_requested_by": user_id,
            "rain_check_reason": reason,
        })

    async def _pending_request(self, user_id: str, event_id: str) -> CalendarEvent:
        event = await self._rain_checkable(event_id)
        if event.owner_user_id != user_id:
            raise RainCheckError("Only the creator can answer a rain-check request")
        if event.rain_check_requested_by is None:
            raise RainCheckError("There is no pending rain-check request")
        return event

    async def approve_rain_check(self, user_id: str, event_id: str) -> CalendarEvent:
        """Pending request -> rain_checked."""
        await self._pending_request(user_id, event_id)
        return await self._update(event_id, {
            "event_status": EventStatus.RAIN_CHECKED.value,
            "rain_checked_at": self._now(),
        })

    async def deny_rain_check(self, user_id: str, event_id: str) -> CalendarEvent:
        """Pending request -> active, request cleared."""
        await self._pending_request(user_id, event_id)
        return await self._update(event_id, {
            "rain_check_requested_by": None,
            "rain_check_reason": None,
        })

    async def reschedule(self, user_id: str, event_id: str, data: RescheduleRequest) -> CalendarEvent:
        """Create a new active event pointing back at a rain-checked one."""
        event = await self.get_event(event_id)
        if not event.is_group:
            raise RainCheckError("Only group events can be rescheduled")
        if event.event_status != EventStatus.RAIN_CHECKED:
            raise RainCheckError("Only rain-checked events can be rescheduled")
        if event.owner_user_id != user_id:
            raise RainCheckError("Only the creator can reschedule")

        rescheduled = await self.remote.insert_event({
            "user_id": user_id,
            "group_id": event.group_id,
            "title": data.title or event.title,
            "start_date": ensure_aware(data.start).isoformat(),
            "end_date": ensure_aware(data.end).isoformat(),
            "is_all_day": event.all_day,
            "location": data.location if data.location is not None else event.location,
            "notes": data.notes if data.notes is not None else event.notes,
            "category_id": event.category_id,
            "event_type": event.event_type.value,
            "is_public": True,
            "event_status": EventStatus.ACTIVE.value,
            "original_event_id_for_reschedule": event.id,
            "updated_at": self._now(),
        })
        invited = await self._copy_attendees(event, rescheduled)
        logger.info(f"Rescheduled {event.id} as {rescheduled.id}; {invited} attendees invited")
        return rescheduled
