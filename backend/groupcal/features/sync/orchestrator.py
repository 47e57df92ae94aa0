"""
Sync feature: Sync Orchestrator.

Runs the fixed eight-phase pipeline for one (group, user):

  1. refresh_local          read the local window
  2. cleanup_deleted        three cleanup passes (cleanup.py)
  3. materialize_pending    copy new group invitations into the local store
  4. propagate_modified     push remote edits to linked local copies
  5. propagate_exceptions   push single-occurrence edits/cancellations
  6. refresh_local          re-read so phase 7 sees what 3-5 wrote
  7. upload_personal        upload the user's own local events
  8. fetch_merged           visibility queries + merge

Remote and local failures outside the per-item loops end the run; inside
phases 3-5 they are recorded per item and the loop moves on. Per-item
state (links, timestamps) only advances on success, so the next run
retries whatever failed.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from groupcal.config import Settings, get_settings
from groupcal.core.exceptions import SyncError
from groupcal.features.sync.cleanup import run_cleanup
from groupcal.features.sync.link_store import LinkStore
from groupcal.features.sync.local_store import LocalStoreAdapter
from groupcal.features.sync.merge import MergeInputs, merge
from groupcal.features.sync.models import (
    Attendance,
    CalendarEvent,
    LocalEvent,
    LocalEventFields,
    MergedEventSet,
    OutcomeStatus,
    SyncPhase,
    SyncReport,
)
from groupcal.features.sync.remote import RemoteStore

logger = logging.getLogger(__name__)

MATCH_TOLERANCE = timedelta(seconds=1)


def _signature(title: str, start: datetime, end: datetime, all_day: bool) -> str:
    return f"{title.strip()}|{start.timestamp()}|{end.timestamp()}|{all_day}"


def _same_slot(title: str, start: datetime, end: datetime, other: CalendarEvent | LocalEvent) -> bool:
    """Trimmed title equal and both ends within a second."""
    return (
        title.strip() == other.title.strip()
        and abs(start - other.start) < MATCH_TOLERANCE
        and abs(end - other.end) < MATCH_TOLERANCE
    )


class SyncOrchestrator:
    """One per signed-in (user, device). Holds no state beyond its caches."""

    def __init__(
        self,
        remote: RemoteStore,
        local: LocalStoreAdapter,
        link_store: LinkStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.remote = remote
        self.local = local
        self.link_store = link_store
        self.settings = settings or get_settings()
        self.tz = ZoneInfo(self.settings.CALENDAR_TIMEZONE)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._sync_lock = asyncio.Lock()
        self._materialize_lock = asyncio.Lock()
        self._local_window: list[LocalEvent] = []

        self.last_report: SyncReport | None = None
        self.last_result: MergedEventSet | None = None

    # ── Windows ──────────────────────────────────────────

    def _today(self) -> datetime:
        now = self._clock().astimezone(self.tz)
        return now.replace(hour=0, minute=0, second=0, microsecond=0)

    def local_window(self) -> tuple[datetime, datetime]:
        start = self._today()
        return start, start + timedelta(days=self.settings.LOCAL_WINDOW_DAYS)

    def fetch_window(self) -> tuple[datetime, datetime]:
        today = self._today()
        return (
            today - timedelta(days=self.settings.FETCH_PAST_DAYS),
            today + timedelta(days=self.settings.FETCH_FUTURE_DAYS),
        )

    # ── Entry point ──────────────────────────────────────

    async def sync(self, group_id: str, user_id: str, remote: RemoteStore | None = None) -> SyncReport:
        """Run all phases. Never raises SyncError: it ends up on the report.

        ``remote`` picks the client for this run (request-scoped or
        service-role); it is only swapped in while holding the run lock.
        """
        if self._sync_lock.locked():
            logger.info(f"Sync already running for user {user_id}; skipping")
            report = SyncReport(group_id=group_id, user_id=user_id, skipped=True)
            report.finished_at = self._clock()
            return report

        async with self._sync_lock:
            if remote is not None:
                self.remote = remote
            report = SyncReport(group_id=group_id, user_id=user_id, started_at=self._clock())
            phases = [
                (SyncPhase.REFRESH_LOCAL, lambda: self._refresh_local()),
                (SyncPhase.CLEANUP_DELETED, lambda: run_cleanup(
                    self.remote, self.local, self.link_store, user_id, report)),
                (SyncPhase.MATERIALIZE_PENDING, lambda: self._materialize_pending(user_id, report)),
                (SyncPhase.PROPAGATE_MODIFIED, lambda: self._propagate_modified(user_id, report)),
                (SyncPhase.PROPAGATE_EXCEPTIONS, lambda: self._propagate_exceptions(user_id, report)),
                (SyncPhase.REFRESH_LOCAL, lambda: self._refresh_local()),
                (SyncPhase.UPLOAD_PERSONAL, lambda: self._upload_personal(group_id, user_id, report)),
                (SyncPhase.FETCH_MERGED, lambda: self._fetch_merged(group_id, user_id, report)),
            ]
            try:
                for phase, run_phase in phases:
                    logger.debug(f"[{user_id}] phase {phase.value}")
                    await run_phase()
                    report.phases_completed.append(phase)
            except SyncError as e:
                report.fail(e)
                logger.error(f"Sync for user {user_id} in group {group_id} failed: {e.message} ({e.detail})")
            finally:
                report.finished_at = self._clock()
                self.last_report = report

            if report.result is not None:
                self.last_result = report.result
                logger.info(
                    f"Sync for user {user_id} in group {group_id} done: "
                    f"{len(report.result.events)} events, "
                    f"{len([o for o in report.outcomes if o.status == OutcomeStatus.ERROR])} item errors"
                )
            return report

    # ── Phase 1 / 6 ──────────────────────────────────────

    async def _refresh_local(self) -> None:
        start, end = self.local_window()
        self._local_window = await self.local.query(start, end)

    # ── Phase 3 ──────────────────────────────────────────

    async def _materialize_pending(self, user_id: str, report: SyncReport) -> None:
        phase = SyncPhase.MATERIALIZE_PENDING
        if self._materialize_lock.locked():
            report.record(phase, OutcomeStatus.SKIPPED, detail="materialization already in progress")
            return

        async with self._materialize_lock:
            attendances = await self.remote.fetch_attendances(user_id, linked=False)
            pending: dict[str, CalendarEvent] = {}
            for attendance in attendances:
                event = attendance.event
                if event is None or not event.is_group or not event.is_active:
                    continue
                if event.is_recurrence_exception:
                    continue
                pending.setdefault(event.id, event)

            created_by_event: dict[str, str] = {}
            created_by_signature: dict[str, str] = {}
            for event in pending.values():
                try:
                    local_id = await self._find_or_create(event, created_by_event, created_by_signature)
                    self.link_store.set_link(event.id, local_id)
                    # Fields are current; a recurrence end is left for phase 4 to apply
                    if event.updated_at is not None:
                        self.link_store.mark_event_synced(event.id, event.updated_at)
                    linked = await self.remote.link_attendees(event.id, user_id, local_id)
                except SyncError as e:
                    logger.warning(f"Could not materialize event {event.id}: {e.message}")
                    report.record(phase, OutcomeStatus.ERROR, event.id, e.message)
                    continue
                report.record(phase, OutcomeStatus.OK, event.id, f"local {local_id}, {linked} attendee rows")

    async def _find_or_create(
        self,
        event: CalendarEvent,
        created_by_event: dict[str, str],
        created_by_signature: dict[str, str],
    ) -> str:
        """Reuse an existing local copy where one can be identified, else create one."""
        known = created_by_event.get(event.id)
        if known is not None:
            return known
        linked = self.link_store.get_local_id(event.id)
        if linked is not None:
            if self._copy_exists(linked, event):
                return linked
            logger.info(f"Linked copy {linked} of {event.id} is gone locally; dropping the link")
            self.link_store.remove_link(event.id)

        signature = _signature(event.title, event.start, event.end, event.all_day)
        if signature in created_by_signature:
            local_id = created_by_signature[signature]
        else:
            match = next(
                (
                    local for local in self._local_window
                    if local.all_day == event.all_day and _same_slot(event.title, event.start, event.end, local)
                ),
                None,
            )
            if match is not None:
                local_id = match.local_id
            else:
                local_id = await self.local.create(LocalEventFields.from_event(event))
                logger.info(f"Created local copy {local_id} for group event {event.id}")

        created_by_event[event.id] = local_id
        created_by_signature[signature] = local_id
        return local_id

    def _copy_exists(self, local_id: str, event: CalendarEvent) -> bool:
        """False only when the event falls in the local window and the copy is not there."""
        start, end = self.local_window()
        overlaps = event.start <= end and (event.end >= start or event.recurrence_rule is not None)
        if not overlaps:
            return True
        return any(local.local_id == local_id for local in self._local_window)

    # ── Phase 4 ──────────────────────────────────────────

    def _mark_synced(self, event: CalendarEvent) -> None:
        if event.updated_at is not None:
            self.link_store.mark_event_synced(event.id, event.updated_at)
        if event.recurrence_end_date is not None:
            self.link_store.set_recurrence_end_date(event.id, event.recurrence_end_date)

    async def _propagate_modified(self, user_id: str, report: SyncReport) -> None:
        phase = SyncPhase.PROPAGATE_MODIFIED
        attendances = await self.remote.fetch_attendances(user_id, linked=True)
        seen: set[str] = set()

        for attendance in attendances:
            event = attendance.event
            local_id = attendance.attendee.local_calendar_event_id
            if event is None or not event.is_group or not event.is_active or event.is_recurrence_exception:
                continue
            if event.id in seen:
                continue
            seen.add(event.id)

            cached_end = self.link_store.recurrence_end_date(event.id)
            end_changed = event.recurrence_end_date is not None and (
                cached_end is None or abs(event.recurrence_end_date - cached_end) > MATCH_TOLERANCE
            )
            cached_at = self.link_store.event_synced_at(event.id)
            modified = event.updated_at is not None and (cached_at is None or event.updated_at > cached_at)
            if not end_changed and not modified:
                continue

            try:
                if end_changed and event.recurrence_rule is not None:
                    # Truncation only: a full update would reopen the series. "end at" excludes the given day
                    await self.local.end_recurrence_at(local_id, event.recurrence_end_date + timedelta(days=1))
                else:
                    await self.local.update(local_id, LocalEventFields.from_event(event))
            except SyncError as e:
                logger.warning(f"Could not update local copy {local_id} of {event.id}: {e.message}")
                report.record(phase, OutcomeStatus.ERROR, event.id, e.message)
                continue

            self._mark_synced(event)
            report.record(phase, OutcomeStatus.OK, event.id, "recurrence end" if end_changed else "fields")

    # ── Phase 5 ──────────────────────────────────────────

    async def _propagate_exceptions(self, user_id: str, report: SyncReport) -> None:
        phase = SyncPhase.PROPAGATE_EXCEPTIONS
        group_ids = await self.remote.fetch_user_group_ids(user_id)
        if not group_ids:
            return
        exceptions = await self.remote.fetch_exceptions(group_ids)
        if not exceptions:
            return
        attendee_links = self._attendee_links(await self.remote.fetch_attendances(user_id, linked=True))

        for exception in exceptions:
            cached_at = self.link_store.exception_synced_at(exception.id)
            if cached_at is not None and (exception.updated_at is None or exception.updated_at <= cached_at):
                continue

            parent_id = exception.parent_event_id
            local_id = self.link_store.get_local_id(parent_id) or attendee_links.get(parent_id)
            if local_id is None:
                report.record(phase, OutcomeStatus.SKIPPED, exception.id, "series not materialized")
                continue

            try:
                if not exception.is_public:
                    await self.local.delete_occurrence(local_id, exception.original_occurrence_date)
                else:
                    fields = LocalEventFields.from_event(exception).model_copy(update={"recurrence_rule": None})
                    await self.local.update_occurrence(local_id, exception.original_occurrence_date, fields)
            except SyncError as e:
                logger.warning(f"Could not apply exception {exception.id} to {local_id}: {e.message}")
                report.record(phase, OutcomeStatus.ERROR, exception.id, e.message)
                continue

            self.link_store.mark_exception_synced(exception.id, exception.updated_at or self._clock())
            report.record(
                phase, OutcomeStatus.OK, exception.id, "cancelled" if not exception.is_public else "modified"
            )

    @staticmethod
    def _attendee_links(attendances: list[Attendance]) -> dict[str, str]:
        links: dict[str, str] = {}
        for attendance in attendances:
            local_id = attendance.attendee.local_calendar_event_id
            if local_id:
                links.setdefault(attendance.attendee.event_id, local_id)
        return links

    # ── Phase 7 ──────────────────────────────────────────

    async def _upload_personal(self, group_id: str, user_id: str, report: SyncReport) -> None:
        phase = SyncPhase.UPLOAD_PERSONAL
        attendances = await self.remote.fetch_attendances(user_id)
        excluded = self.link_store.linked_local_ids() | set(self._attendee_links(attendances).values())
        attended = [
            a.event for a in attendances
            if a.event is not None and a.event.is_group
        ]

        rows: list[dict] = []
        seen_keys: set[tuple[str, str, str]] = set()
        for local in self._local_window:
            if local.local_id in excluded:
                continue
            if any(_same_slot(local.title, local.start, local.end, event) for event in attended):
                report.record(phase, OutcomeStatus.SKIPPED, local.local_id, "matches an attended group event")
                continue
            # The upsert rejects a batch that hits the same conflict key twice
            key = (user_id, group_id, local.local_id)
            if key in seen_keys:
                continue
            seen_keys.add(key)
            rows.append({
                "user_id": user_id,
                "group_id": group_id,
                "title": local.title or "Busy",
                "start_date": local.start.isoformat(),
                "end_date": local.end.isoformat(),
                "is_all_day": local.all_day,
                "location": local.location,
                "notes": local.notes,
                "is_public": True,
                "original_event_id": local.local_id,
                "calendar_name": local.calendar_name,
                "event_type": "personal",
            })

        if not rows:
            return
        await self.remote.upsert_personal_events(rows)
        for row in rows:
            report.record(phase, OutcomeStatus.OK, row["original_event_id"])
        logger.info(f"Uploaded {len(rows)} personal events for user {user_id} to group {group_id}")

    # ── Phase 8 ──────────────────────────────────────────

    async def _fetch_merged(self, group_id: str, user_id: str, report: SyncReport) -> None:
        start, end = self.fetch_window()

        user_group_ids = await self.remote.fetch_user_group_ids(user_id)
        member_ids = await self.remote.fetch_group_member_ids([group_id])
        member_group_ids = await self.remote.fetch_member_group_ids(member_ids)
        personal_owner_ids = await self.remote.fetch_group_member_ids(user_group_ids)

        group_rows = await self.remote.fetch_group_events([group_id], start, end)
        cross_group_rows = await self.remote.fetch_group_events(
            [g for g in member_group_ids if g != group_id], start, end
        )
        attended_ids = await self.remote.fetch_attended_event_ids(member_ids)
        attended_rows = await self.remote.fetch_group_events_by_id(sorted(attended_ids), start, end)
        personal_rows = await self.remote.fetch_personal_events(personal_owner_ids, start, end)

        candidate_ids: set[str] = set()
        for row in group_rows + cross_group_rows + attended_rows + personal_rows:
            candidate_ids.add(row.id)
            if row.parent_event_id:
                candidate_ids.add(row.parent_event_id)
        attendees = await self.remote.fetch_attendees(sorted(candidate_ids))

        inputs = MergeInputs(
            group_id=group_id,
            viewer_user_id=user_id,
            group_member_ids=member_ids,
            window_start=start,
            window_end=end,
            group_rows=group_rows,
            cross_group_rows=cross_group_rows,
            attended_rows=attended_rows,
            personal_rows=personal_rows,
            attendees=attendees,
        )
        events = merge(inputs, tz=self.tz, busy_placeholder=self.settings.BUSY_PLACEHOLDER)
        report.result = MergedEventSet(
            group_id=group_id,
            user_id=user_id,
            window_start=start,
            window_end=end,
            events=events,
            generated_at=self._clock(),
        )
