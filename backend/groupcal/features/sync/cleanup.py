"""
Sync feature: local<->remote cleanup.

Three overlapping passes, each driven by its own data source, because the
remote cascade deletes are not guaranteed to have run by the time we sync:

  link_store        every linked event whose remote row is gone or rain-checked
  pending_queue     rows queued by the remote when an event was deleted
  orphaned_attendee this user's linked attendee rows whose event is no longer live

A local copy that is already missing counts as deleted.
"""

import logging

from groupcal.core.exceptions import LocalEventNotFoundError, LocalStoreError
from groupcal.features.sync.link_store import LinkStore
from groupcal.features.sync.local_store import LocalStoreAdapter
from groupcal.features.sync.models import (
    EventStatus,
    OutcomeStatus,
    SyncPhase,
    SyncReport,
)
from groupcal.features.sync.remote import RemoteStore

logger = logging.getLogger(__name__)

PHASE = SyncPhase.CLEANUP_DELETED


async def delete_local_copy(local: LocalStoreAdapter, local_id: str) -> None:
    """Delete a local copy; an already-missing copy is not an error."""
    try:
        await local.delete(local_id)
    except LocalEventNotFoundError:
        logger.debug(f"Local copy {local_id} already gone")


async def cleanup_from_link_store(
    remote: RemoteStore,
    local: LocalStoreAdapter,
    link_store: LinkStore,
    report: SyncReport,
) -> None:
    links = link_store.links()
    if not links:
        return
    statuses = await remote.fetch_event_statuses(list(links))

    for event_id, local_id in links.items():
        if event_id in statuses and statuses[event_id] in (None, EventStatus.ACTIVE):
            continue
        try:
            await delete_local_copy(local, local_id)
        except LocalStoreError as e:
            logger.warning(f"Could not delete local copy {local_id} of {event_id}: {e.message}")
            report.record(PHASE, OutcomeStatus.ERROR, event_id, f"link_store: {e.message}")
            continue
        link_store.remove_link(event_id)
        report.record(PHASE, OutcomeStatus.OK, event_id, "link_store")


async def cleanup_from_pending_queue(
    remote: RemoteStore,
    local: LocalStoreAdapter,
    link_store: LinkStore,
    user_id: str,
    report: SyncReport,
) -> None:
    pending = await remote.fetch_pending_deletions(user_id)
    if not pending:
        return

    for row in pending:
        try:
            await delete_local_copy(local, row.local_calendar_event_id)
        except LocalStoreError as e:
            # The queue row is consumed either way
            logger.warning(f"Pending deletion {row.id} failed locally: {e.message}")
            report.record(PHASE, OutcomeStatus.ERROR, row.event_id or row.id, f"pending_queue: {e.message}")
        else:
            report.record(PHASE, OutcomeStatus.OK, row.event_id or row.id, "pending_queue")
        if row.event_id and link_store.get_local_id(row.event_id) == row.local_calendar_event_id:
            link_store.remove_link(row.event_id)
        else:
            link_store.remove_by_local_id(row.local_calendar_event_id)

    await remote.delete_pending_deletions([row.id for row in pending])
    logger.info(f"Consumed {len(pending)} pending local deletions for user {user_id}")


async def cleanup_orphaned_attendees(
    remote: RemoteStore,
    local: LocalStoreAdapter,
    link_store: LinkStore,
    user_id: str,
    report: SyncReport,
) -> None:
    attendances = await remote.fetch_attendances(user_id, linked=True)
    stale_attendee_ids: list[str] = []

    # A missing embedded event may just be a row that failed validation
    unresolved = sorted({a.attendee.event_id for a in attendances if a.event is None})
    statuses = await remote.fetch_event_statuses(unresolved) if unresolved else {}

    for attendance in attendances:
        attendee = attendance.attendee
        if attendance.event is not None and attendance.event.is_active:
            continue
        if attendance.event is None and attendee.event_id in statuses and statuses[attendee.event_id] in (
            None, EventStatus.ACTIVE
        ):
            logger.warning(f"Keeping local copy of {attendee.event_id}: event is live but unreadable")
            continue
        local_id = attendee.local_calendar_event_id
        try:
            await delete_local_copy(local, local_id)
        except LocalStoreError as e:
            logger.warning(f"Could not delete orphaned copy {local_id}: {e.message}")
            report.record(PHASE, OutcomeStatus.ERROR, attendee.event_id, f"orphaned_attendee: {e.message}")
            continue
        if link_store.get_local_id(attendee.event_id) == local_id:
            link_store.remove_link(attendee.event_id)
        else:
            link_store.remove_by_local_id(local_id)
        if attendee.id:
            stale_attendee_ids.append(attendee.id)
        report.record(PHASE, OutcomeStatus.OK, attendee.event_id, "orphaned_attendee")

    await remote.delete_attendees(stale_attendee_ids)


async def run_cleanup(
    remote: RemoteStore,
    local: LocalStoreAdapter,
    link_store: LinkStore,
    user_id: str,
    report: SyncReport,
) -> None:
    """Run all three passes in order. Remote failures propagate."""
    await cleanup_from_link_store(remote, local, link_store, report)
    await cleanup_from_pending_queue(remote, local, link_store, user_id, report)
    await cleanup_orphaned_attendees(remote, local, link_store, user_id, report)
