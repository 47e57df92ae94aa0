"""
Sync feature: API routes for running syncs and reading the merged view.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from groupcal.background.scheduler import SyncScheduler
from groupcal.config import get_settings
from groupcal.core.dependencies import (
    get_current_user_id,
    get_orchestrator,
    get_remote_store,
    get_sync_scheduler,
)
from groupcal.core.exceptions import SyncError, app_error_to_http, status_for_error
from groupcal.features.sync.models import MergedEventSet
from groupcal.features.sync.orchestrator import SyncOrchestrator
from groupcal.features.sync.remote import RemoteStore
from groupcal.features.sync.schemas import LocalChangeResponse, SyncRunResponse, WidgetResponse
from groupcal.features.sync.widget import widget_slice

router = APIRouter()


async def _merged_for(
    group_id: str, user_id: str, orchestrator: SyncOrchestrator, remote: RemoteStore
) -> MergedEventSet:
    """The cached merged set for this group, or a fresh sync's."""
    cached = orchestrator.last_result
    if cached is not None and cached.group_id == group_id and cached.user_id == user_id:
        return cached
    report = await orchestrator.sync(group_id, user_id, remote=remote)
    try:
        return report.raise_for_error()
    except SyncError as e:
        raise app_error_to_http(e, status_for_error(e))


@router.post("/local-changed", response_model=LocalChangeResponse)
async def local_changed(
    user_id: str = Depends(get_current_user_id),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Signal that the device calendar changed; schedules a debounced sync."""
    scheduled = scheduler.notify_local_change(user_id)
    return LocalChangeResponse(
        scheduled=scheduled,
        debounce_seconds=scheduler.settings.SYNC_DEBOUNCE_SECONDS,
    )


@router.post("/{group_id}", response_model=SyncRunResponse)
async def run_sync(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    remote: RemoteStore = Depends(get_remote_store),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Run a full sync now and keep this group on the periodic schedule."""
    scheduler.register(group_id, user_id)
    report = await orchestrator.sync(group_id, user_id, remote=remote)
    if report.error is not None:
        try:
            report.raise_for_error()
        except SyncError as e:
            raise app_error_to_http(e, status_for_error(e))
    return SyncRunResponse.from_report(report)


@router.get("/{group_id}/events", response_model=MergedEventSet)
async def list_merged_events(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    remote: RemoteStore = Depends(get_remote_store),
):
    """The merged, deduplicated view of the group's calendar."""
    return await _merged_for(group_id, user_id, orchestrator, remote)


@router.get("/{group_id}/widget", response_model=WidgetResponse)
async def widget_events(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    remote: RemoteStore = Depends(get_remote_store),
):
    """Upcoming events relevant to the viewer, for a home-screen widget."""
    settings = get_settings()
    merged = await _merged_for(group_id, user_id, orchestrator, remote)
    try:
        attended = await remote.fetch_attended_event_ids([user_id])
    except SyncError as e:
        raise app_error_to_http(e, status_for_error(e))
    now = datetime.now(timezone.utc)
    events = widget_slice(
        merged,
        viewer_user_id=user_id,
        attended_event_ids=attended,
        now=now,
        lookahead_days=settings.WIDGET_LOOKAHEAD_DAYS,
        hide_holidays=settings.WIDGET_HIDE_HOLIDAYS,
    )
    return WidgetResponse(generated_at=now, events=events)
