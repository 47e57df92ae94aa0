"""
Events feature: API routes for event lifecycle operations.
"""

from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends

from groupcal.config import get_settings
from groupcal.core.dependencies import get_current_user_id, get_remote_store
from groupcal.core.exceptions import AppBaseError, app_error_to_http, status_for_error
from groupcal.features.events.schemas import (
    OccurrenceCancel,
    OccurrenceModify,
    RainCheckRequest,
    RescheduleRequest,
    SeriesSplit,
)
from groupcal.features.events.service import EventService
from groupcal.features.sync.remote import RemoteStore

router = APIRouter()


def _service(remote: RemoteStore) -> EventService:
    return EventService(remote, tz=ZoneInfo(get_settings().CALENDAR_TIMEZONE))


def _http(error: AppBaseError):
    return app_error_to_http(error, status_for_error(error))


@router.delete("/{event_id}")
async def delete_event(
    event_id: str,
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
):
    """Delete an event; invitees' local copies are queued for removal."""
    try:
        queued = await _service(remote).delete_event(user_id, event_id)
    except AppBaseError as e:
        raise _http(e)
    return {"message": "Event deleted", "pending_local_deletions": queued}


@router.post("/{event_id}/occurrences/cancel")
async def cancel_occurrence(
    event_id: str,
    data: OccurrenceCancel,
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
):
    """Cancel a single occurrence of a recurring event."""
    try:
        exception = await _service(remote).cancel_occurrence(user_id, event_id, data.occurrence_date)
    except AppBaseError as e:
        raise _http(e)
    return {"data": exception.to_row()}


@router.post("/{event_id}/occurrences/modify")
async def modify_occurrence(
    event_id: str,
    data: OccurrenceModify,
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
):
    """Change a single occurrence of a recurring event."""
    try:
        exception = await _service(remote).modify_occurrence(user_id, event_id, data)
    except AppBaseError as e:
        raise _http(e)
    return {"data": exception.to_row()}


@router.post("/{event_id}/split")
async def split_series(
    event_id: str,
    data: SeriesSplit,
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
):
    """Edit this and all future occurrences."""
    try:
        continuation = await _service(remote).split_series(user_id, event_id, data)
    except AppBaseError as e:
        raise _http(e)
    return {"data": continuation.to_row()}


@router.post("/{event_id}/rain-check")
async def rain_check(
    event_id: str,
    data: RainCheckRequest,
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
):
    """Creator rain-checks the event directly."""
    try:
        event = await _service(remote).rain_check(user_id, event_id, data.reason)
    except AppBaseError as e:
        raise _http(e)
    return {"data": event.to_row()}


@router.post("/{event_id}/rain-check/request")
async def request_rain_check(
    event_id: str,
    data: RainCheckRequest,
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
):
    """An attendee asks the creator to rain-check."""
    try:
        event = await _service(remote).request_rain_check(user_id, event_id, data.reason)
    except AppBaseError as e:
        raise _http(e)
    return {"data": event.to_row()}


@router.post("/{event_id}/rain-check/approve")
async def approve_rain_check(
    event_id: str,
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
):
    try:
        event = await _service(remote).approve_rain_check(user_id, event_id)
    except AppBaseError as e:
        raise _http(e)
    return {"data": event.to_row()}


@router.post("/{event_id}/rain-check/deny")
async def deny_rain_check(
    event_id: str,
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
):
    try:
        event = await _service(remote).deny_rain_check(user_id, event_id)
    except AppBaseError as e:
        raise _http(e)
    return {"data": event.to_row()}


@router.post("/{event_id}/reschedule")
async def reschedule(
    event_id: str,
    data: RescheduleRequest,
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
):
    """Create a new event from a rain-checked one."""
    try:
        event = await _service(remote).reschedule(user_id, event_id, data)
    except AppBaseError as e:
        raise _http(e)
    return {"data": event.to_row()}
