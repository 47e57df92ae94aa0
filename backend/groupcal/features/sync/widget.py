"""
Sync feature: widget/export slice of a merged set.
"""

from datetime import datetime, timedelta

from pydantic import BaseModel

from groupcal.features.sync.models import DisplayEvent, MergedEventSet, ensure_aware

HIDDEN_KEYWORDS = ("holiday", "birthday")


class WidgetEvent(BaseModel):
    id: str
    title: str
    start: datetime
    end: datetime
    location: str | None = None
    calendar_title: str
    all_day: bool = False


def _is_holiday_or_birthday(event: DisplayEvent) -> bool:
    haystacks = (event.title.lower(), (event.calendar_name or "").lower())
    return any(word in text for word in HIDDEN_KEYWORDS for text in haystacks)


def _relevant_to(event: DisplayEvent, viewer_user_id: str, attended_event_ids: set[str]) -> bool:
    """Group events the viewer attends or created; the viewer's own personal events."""
    if event.is_group:
        return (
            event.owner_user_id == viewer_user_id
            or event.id in attended_event_ids
            or (event.parent_event_id is not None and event.parent_event_id in attended_event_ids)
        )
    return event.owner_user_id == viewer_user_id


def widget_slice(
    merged: MergedEventSet,
    viewer_user_id: str,
    attended_event_ids: set[str],
    now: datetime,
    lookahead_days: int = 30,
    hide_holidays: bool = True,
    default_calendar_title: str = "Group calendar",
) -> list[WidgetEvent]:
    """Upcoming, viewer-relevant events for a home-screen widget, sorted by (start, end)."""
    now = ensure_aware(now)
    horizon = now + timedelta(days=lookahead_days)

    selected = []
    for event in merged.events:
        if hide_holidays and _is_holiday_or_birthday(event):
            continue
        if not _relevant_to(event, viewer_user_id, attended_event_ids):
            continue
        if event.end <= now or event.start >= horizon:
            continue
        selected.append(event)

    selected.sort(key=lambda e: (e.start, e.end))
    return [
        WidgetEvent(
            id=e.id,
            title=e.title,
            start=e.start,
            end=e.end,
            location=e.location,
            calendar_title=e.calendar_name or default_calendar_title,
            all_day=e.all_day,
        )
        for e in selected
    ]
