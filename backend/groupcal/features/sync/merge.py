"""
Sync feature: Merge/Dedup Engine.

Turns the rows of several overlapping visibility queries into one
display-ready event per logical occurrence. Pure: no I/O, no clock.

Passes, in order:
  1. identity dedup inside each source family
  2. union across sources by id (group beats personal)
  3. content-signature dedup (group rows seen first)
  4. recurrence split + expansion
  5. access/privacy projection for other groups' events
  6. shared-count annotation
"""

import logging
from collections import defaultdict
from datetime import datetime, tzinfo

from pydantic import BaseModel, Field

from groupcal.features.sync.models import (
    AttendeeRecord,
    CalendarEvent,
    DisplayEvent,
    ensure_aware,
)
from groupcal.features.sync.recurrence import expand

logger = logging.getLogger(__name__)


class MergeInputs(BaseModel):
    """Everything the merge needs, already fetched."""
    group_id: str  # the viewer's current group
    viewer_user_id: str
    group_member_ids: list[str] = Field(default_factory=list)  # members of the current group
    window_start: datetime
    window_end: datetime
    group_rows: list[CalendarEvent] = Field(default_factory=list)  # events in the current group
    cross_group_rows: list[CalendarEvent] = Field(default_factory=list)  # groups sharing a member
    attended_rows: list[CalendarEvent] = Field(default_factory=list)  # events members attend
    personal_rows: list[CalendarEvent] = Field(default_factory=list)  # members' personal events
    attendees: list[AttendeeRecord] = Field(default_factory=list)


# ── Pass 1: identity dedup ───────────────────────────────

def dedup_by_id(*sources: list[CalendarEvent]) -> list[CalendarEvent]:
    """First write wins; duplicates are assumed identical."""
    seen: dict[str, CalendarEvent] = {}
    for rows in sources:
        for row in rows:
            seen.setdefault(row.id, row)
    return list(seen.values())


def dedup_personal(rows: list[CalendarEvent]) -> list[CalendarEvent]:
    """One personal row per original_event_id, keeping the smallest (oldest) id.

    Rows without an original_event_id always pass through.
    """
    by_original: dict[str, CalendarEvent] = {}
    loose: list[CalendarEvent] = []
    for row in rows:
        if row.original_event_id is None:
            loose.append(row)
            continue
        current = by_original.get(row.original_event_id)
        if current is None or row.id < current.id:
            by_original[row.original_event_id] = row
    return list(by_original.values()) + loose


# ── Pass 2: union ────────────────────────────────────────

def union_by_id(rows: list[CalendarEvent]) -> list[CalendarEvent]:
    """Dedup across all sources; a group row replaces a personal row with the same id."""
    final: dict[str, CalendarEvent] = {}
    for row in rows:
        existing = final.get(row.id)
        if existing is None or (not existing.is_group and row.is_group):
            final[row.id] = row
    return list(final.values())


# ── Pass 3: content signature ────────────────────────────

def dedup_by_content(rows: list[CalendarEvent]) -> list[CalendarEvent]:
    """Drop rows whose (title, start, end, all_day) was already seen.

    Group rows are visited first, so a group event materialized into a
    personal calendar and uploaded back loses to the group original.
    """
    ordered = sorted(rows, key=lambda r: 0 if r.is_group else 1)
    seen: set[str] = set()
    kept: list[CalendarEvent] = []
    for row in ordered:
        signature = row.content_signature
        if signature in seen:
            logger.debug(f"Content duplicate dropped: {row.id} ({row.event_type.value})")
            continue
        seen.add(signature)
        kept.append(row)
    return kept


# ── Pass 4: recurrence ───────────────────────────────────

def split_series(
    rows: list[CalendarEvent],
) -> tuple[list[CalendarEvent], dict[str, list[CalendarEvent]], list[CalendarEvent]]:
    """Partition into (roots, exceptions by parent id, plain events)."""
    roots: list[CalendarEvent] = []
    exceptions: dict[str, list[CalendarEvent]] = defaultdict(list)
    plain: list[CalendarEvent] = []
    for row in rows:
        if row.is_recurrence_exception:
            exceptions[row.parent_event_id].append(row)
        elif row.is_root:
            roots.append(row)
        elif row.parent_event_id is None:
            plain.append(row)
        else:
            logger.debug(f"Skipping orphaned child row {row.id} (parent {row.parent_event_id})")
    return roots, dict(exceptions), plain


def expand_series(
    rows: list[CalendarEvent],
    window_start: datetime,
    window_end: datetime,
    tz: tzinfo | None = None,
) -> list[CalendarEvent]:
    """Expand every root; keep plain events and in-window public exceptions whose
    series is not part of this set."""
    roots, exceptions, plain = split_series(rows)
    expanded: list[CalendarEvent] = []
    for root in roots:
        expanded.extend(expand(root, exceptions.pop(root.id, []), window_start, window_end, tz))

    for leftovers in exceptions.values():
        for exception in leftovers:
            if exception.is_public and window_start <= exception.original_occurrence_date <= window_end:
                expanded.append(exception)

    return plain + expanded


# ── Pass 5: access projection ────────────────────────────

def _attending_members(
    attendees: list[AttendeeRecord], member_ids: set[str]
) -> dict[str, list[AttendeeRecord]]:
    by_event: dict[str, list[AttendeeRecord]] = defaultdict(list)
    seen: set[tuple[str, str]] = set()
    for attendee in attendees:
        if attendee.user_id is None or attendee.user_id not in member_ids:
            continue
        key = (attendee.event_id, attendee.user_id)
        if key in seen:
            continue
        seen.add(key)
        by_event[attendee.event_id].append(attendee)
    return by_event


def busy_title(names: list[str], placeholder: str = "BUSY") -> str:
    """'BUSY - Alice' or 'BUSY - Alice +2'."""
    title = f"{placeholder} - {names[0]}"
    if len(names) > 1:
        title += f" +{len(names) - 1}"
    return title


def project_access(
    rows: list[CalendarEvent],
    group_id: str,
    group_member_ids: list[str],
    attendees: list[AttendeeRecord],
    placeholder: str = "BUSY",
) -> list[CalendarEvent]:
    """Hide details of other groups' events; drop them unless a member attends."""
    attending = _attending_members(attendees, set(group_member_ids))
    visible: list[CalendarEvent] = []
    for row in rows:
        if row.group_id == group_id or not row.is_group:
            visible.append(row)
            continue

        members = attending.get(row.id)
        if not members and row.parent_event_id:
            members = attending.get(row.parent_event_id)
        if not members:
            continue

        names = [m.display_name or "Member" for m in members]
        visible.append(
            row.model_copy(
                update={
                    "title": busy_title(names, placeholder),
                    "location": None,
                    "notes": None,
                }
            )
        )
    return visible


# ── Pass 6: shared count ─────────────────────────────────

def annotate_shared(rows: list[CalendarEvent]) -> list[DisplayEvent]:
    """Collapse same-signature rows owned by different users into one entry."""
    unique: dict[str, CalendarEvent] = {}
    for row in rows:
        unique.setdefault(row.occurrence_key, row)

    by_signature: dict[str, list[CalendarEvent]] = defaultdict(list)
    for row in unique.values():
        by_signature[row.content_signature].append(row)

    display: list[DisplayEvent] = []
    for members in by_signature.values():
        ids = {m.id for m in members}
        owners = {m.owner_user_id for m in members}
        if len(ids) >= 2 and len(owners) >= 2:
            representative = next((m for m in members if m.is_group), members[0])
            display.append(DisplayEvent.from_event(representative, shared_count=len(ids)))
        else:
            display.extend(DisplayEvent.from_event(m) for m in members)
    return display


# ── Entry point ──────────────────────────────────────────

def merge(
    inputs: MergeInputs,
    tz: tzinfo | None = None,
    busy_placeholder: str = "BUSY",
) -> list[DisplayEvent]:
    """Run all passes and return the display set sorted by (start, end)."""
    window_start = ensure_aware(inputs.window_start)
    window_end = ensure_aware(inputs.window_end)

    group_rows = dedup_by_id(inputs.group_rows, inputs.cross_group_rows, inputs.attended_rows)
    personal_rows = dedup_personal(inputs.personal_rows)
    rows = union_by_id(group_rows + personal_rows)
    rows = dedup_by_content(rows)
    rows = expand_series(rows, window_start, window_end, tz)
    rows = project_access(
        rows, inputs.group_id, inputs.group_member_ids, inputs.attendees, busy_placeholder
    )
    display = annotate_shared(rows)

    logger.debug(
        f"Merged {len(inputs.group_rows) + len(inputs.cross_group_rows) + len(inputs.attended_rows)}"
        f" group + {len(inputs.personal_rows)} personal rows into {len(display)} events"
    )
    return sorted(display, key=lambda e: (e.start, e.end))
