"""
Sync feature: Recurrence Engine.

Pure functions that turn a root event plus its exception rows into the
concrete occurrences inside a closed window. No I/O, deterministic.

Candidates are always computed from the series start (never chained from
the previous candidate), so a monthly rule on the 31st yields Jan 31,
Feb 28, Mar 31 rather than drifting to the 28th.
"""

import logging
from collections.abc import Iterator
from datetime import date, datetime, timedelta, timezone, tzinfo

from dateutil.relativedelta import relativedelta

from groupcal.features.sync.models import (
    CalendarEvent,
    Frequency,
    RecurrenceRule,
    ensure_aware,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _to_local(value: datetime, tz: tzinfo | None) -> datetime:
    value = ensure_aware(value)
    return value.astimezone(tz) if tz is not None else value


def _local_day(value: datetime, tz: tzinfo | None) -> date:
    return _to_local(value, tz).date()


def sunday_weekday(value: datetime | date) -> int:
    """Weekday with 0 = Sunday .. 6 = Saturday."""
    return (value.weekday() + 1) % 7


def iter_candidate_starts(rule: RecurrenceRule, series_start: datetime) -> Iterator[datetime]:
    """Yield candidate occurrence starts in ascending order, from the series start on.

    The iterator is unbounded; callers stop it on window, count or end date.
    """
    step = 0
    if rule.frequency == Frequency.DAILY:
        while True:
            yield series_start + timedelta(days=step * rule.interval)
            step += 1

    elif rule.frequency == Frequency.WEEKLY:
        days = rule.days_of_week or [sunday_weekday(series_start)]
        week_start = series_start - timedelta(days=sunday_weekday(series_start))
        while True:
            block = week_start + timedelta(weeks=step * rule.interval)
            for day in days:
                candidate = block + timedelta(days=day)
                if candidate >= series_start:
                    yield candidate
            step += 1

    elif rule.frequency == Frequency.MONTHLY:
        day = rule.day_of_month or series_start.day
        while True:
            # relativedelta clamps an absolute day to the target month's last day
            candidate = series_start + relativedelta(months=step * rule.interval, day=day)
            if candidate >= series_start:
                yield candidate
            step += 1

    elif rule.frequency == Frequency.YEARLY:
        month = rule.month_of_year or series_start.month
        day = rule.day_of_month or series_start.day
        while True:
            candidate = series_start + relativedelta(
                years=step * rule.interval, month=month, day=day
            )
            if candidate >= series_start:
                yield candidate
            step += 1


def series_last_day(root: CalendarEvent, tz: tzinfo | None = None) -> date | None:
    """Last calendar day a series may produce: the earlier of the rule's end
    date and the root's recurrence_end_date, or None if open-ended."""
    bounds = []
    if root.recurrence_rule is not None and root.recurrence_rule.end_date is not None:
        bounds.append(_local_day(root.recurrence_rule.end_date, tz))
    if root.recurrence_end_date is not None:
        bounds.append(_local_day(root.recurrence_end_date, tz))
    return min(bounds) if bounds else None


def _make_occurrence(root: CalendarEvent, start: datetime, duration: timedelta) -> CalendarEvent:
    return root.model_copy(
        update={
            "start": start,
            "end": start + duration,
            "parent_event_id": root.id,
            "original_occurrence_date": start,
            "is_recurrence_exception": False,
        }
    )


def _index_exceptions(
    root: CalendarEvent, exceptions: list[CalendarEvent], tz: tzinfo | None
) -> dict[date, CalendarEvent]:
    """Map occurrence day -> exception. On duplicates the newest row wins."""
    by_day: dict[date, CalendarEvent] = {}
    for exception in exceptions:
        if exception.parent_event_id != root.id or exception.original_occurrence_date is None:
            logger.debug(f"Ignoring exception {exception.id}: not a child of {root.id}")
            continue
        day = _local_day(exception.original_occurrence_date, tz)
        current = by_day.get(day)
        if current is None:
            by_day[day] = exception
            continue
        logger.warning(
            f"Duplicate exceptions for series {root.id} on {day}: {current.id}, {exception.id}"
        )
        if (exception.updated_at or _EPOCH) > (current.updated_at or _EPOCH):
            by_day[day] = exception
    return by_day


def expand(
    root: CalendarEvent,
    exceptions: list[CalendarEvent],
    window_start: datetime,
    window_end: datetime,
    tz: tzinfo | None = None,
) -> list[CalendarEvent]:
    """Materialize the occurrences of ``root`` inside [window_start, window_end].

    Generated occurrences keep the root's id (so edits target the series)
    and carry ``parent_event_id`` / ``original_occurrence_date``. Exception
    rows replace (modified) or remove (cancelled) the occurrence on their
    calendar day; in-window modifications that no longer line up with the
    rule are still emitted.
    """
    window_start = ensure_aware(window_start)
    window_end = ensure_aware(window_end)
    rule = root.recurrence_rule
    if rule is None:
        return [root] if window_start <= root.start <= window_end else []

    duration = root.end - root.start
    last_day = series_last_day(root, tz)
    by_day = _index_exceptions(root, exceptions, tz)
    matched: set[date] = set()
    results: list[CalendarEvent] = []
    generated = 0

    for candidate in iter_candidate_starts(rule, _to_local(root.start, tz)):
        if candidate > window_end:
            break
        day = candidate.date()
        if last_day is not None and day > last_day:
            break
        if rule.count is not None and generated >= rule.count:
            break
        # Every generated occurrence counts toward ``count``, even outside the window
        generated += 1
        if candidate < window_start:
            continue

        exception = by_day.get(day)
        if exception is None:
            results.append(_make_occurrence(root, candidate, duration))
            continue
        matched.add(day)
        if exception.is_public:
            results.append(exception)

    for day, exception in by_day.items():
        if day in matched or not exception.is_public:
            continue
        if window_start <= exception.original_occurrence_date <= window_end:
            results.append(exception)

    results.sort(key=lambda e: (e.start, e.end))
    return results


def next_occurrence(
    root: CalendarEvent,
    after: datetime,
    exceptions: list[CalendarEvent] | None = None,
    horizon: timedelta = timedelta(days=366),
    tz: tzinfo | None = None,
) -> CalendarEvent | None:
    """First occurrence strictly after ``after`` within ``horizon``, or None."""
    after = ensure_aware(after)
    for occurrence in expand(root, exceptions or [], after, after + horizon, tz):
        if occurrence.start > after:
            return occurrence
    return None
