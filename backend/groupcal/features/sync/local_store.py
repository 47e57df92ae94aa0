"""
Sync feature: Local Store Adapter.

The device's native calendar is an external collaborator; the orchestrator
only sees this protocol. ``InMemoryLocalStore`` implements it for
development and tests, including single-occurrence edits on series.
"""

import itertools
import logging
from datetime import date, datetime, timedelta
from typing import Protocol, runtime_checkable

from groupcal.core.exceptions import LocalEventNotFoundError
from groupcal.features.sync.models import LocalEvent, LocalEventFields, ensure_aware
from groupcal.features.sync.recurrence import iter_candidate_starts

logger = logging.getLogger(__name__)


@runtime_checkable
class LocalStoreAdapter(Protocol):
    """Capability over the device calendar. All methods may suspend."""

    async def query(self, start: datetime, end: datetime) -> list[LocalEvent]: ...

    async def create(self, fields: LocalEventFields) -> str: ...

    async def update(self, local_id: str, fields: LocalEventFields) -> None: ...

    async def delete(self, local_id: str) -> None: ...

    async def delete_occurrence(self, local_id: str, occurrence_date: datetime) -> None: ...

    async def end_recurrence_at(self, local_id: str, date: datetime) -> None: ...

    async def update_occurrence(
        self, local_id: str, occurrence_date: datetime, fields: LocalEventFields
    ) -> None: ...


class InMemoryLocalStore:
    """A LocalStoreAdapter backed by a dict. Records every call in ``calls``."""

    def __init__(self, events: list[LocalEvent] | None = None):
        self._ids = itertools.count(1)
        self._events: dict[str, LocalEvent] = {}
        self._cancelled: dict[str, set[date]] = {}
        self._overrides: dict[str, dict[date, LocalEventFields]] = {}
        self._ends_before: dict[str, date] = {}
        self.calls: list[tuple[str, str | None]] = []
        for event in events or []:
            self._events[event.local_id] = event

    def get(self, local_id: str) -> LocalEvent | None:
        return self._events.get(local_id)

    def all_ids(self) -> set[str]:
        return set(self._events)

    def _require(self, local_id: str) -> LocalEvent:
        event = self._events.get(local_id)
        if event is None:
            raise LocalEventNotFoundError(local_id)
        return event

    # ── Protocol ─────────────────────────────────────────

    async def query(self, start: datetime, end: datetime) -> list[LocalEvent]:
        self.calls.append(("query", None))
        start, end = ensure_aware(start), ensure_aware(end)
        found: list[LocalEvent] = []
        for event in self._events.values():
            found.extend(self._occurrences(event, start, end))
        return sorted(found, key=lambda e: (e.start, e.end))

    async def create(self, fields: LocalEventFields) -> str:
        local_id = f"local-{next(self._ids)}"
        self.calls.append(("create", local_id))
        self._events[local_id] = LocalEvent(local_id=local_id, **fields.model_dump())
        return local_id

    async def update(self, local_id: str, fields: LocalEventFields) -> None:
        self.calls.append(("update", local_id))
        current = self._require(local_id)
        self._events[local_id] = LocalEvent(
            local_id=local_id, calendar_name=current.calendar_name, **fields.model_dump()
        )

    async def delete(self, local_id: str) -> None:
        self.calls.append(("delete", local_id))
        self._require(local_id)
        del self._events[local_id]
        self._cancelled.pop(local_id, None)
        self._overrides.pop(local_id, None)
        self._ends_before.pop(local_id, None)

    async def delete_occurrence(self, local_id: str, occurrence_date: datetime) -> None:
        self.calls.append(("delete_occurrence", local_id))
        self._require(local_id)
        day = ensure_aware(occurrence_date).date()
        self._cancelled.setdefault(local_id, set()).add(day)
        self._overrides.get(local_id, {}).pop(day, None)

    async def end_recurrence_at(self, local_id: str, date: datetime) -> None:
        """Series stops before ``date``: the given day itself is excluded."""
        self.calls.append(("end_recurrence_at", local_id))
        self._require(local_id)
        self._ends_before[local_id] = ensure_aware(date).date()

    async def update_occurrence(
        self, local_id: str, occurrence_date: datetime, fields: LocalEventFields
    ) -> None:
        self.calls.append(("update_occurrence", local_id))
        self._require(local_id)
        day = ensure_aware(occurrence_date).date()
        self._overrides.setdefault(local_id, {})[day] = fields
        self._cancelled.get(local_id, set()).discard(day)

    # ── Series expansion ─────────────────────────────────

    def _occurrences(self, event: LocalEvent, start: datetime, end: datetime) -> list[LocalEvent]:
        rule = event.recurrence_rule
        if rule is None:
            return [event] if event.end >= start and event.start <= end else []

        duration: timedelta = event.end - event.start
        ends_before = self._ends_before.get(event.local_id)
        last_day = rule.end_date.date() if rule.end_date is not None else None
        cancelled = self._cancelled.get(event.local_id, set())
        overrides = self._overrides.get(event.local_id, {})

        found: list[LocalEvent] = []
        generated = 0
        for candidate in iter_candidate_starts(rule, event.start):
            day = candidate.date()
            if candidate > end:
                break
            if rule.count is not None and generated >= rule.count:
                break
            if ends_before is not None and day >= ends_before:
                break
            if last_day is not None and day > last_day:
                break
            generated += 1
            if day in cancelled:
                continue
            override = overrides.get(day)
            if override is not None:
                occurrence = LocalEvent(
                    local_id=event.local_id,
                    calendar_name=event.calendar_name,
                    **override.model_dump(exclude={"recurrence_rule"}),
                    recurrence_rule=rule,
                )
            else:
                occurrence = event.model_copy(update={"start": candidate, "end": candidate + duration})
            if occurrence.end >= start and occurrence.start <= end:
                found.append(occurrence)
        return found
