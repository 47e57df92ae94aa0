"""
Sync feature: device-local Link Store.

Remembers which local-store event each remote event was materialized as,
independently of ``event_attendees`` so the link survives a server-side
cascade delete of the attendee row. Also caches per-event and
per-exception sync timestamps and the last seen recurrence end date.

Persisted as one JSON document holding four flat string-keyed maps.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from groupcal.core.exceptions import LocalStoreError

logger = logging.getLogger(__name__)

EVENT_LINKS = "event_links"  # event id -> local id
EVENT_SYNCED_AT = "event_synced_at"  # event id -> epoch seconds
EXCEPTION_SYNCED_AT = "exception_synced_at"  # exception id -> epoch seconds
RECURRENCE_END_DATES = "recurrence_end_dates"  # event id -> epoch seconds

_MAPS = (EVENT_LINKS, EVENT_SYNCED_AT, EXCEPTION_SYNCED_AT, RECURRENCE_END_DATES)


def _to_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class LinkStore:
    """Single-writer key-value store; every mutation is flushed to disk.

    ``path=None`` keeps everything in memory (tests, dry runs).
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path is not None else None
        self._data: dict[str, dict] = {name: {} for name in _MAPS}
        if self.path is not None and self.path.exists():
            self._load()

    # ── Persistence ──────────────────────────────────────

    def _load(self) -> None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            # A corrupt file only costs us a re-sync; start clean
            logger.error(f"Link store at {self.path} unreadable, starting empty: {e}")
            return
        for name in _MAPS:
            section = raw.get(name)
            if isinstance(section, dict):
                self._data[name] = {str(k): v for k, v in section.items()}

    def save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(self._data, f, sort_keys=True)
            tmp_path.replace(self.path)
        except OSError as e:
            raise LocalStoreError("Could not persist the link store", detail=str(e)) from e

    def snapshot(self) -> dict[str, dict]:
        """Deep copy of all four maps."""
        return {name: dict(section) for name, section in self._data.items()}

    # ── Links ────────────────────────────────────────────

    def links(self) -> dict[str, str]:
        return dict(self._data[EVENT_LINKS])

    def linked_local_ids(self) -> set[str]:
        return set(self._data[EVENT_LINKS].values())

    def get_local_id(self, event_id: str) -> str | None:
        return self._data[EVENT_LINKS].get(event_id)

    def set_link(self, event_id: str, local_id: str) -> None:
        if self._data[EVENT_LINKS].get(event_id) == local_id:
            return
        self._data[EVENT_LINKS][event_id] = local_id
        self.save()

    def remove_link(self, event_id: str) -> str | None:
        """Forget an event entirely. Returns the local id it was linked to."""
        local_id = self._data[EVENT_LINKS].pop(event_id, None)
        removed_ts = self._data[EVENT_SYNCED_AT].pop(event_id, None)
        removed_end = self._data[RECURRENCE_END_DATES].pop(event_id, None)
        if local_id is not None or removed_ts is not None or removed_end is not None:
            self.save()
        return local_id

    def remove_by_local_id(self, local_id: str) -> str | None:
        """Forget whichever event is linked to ``local_id``. Returns its event id."""
        for event_id, linked in self._data[EVENT_LINKS].items():
            if linked == local_id:
                self.remove_link(event_id)
                return event_id
        return None

    # ── Timestamps ───────────────────────────────────────

    def event_synced_at(self, event_id: str) -> datetime | None:
        return _from_epoch(self._data[EVENT_SYNCED_AT].get(event_id))

    def mark_event_synced(self, event_id: str, at: datetime) -> None:
        value = _to_epoch(at)
        if self._data[EVENT_SYNCED_AT].get(event_id) == value:
            return
        self._data[EVENT_SYNCED_AT][event_id] = value
        self.save()

    def exception_synced_at(self, exception_id: str) -> datetime | None:
        return _from_epoch(self._data[EXCEPTION_SYNCED_AT].get(exception_id))

    def mark_exception_synced(self, exception_id: str, at: datetime) -> None:
        value = _to_epoch(at)
        if self._data[EXCEPTION_SYNCED_AT].get(exception_id) == value:
            return
        self._data[EXCEPTION_SYNCED_AT][exception_id] = value
        self.save()

    def recurrence_end_date(self, event_id: str) -> datetime | None:
        return _from_epoch(self._data[RECURRENCE_END_DATES].get(event_id))

    def set_recurrence_end_date(self, event_id: str, value: datetime | None) -> None:
        if value is None:
            if self._data[RECURRENCE_END_DATES].pop(event_id, None) is not None:
                self.save()
            return
        epoch = _to_epoch(value)
        if self._data[RECURRENCE_END_DATES].get(event_id) == epoch:
            return
        self._data[RECURRENCE_END_DATES][event_id] = epoch
        self.save()
