"""
Sync feature: data model shared by the engines and the orchestrator.

Field aliases mirror the remote column names, so rows read from Supabase
validate directly and ``to_row()`` writes them back unchanged.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    field_validator,
    model_validator,
)

from groupcal.core.exceptions import DataIntegrityError, SyncError

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


def ensure_aware(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so comparisons never mix the two."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Enums ────────────────────────────────────────────────

class EventType(str, Enum):
    PERSONAL = "personal"
    GROUP = "group"


class EventStatus(str, Enum):
    ACTIVE = "active"
    RAIN_CHECKED = "rain_checked"


class AttendeeStatus(str, Enum):
    INVITED = "invited"
    GOING = "going"
    MAYBE = "maybe"
    DECLINED = "declined"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# ── Recurrence ───────────────────────────────────────────

class RecurrenceRule(BaseModel):
    """How a root event repeats. Owned by exactly one parent event."""
    frequency: Frequency
    interval: int = Field(1, ge=1)
    days_of_week: list[int] | None = None  # 0 = Sunday .. 6 = Saturday
    day_of_month: int | None = Field(None, ge=1, le=31)
    month_of_year: int | None = Field(None, ge=1, le=12)
    count: int | None = Field(None, ge=1)
    end_date: datetime | None = None

    @field_validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, value: list[int] | None) -> list[int] | None:
        if not value:
            return None
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError(f"days_of_week entries must be 0..6, got {day}")
        return sorted(set(value))

    @field_validator("end_date")
    @classmethod
    def validate_end_date(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value)

    @model_validator(mode="after")
    def validate_end_condition(self):
        """A rule ends by count, by date, or never; not both."""
        if self.count is not None and self.end_date is not None:
            raise ValueError("count and end_date are mutually exclusive")
        return self

    def describe(self) -> str:
        """Human-readable summary, e.g. 'Every 2 weeks on Mon and Wed, 4 times'."""
        unit = {
            Frequency.DAILY: "day",
            Frequency.WEEKLY: "week",
            Frequency.MONTHLY: "month",
            Frequency.YEARLY: "year",
        }[self.frequency]
        text = f"Every {unit}" if self.interval == 1 else f"Every {self.interval} {unit}s"

        if self.frequency == Frequency.WEEKLY and self.days_of_week:
            text += " on " + _format_list([DAY_NAMES[d] for d in self.days_of_week])
        elif self.frequency == Frequency.MONTHLY and self.day_of_month:
            text += f" on the {_ordinal(self.day_of_month)}"
        elif self.frequency == Frequency.YEARLY and self.month_of_year and self.day_of_month:
            text += f" on {MONTH_NAMES[self.month_of_year - 1]} {self.day_of_month}"

        if self.count is not None:
            text += f", {self.count} times"
        elif self.end_date is not None:
            text += f", until {self.end_date.strftime('%b %d, %Y')}"
        return text


def _ordinal(n: int) -> str:
    if n % 100 in (11, 12, 13):
        return f"{n}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def _format_list(items: list[str]) -> str:
    if len(items) <= 1:
        return "".join(items)
    if len(items) == 2:
        return f"{items[0]} and {items[1]}"
    return ", ".join(items[:-1]) + f", and {items[-1]}"


# ── Remote rows ──────────────────────────────────────────

class CalendarEvent(BaseModel):
    """A row of ``calendar_events``: a root, a plain event, or an exception."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    owner_user_id: str = Field(alias="user_id")
    group_id: str
    title: str = ""
    start: datetime = Field(alias="start_date")
    end: datetime = Field(alias="end_date")
    all_day: bool = Field(False, alias="is_all_day")
    location: str | None = None
    notes: str | None = None
    category_id: str | None = None
    calendar_name: str | None = None
    event_type: EventType = EventType.PERSONAL
    is_public: bool = True  # for exceptions: False means the occurrence is cancelled
    original_event_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    synced_at: datetime | None = None

    # Recurrence
    recurrence_rule: RecurrenceRule | None = None
    recurrence_end_date: datetime | None = None
    parent_event_id: str | None = None
    is_recurrence_exception: bool = False
    original_occurrence_date: datetime | None = None

    # Rain check
    event_status: EventStatus | None = None
    rain_check_requested_by: str | None = None
    rain_check_reason: str | None = None
    rain_checked_at: datetime | None = None
    original_event_id_for_reschedule: str | None = None

    @field_validator("recurrence_rule", mode="before")
    @classmethod
    def parse_rule_json(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value.strip() else None
        return value

    @field_validator("is_recurrence_exception", "is_public", mode="before")
    @classmethod
    def null_flags(cls, value: Any, info) -> Any:
        if value is None:
            return info.field_name == "is_public"
        return value

    @field_validator(
        "start", "end", "created_at", "updated_at", "synced_at",
        "recurrence_end_date", "original_occurrence_date", "rain_checked_at",
    )
    @classmethod
    def make_aware(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value)

    @model_validator(mode="after")
    def validate_exception_links(self):
        if self.is_recurrence_exception and (
            self.parent_event_id is None or self.original_occurrence_date is None
        ):
            raise ValueError(
                "recurrence exceptions need parent_event_id and original_occurrence_date"
            )
        return self

    @property
    def is_active(self) -> bool:
        return self.event_status in (None, EventStatus.ACTIVE)

    @property
    def is_group(self) -> bool:
        return self.event_type == EventType.GROUP

    @property
    def is_root(self) -> bool:
        return (
            self.recurrence_rule is not None
            and self.parent_event_id is None
            and not self.is_recurrence_exception
        )

    @property
    def content_signature(self) -> str:
        """title|start|end|all_day, exact to the second fraction."""
        return f"{self.title}|{self.start.timestamp()}|{self.end.timestamp()}|{self.all_day}"

    @property
    def occurrence_key(self) -> str:
        """Unique per concrete occurrence: series share an id but not a start."""
        return f"{self.id}|{self.start.timestamp()}"

    def to_row(self, exclude: set[str] | None = None) -> dict:
        """Serialize with remote column names, ready for insert/update."""
        return self.model_dump(by_alias=True, mode="json", exclude=exclude)


class AttendeeRecord(BaseModel):
    """A row of ``event_attendees``. ``user_id`` is None for guests."""
    id: str | None = None
    event_id: str
    user_id: str | None = None
    display_name: str | None = None
    status: AttendeeStatus = AttendeeStatus.INVITED
    local_calendar_event_id: str | None = None


class Attendance(BaseModel):
    """An attendee row joined with its event (embedded select)."""
    attendee: AttendeeRecord
    event: CalendarEvent | None = None


class PendingDeletion(BaseModel):
    """A row of the pending local deletions queue."""
    id: str
    user_id: str
    local_calendar_event_id: str
    event_id: str | None = None


class GroupMembership(BaseModel):
    group_id: str
    user_id: str


# ── Local store ──────────────────────────────────────────

class LocalEventFields(BaseModel):
    """Fields written to the local store on create/update."""
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None
    notes: str | None = None
    recurrence_rule: RecurrenceRule | None = None
    color: str | None = None

    @classmethod
    def from_event(cls, event: CalendarEvent, color: str | None = None) -> "LocalEventFields":
        return cls(
            title=event.title,
            start=event.start,
            end=event.end,
            all_day=event.all_day,
            location=event.location,
            notes=event.notes,
            recurrence_rule=event.recurrence_rule,
            color=color,
        )


class LocalEvent(LocalEventFields):
    """An event as the local store reports it."""
    local_id: str
    calendar_name: str | None = None

    @field_validator("start", "end")
    @classmethod
    def make_aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)


# ── Merge output ─────────────────────────────────────────

class DisplayEvent(CalendarEvent):
    """A merged event plus how many underlying rows collapsed into it."""
    shared_count: int = 1

    @classmethod
    def from_event(cls, event: CalendarEvent, shared_count: int = 1) -> "DisplayEvent":
        return cls.model_validate({**event.model_dump(), "shared_count": shared_count})


class MergedEventSet(BaseModel):
    """The display-ready result of a sync, owned by the caller."""
    group_id: str
    user_id: str
    window_start: datetime
    window_end: datetime
    events: list[DisplayEvent] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Run report ───────────────────────────────────────────

class SyncPhase(str, Enum):
    REFRESH_LOCAL = "refresh_local"
    CLEANUP_DELETED = "cleanup_deleted"
    MATERIALIZE_PENDING = "materialize_pending"
    PROPAGATE_MODIFIED = "propagate_modified"
    PROPAGATE_EXCEPTIONS = "propagate_exceptions"
    UPLOAD_PERSONAL = "upload_personal"
    FETCH_MERGED = "fetch_merged"


class OutcomeStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    ERROR = "error"


class ItemOutcome(BaseModel):
    phase: SyncPhase
    status: OutcomeStatus
    item_id: str | None = None
    detail: str | None = None


class SyncReport(BaseModel):
    """What a sync run did, item by item, and how it ended."""
    group_id: str
    user_id: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    phases_completed: list[SyncPhase] = Field(default_factory=list)
    outcomes: list[ItemOutcome] = Field(default_factory=list)
    result: MergedEventSet | None = None
    skipped: bool = False  # another run was already in flight
    error: str | None = None
    error_type: str | None = None

    _exception: SyncError | None = PrivateAttr(default=None)

    def record(
        self,
        phase: SyncPhase,
        status: OutcomeStatus,
        item_id: str | None = None,
        detail: str | None = None,
    ) -> ItemOutcome:
        outcome = ItemOutcome(phase=phase, status=status, item_id=item_id, detail=detail)
        self.outcomes.append(outcome)
        return outcome

    def fail(self, error: SyncError) -> None:
        self._exception = error
        self.error = error.message
        self.error_type = type(error).__name__

    def outcomes_for(
        self, phase: SyncPhase, status: OutcomeStatus | None = None
    ) -> list[ItemOutcome]:
        return [
            o for o in self.outcomes
            if o.phase == phase and (status is None or o.status == status)
        ]

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped

    def raise_for_error(self) -> MergedEventSet:
        """Return the merged set, or raise the run's terminal error."""
        if self._exception is not None:
            raise self._exception
        if self.result is None:
            raise SyncError("Sync produced no result", detail="Another sync was in flight.")
        return self.result


# ── Parsing helpers ──────────────────────────────────────

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_rows(model: type[ModelT], rows: list[dict] | None) -> list[ModelT]:
    """Validate raw rows, dropping (and logging) the ones that don't fit the model."""
    parsed: list[ModelT] = []
    for row in rows or []:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as e:
            error = DataIntegrityError(str(row.get("id")) if isinstance(row, dict) else None, str(e))
            logger.warning(f"Dropping {model.__name__} row: {error.message}: {error.detail}")
    return parsed
