"""
Events feature: Schemas for request/response models.
"""

from datetime import datetime

from pydantic import BaseModel, model_validator

from groupcal.features.sync.models import RecurrenceRule


class OccurrenceCancel(BaseModel):
    """Cancel one occurrence of a series."""
    occurrence_date: datetime


class OccurrenceModify(BaseModel):
    """Replace one occurrence of a series with new details."""
    occurrence_date: datetime
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def validate_times(self):
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class SeriesSplit(BaseModel):
    """Edit "this and future": end the series before ``from_date`` and continue with new details."""
    from_date: datetime
    title: str | None = None
    start: datetime | None = None  # defaults to the occurrence at from_date
    end: datetime | None = None
    all_day: bool | None = None
    location: str | None = None
    notes: str | None = None
    recurrence_rule: RecurrenceRule | None = None  # defaults to the current rule


class RainCheckRequest(BaseModel):
    reason: str | None = None


class RescheduleRequest(BaseModel):
    """Bring a rain-checked event back as a new event."""
    start: datetime
    end: datetime
    title: str | None = None
    location: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def validate_times(self):
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self
