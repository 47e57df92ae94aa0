"""
Sync feature: Schemas for request/response models.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from groupcal.features.sync.models import (
    ItemOutcome,
    MergedEventSet,
    SyncPhase,
    SyncReport,
)
from groupcal.features.sync.widget import WidgetEvent


class SyncRunResponse(BaseModel):
    """Outcome of one sync run."""
    ok: bool
    skipped: bool = False
    started_at: datetime
    finished_at: datetime | None = None
    phases_completed: list[SyncPhase] = Field(default_factory=list)
    outcomes: list[ItemOutcome] = Field(default_factory=list)
    result: MergedEventSet | None = None

    @classmethod
    def from_report(cls, report: SyncReport) -> "SyncRunResponse":
        return cls(
            ok=report.ok,
            skipped=report.skipped,
            started_at=report.started_at,
            finished_at=report.finished_at,
            phases_completed=report.phases_completed,
            outcomes=report.outcomes,
            result=report.result,
        )


class LocalChangeResponse(BaseModel):
    scheduled: int  # groups with a debounced run queued
    debounce_seconds: int


class WidgetResponse(BaseModel):
    generated_at: datetime
    events: list[WidgetEvent]
