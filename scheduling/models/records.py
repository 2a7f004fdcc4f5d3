"""Plain records returned by the scheduling services.

ORM rows never leave the store; every public operation hands back one of
these pydantic models instead.
"""

from datetime import date, datetime

from pydantic import BaseModel, Field


class TimeSlotRecord(BaseModel):
    id: str
    doctor_id: str
    date: date
    start_time: str
    end_time: str
    status: str
    patient_id: str | None = None
    external_event_id: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class UnavailabilityPeriodRecord(BaseModel):
    id: str
    doctor_id: str
    start_date: date
    end_date: date
    reason: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


class DoctorRecord(BaseModel):
    id: str
    display_name: str | None = None
    calendar_id: str = 'primary'
    has_credential: bool = False


class WorkingHours(BaseModel):
    start_time: str
    end_time: str


class TimeBlock(BaseModel):
    start_time: str
    end_time: str


class SkippedCandidate(BaseModel):
    date: date
    start_time: str
    end_time: str
    conflicting_slot_id: str | None = None
    reason: str | None = None


class GenerationResult(BaseModel):
    doctor_id: str
    created: list[TimeSlotRecord] = Field(default_factory=list)
    retained: list[TimeSlotRecord] = Field(default_factory=list)
    skipped: list[SkippedCandidate] = Field(default_factory=list)
    deleted_count: int = 0

    @property
    def slots(self) -> list[TimeSlotRecord]:
        return sorted(self.created + self.retained, key=lambda slot: (slot.date, slot.start_time))


class SyncFailure(BaseModel):
    operation: str
    message: str
    slot_id: str | None = None
    event_id: str | None = None

    class Config:
        frozen = True


class SyncAuditRecord(BaseModel):
    """Summary of one sync or export run; never mutated once built."""

    doctor_id: str
    operation: str
    window_start: date
    window_end: date
    local_created: int = 0
    local_updated: int = 0
    local_deleted: int = 0
    remote_created: int = 0
    remote_updated: int = 0
    remote_deleted: int = 0
    timestamp: datetime
    actor_id: str | None = None
    errors: list[SyncFailure] = Field(default_factory=list)

    class Config:
        frozen = True

    @property
    def total_changes(self) -> int:
        return (
            self.local_created
            + self.local_updated
            + self.local_deleted
            + self.remote_created
            + self.remote_updated
            + self.remote_deleted
        )


class ImportedEventOutcome(BaseModel):
    event_id: str | None = None
    status: str
    reason: str | None = None
    slot_id: str | None = None

    class Config:
        frozen = True


class CalendarImportResult(BaseModel):
    """What one import run did with each remote event in its window."""

    doctor_id: str
    window_start: date
    window_end: date
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    slots: list[TimeSlotRecord] = Field(default_factory=list)
    details: list[ImportedEventOutcome] = Field(default_factory=list)
    timestamp: datetime
    actor_id: str | None = None

    class Config:
        frozen = True
