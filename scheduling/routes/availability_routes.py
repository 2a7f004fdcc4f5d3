from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator

from scheduling.core import errors
from scheduling.models.records import CalendarImportResult, SkippedCandidate, SyncAuditRecord, TimeBlock, WorkingHours
from scheduling.services.availability_service import AvailabilityService

router = APIRouter(tags=['availability'])

ERROR_STATUS_CODES = {
    errors.ValidationError: status.HTTP_400_BAD_REQUEST,
    errors.NotFoundError: status.HTTP_404_NOT_FOUND,
    errors.ConflictError: status.HTTP_409_CONFLICT,
    errors.LockedResourceError: status.HTTP_423_LOCKED,
    errors.ConcurrencyError: status.HTTP_409_CONFLICT,
    errors.CredentialMissing: status.HTTP_412_PRECONDITION_FAILED,
    errors.ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
    errors.PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _strip_required(value: str, label: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f'{label} is required.')
    return normalized


def _strip_optional(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class TimeSlotResponse(BaseModel):
    id: str
    doctor_id: str
    date: date
    start_time: str
    end_time: str
    status: str
    patient_id: str | None = None
    external_event_id: str | None = None

    class Config:
        from_attributes = True


class UnavailabilityPeriodResponse(BaseModel):
    id: str
    doctor_id: str
    start_date: date
    end_date: date
    reason: str | None = None

    class Config:
        from_attributes = True


class GenerationResponse(BaseModel):
    doctor_id: str
    slots: list[TimeSlotResponse]
    created_count: int
    retained_count: int
    deleted_count: int
    skipped: list[SkippedCandidate]


class OverlapCheckResponse(BaseModel):
    has_overlap: bool
    conflicting_slot: TimeSlotResponse | None = None


class CreateTimeSlotRequest(BaseModel):
    doctor_id: str
    date: date
    start_time: str
    end_time: str
    status: str = 'available'
    patient_id: str | None = None
    actor_id: str | None = None

    @field_validator('doctor_id')
    @classmethod
    def validate_doctor_id(cls, value: str) -> str:
        return _strip_required(value, 'Doctor id')

    @field_validator('start_time', 'end_time')
    @classmethod
    def strip_times(cls, value: str) -> str:
        return value.strip()

    @field_validator('status')
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator('patient_id', 'actor_id')
    @classmethod
    def strip_ids(cls, value: str | None) -> str | None:
        return _strip_optional(value)


class UpdateTimeSlotRequest(BaseModel):
    start_time: str | None = None
    end_time: str | None = None
    status: str | None = None
    patient_id: str | None = None
    actor_id: str | None = None
    # Declared last: the field name shadows ``datetime.date`` inside the class body.
    date: str | None = None

    @field_validator('date')
    @classmethod
    def validate_date(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return date.fromisoformat(value.strip()).isoformat()

    @field_validator('status')
    @classmethod
    def normalize_status(cls, value: str | None) -> str | None:
        return value.strip().lower() if value is not None else None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={'actor_id'})


class OverlapCheckRequest(BaseModel):
    doctor_id: str
    date: date
    start_time: str
    end_time: str
    exclude_slot_id: str | None = None


class GenerateStandardRequest(BaseModel):
    start_date: date
    end_date: date
    working_hours: WorkingHours
    slot_duration_minutes: int | None = Field(default=None, gt=0)
    actor_id: str | None = None


class GenerateRecurringRequest(BaseModel):
    start_date: date
    end_date: date
    recurring_days: list[int | str]
    time_blocks: list[TimeBlock]
    actor_id: str | None = None

    @field_validator('recurring_days')
    @classmethod
    def validate_recurring_days(cls, value: list[int | str]) -> list[int | str]:
        if not value:
            raise ValueError('At least one recurring day is required.')
        return value


class CalendarWindowRequest(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    actor_id: str | None = None


class CreateUnavailabilityRequest(BaseModel):
    start_date: date
    end_date: date
    reason: str | None = None
    actor_id: str | None = None

    @field_validator('reason')
    @classmethod
    def strip_reason(cls, value: str | None) -> str | None:
        return _strip_optional(value)


class UpdateUnavailabilityRequest(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    reason: str | None = None
    actor_id: str | None = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={'actor_id'})


def to_http_exception(exc: errors.SchedulingError) -> HTTPException:
    status_code = next(
        (ERROR_STATUS_CODES[kind] for kind in type(exc).__mro__ if kind in ERROR_STATUS_CODES),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(status_code=status_code, detail=exc.to_dict())


def get_availability_service(request: Request) -> AvailabilityService:
    service = getattr(request.app.state, 'availability_service', None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Scheduling service is not ready.',
        )
    return service


@router.get('/doctors/{doctor_id}/slots', response_model=list[TimeSlotResponse])
def list_time_slots(
    doctor_id: str,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    available_only: bool = Query(default=False),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        if available_only:
            return service.get_available_time_slots(doctor_id, start_date, end_date)
        return service.get_time_slots(doctor_id, start_date, end_date)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/slots/{slot_id}', response_model=TimeSlotResponse)
def get_time_slot(slot_id: str, service: AvailabilityService = Depends(get_availability_service)):
    try:
        return service.get_time_slot_by_id(slot_id)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/slots', response_model=TimeSlotResponse, status_code=status.HTTP_201_CREATED)
def create_time_slot(data: CreateTimeSlotRequest, service: AvailabilityService = Depends(get_availability_service)):
    try:
        return service.create_time_slot(
            data.doctor_id,
            data.date,
            data.start_time,
            data.end_time,
            status=data.status,
            patient_id=data.patient_id,
            actor_id=data.actor_id,
        )
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.patch('/slots/{slot_id}', response_model=TimeSlotResponse)
def update_time_slot(
    slot_id: str,
    data: UpdateTimeSlotRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return service.update_time_slot(slot_id, data.changes(), actor_id=data.actor_id)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.delete('/slots/{slot_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_time_slot(
    slot_id: str,
    actor_id: str | None = Query(default=None),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        service.delete_time_slot(slot_id, actor_id=actor_id)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/slots/overlap-check', response_model=OverlapCheckResponse)
def check_overlap(data: OverlapCheckRequest, service: AvailabilityService = Depends(get_availability_service)):
    try:
        conflict = service.check_overlapping_time_slots(
            data.doctor_id,
            data.date,
            data.start_time,
            data.end_time,
            exclude_slot_id=data.exclude_slot_id,
        )
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return OverlapCheckResponse(
        has_overlap=conflict is not None,
        conflicting_slot=TimeSlotResponse.model_validate(conflict) if conflict else None,
    )


def _generation_response(result) -> GenerationResponse:
    return GenerationResponse(
        doctor_id=result.doctor_id,
        slots=[TimeSlotResponse.model_validate(slot) for slot in result.slots],
        created_count=len(result.created),
        retained_count=len(result.retained),
        deleted_count=result.deleted_count,
        skipped=result.skipped,
    )


@router.post('/doctors/{doctor_id}/generate/standard', response_model=GenerationResponse)
def generate_standard_time_slots(
    doctor_id: str,
    data: GenerateStandardRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        result = service.generate_standard_time_slots(
            doctor_id,
            data.start_date,
            data.end_date,
            data.slot_duration_minutes,
            data.working_hours,
            actor_id=data.actor_id,
        )
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return _generation_response(result)


@router.post('/doctors/{doctor_id}/generate/recurring', response_model=GenerationResponse)
def generate_recurring_time_slots(
    doctor_id: str,
    data: GenerateRecurringRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        result = service.generate_recurring_time_slots(
            doctor_id,
            data.start_date,
            data.end_date,
            data.recurring_days,
            data.time_blocks,
            actor_id=data.actor_id,
        )
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return _generation_response(result)


@router.post('/doctors/{doctor_id}/calendar/export', response_model=SyncAuditRecord)
def export_to_calendar(
    doctor_id: str,
    data: CalendarWindowRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return service.export_to_calendar(doctor_id, data.start_date, data.end_date, actor_id=data.actor_id)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/doctors/{doctor_id}/calendar/sync', response_model=SyncAuditRecord)
def sync_with_calendar(
    doctor_id: str,
    data: CalendarWindowRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return service.sync_with_calendar(doctor_id, data.start_date, data.end_date, actor_id=data.actor_id)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/doctors/{doctor_id}/calendar/import', response_model=CalendarImportResult)
def import_from_calendar(
    doctor_id: str,
    data: CalendarWindowRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return service.import_from_calendar(doctor_id, data.start_date, data.end_date, actor_id=data.actor_id)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/doctors/{doctor_id}/unavailability', response_model=list[UnavailabilityPeriodResponse])
def list_unavailability_periods(
    doctor_id: str,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return service.list_unavailability_periods(doctor_id, start_date, end_date)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    '/doctors/{doctor_id}/unavailability',
    response_model=UnavailabilityPeriodResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_unavailability_period(
    doctor_id: str,
    data: CreateUnavailabilityRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return service.create_unavailability_period(
            doctor_id,
            data.start_date,
            data.end_date,
            reason=data.reason,
            actor_id=data.actor_id,
        )
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.patch('/unavailability/{period_id}', response_model=UnavailabilityPeriodResponse)
def update_unavailability_period(
    period_id: str,
    data: UpdateUnavailabilityRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return service.update_unavailability_period(period_id, data.changes(), actor_id=data.actor_id)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.delete('/unavailability/{period_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_unavailability_period(
    period_id: str,
    actor_id: str | None = Query(default=None),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        service.delete_unavailability_period(period_id, actor_id=actor_id)
    except errors.SchedulingError as exc:
        raise to_http_exception(exc) from exc
