from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator

from ehr_backend.auth.dependencies import get_current_user
from ehr_backend.models.user import User
from ehr_backend.routes.dependencies import get_orchestrator, scheduling_errors
from ehr_backend.scheduling.lifecycle import AppointmentStatus
from ehr_backend.scheduling.orchestrator import AppointmentOrchestrator

router = APIRouter(tags=['appointments'])

MAX_APPOINTMENT_NOTES_LENGTH = 2000
MAX_REASON_LENGTH = 500


def _normalize_optional_text(value: str | None, max_length: int, label: str) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > max_length:
        raise ValueError(f'{label} must be {max_length} characters or fewer.')

    return normalized


class ReminderPreferences(BaseModel):
    email: bool = True
    sms: bool = False
    push: bool = False


class CreateAppointmentRequest(BaseModel):
    patient_id: int
    provider_id: int
    scheduled_at: datetime
    duration_minutes: int | None = None
    appointment_type: str | None = None
    reason: str | None = None
    notes: str | None = None
    is_urgent: bool = False
    reminder_preferences: ReminderPreferences | None = None

    @field_validator('appointment_type')
    @classmethod
    def validate_appointment_type(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_REASON_LENGTH, 'Reason')

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_APPOINTMENT_NOTES_LENGTH, 'Notes')


class UpdateAppointmentRequest(BaseModel):
    scheduled_at: datetime | None = None
    duration_minutes: int | None = None
    appointment_type: str | None = None
    reason: str | None = None
    notes: str | None = None
    is_urgent: bool | None = None
    reminder_preferences: ReminderPreferences | None = None

    @field_validator('appointment_type')
    @classmethod
    def validate_appointment_type(cls, value: str | None) -> str | None:
        return CreateAppointmentRequest.validate_appointment_type(value)

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_REASON_LENGTH, 'Reason')

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_APPOINTMENT_NOTES_LENGTH, 'Notes')

    @field_validator('is_urgent')
    @classmethod
    def validate_is_urgent(cls, value: bool | None) -> bool:
        # Left out of the body means unchanged; an explicit null is not a value.
        if value is None:
            raise ValueError('Urgency must be true or false.')
        return value

    def to_patch(self) -> dict:
        return self.model_dump(exclude_unset=True)


class CancelAppointmentRequest(BaseModel):
    reason: str

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str) -> str:
        normalized = _normalize_optional_text(value, MAX_REASON_LENGTH, 'Reason')
        if normalized is None:
            raise ValueError('A cancellation reason is required.')
        return normalized


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    provider_id: int
    scheduled_at: datetime
    duration_minutes: int
    end_time: datetime
    status: AppointmentStatus
    appointment_type: str | None = None
    reason: str | None = None
    notes: str | None = None
    is_urgent: bool
    reminder_preferences: dict | None = None
    cancellation_reason: str | None = None
    checked_in_at: datetime | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class AppointmentStatsResponse(BaseModel):
    total_appointments: int
    urgent_appointments: int
    appointments_by_status: dict[str, int]


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointment = orchestrator.create_appointment(
            patient_id=data.patient_id,
            provider_id=data.provider_id,
            scheduled_at=data.scheduled_at,
            duration_minutes=data.duration_minutes,
            appointment_type=data.appointment_type,
            reason=data.reason,
            notes=data.notes,
            is_urgent=data.is_urgent,
            reminder_preferences=data.reminder_preferences.model_dump() if data.reminder_preferences else None,
            actor=current_user,
        )

    return AppointmentResponse.model_validate(appointment)


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    provider_id: int | None = Query(default=None),
    patient_id: int | None = Query(default=None),
    appointment_status: AppointmentStatus | None = Query(default=None, alias='status'),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointments = orchestrator.list_appointments(
            actor=current_user,
            provider_id=provider_id,
            patient_id=patient_id,
            status=appointment_status,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )

    return [AppointmentResponse.model_validate(appointment) for appointment in appointments]


@router.get('/stats', response_model=AppointmentStatsResponse)
def get_appointment_stats(
    provider_id: int | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    role = (current_user.role or '').strip().lower()
    patient_id = None
    if role == 'provider':
        provider_id = current_user.provider_id
    elif role == 'patient':
        patient_id = current_user.patient_id

    with scheduling_errors():
        stats = orchestrator.appointment_stats(provider_id=provider_id, patient_id=patient_id, start=start, end=end)

    return AppointmentStatsResponse(**stats)


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointment = orchestrator.get_appointment(appointment_id, actor=current_user)

    return AppointmentResponse.model_validate(appointment)


@router.patch('/{appointment_id}', response_model=AppointmentResponse)
def update_appointment(
    appointment_id: int,
    data: UpdateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointment = orchestrator.update_appointment(appointment_id, data.to_patch(), actor=current_user)

    return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointment = orchestrator.cancel_appointment(appointment_id, data.reason, actor=current_user)

    return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/check-in', response_model=AppointmentResponse)
def check_in_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointment = orchestrator.check_in(appointment_id, actor=current_user)

    return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/confirm', response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointment = orchestrator.confirm(appointment_id, actor=current_user)

    return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/start', response_model=AppointmentResponse)
def start_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointment = orchestrator.start(appointment_id, actor=current_user)

    return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointment = orchestrator.complete(appointment_id, actor=current_user)

    return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/no-show', response_model=AppointmentResponse)
def mark_appointment_no_show(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    with scheduling_errors():
        appointment = orchestrator.mark_no_show(appointment_id, actor=current_user)

    return AppointmentResponse.model_validate(appointment)
