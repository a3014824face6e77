from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ehr_backend.auth.dependencies import get_current_user
from ehr_backend.models.user import User
from ehr_backend.routes.dependencies import get_orchestrator, scheduling_errors
from ehr_backend.scheduling.orchestrator import AppointmentOrchestrator

router = APIRouter(tags=['availability'])

MAX_SLOT_DURATION_MINUTES = 480


class SlotResponse(BaseModel):
    provider_id: int
    date: date
    time: time
    start_time: datetime
    end_time: datetime
    duration_minutes: int


class AvailabilityWindowResponse(BaseModel):
    id: int
    provider_id: int
    day_of_week: int
    start_time: time
    end_time: time

    class Config:
        from_attributes = True


@router.get('/providers/{provider_id}/slots', response_model=list[SlotResponse])
def list_available_slots(
    provider_id: int,
    slot_date: date = Query(..., alias='date'),
    duration: int | None = Query(default=None, ge=1, le=MAX_SLOT_DURATION_MINUTES),
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    del current_user

    with scheduling_errors():
        slots = orchestrator.get_available_slots(provider_id, slot_date, duration)

    return [
        SlotResponse(
            provider_id=provider_id,
            date=slot.start.date(),
            time=slot.start.time(),
            start_time=slot.start,
            end_time=slot.end,
            duration_minutes=slot.duration_minutes,
        )
        for slot in slots
    ]


@router.get('/providers/{provider_id}/windows', response_model=list[AvailabilityWindowResponse])
def list_availability_windows(
    provider_id: int,
    current_user: User = Depends(get_current_user),
    orchestrator: AppointmentOrchestrator = Depends(get_orchestrator),
):
    del current_user

    with scheduling_errors():
        windows = orchestrator.availability_windows(provider_id)

    return [AvailabilityWindowResponse.model_validate(window) for window in windows]
