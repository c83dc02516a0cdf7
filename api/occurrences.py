"""
Occurrences API Router
Endpoints for schedule expansion and the occurrence lifecycle
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_services, get_current_patient_id
from api.schemas.occurrence import (
    ExpandRequest,
    ExpandResponse,
    MedicationStateResponse,
    OccurrenceResponse,
    RescheduleRequest,
    ResponseRequest,
    SnoozeRequest,
    SnoozeResponse,
    VoiceResponseRequest,
)
from exceptions import InvalidResponseError
from services.container import ServiceContainer


router = APIRouter(tags=["occurrences"])


# ==================== EXPANSION ====================

@router.post(
    "/medications/{medication_id}/expand",
    response_model=ExpandResponse,
    status_code=status.HTTP_201_CREATED
)
async def expand_medication(
    medication_id: int,
    request: Optional[ExpandRequest] = None,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Create occurrences and reminders for a medication's schedule
    """
    occurrences = await container.schedule_service.expand(
        medication_id,
        timezone=request.timezone if request else None,
        db=db
    )
    return ExpandResponse(
        count=len(occurrences),
        occurrences=[OccurrenceResponse.model_validate(o) for o in occurrences]
    )


@router.post(
    "/patients/{patient_id}/expand",
    response_model=ExpandResponse,
    status_code=status.HTTP_201_CREATED
)
async def expand_patient(
    patient_id: int = Depends(get_current_patient_id),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Expand every active medication of a patient
    """
    occurrences = await container.schedule_service.expand_for_patient(patient_id, db=db)
    return ExpandResponse(
        count=len(occurrences),
        occurrences=[OccurrenceResponse.model_validate(o) for o in occurrences]
    )


@router.get("/patients/{patient_id}/occurrences/upcoming", response_model=List[OccurrenceResponse])
async def get_upcoming(
    patient_id: int,
    days: int = Query(7, ge=1, le=90),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Pending occurrences due in the next `days` days
    """
    occurrences = await container.schedule_service.get_upcoming(patient_id, days=days, db=db)
    return [OccurrenceResponse.model_validate(o) for o in occurrences]


# ==================== LIFECYCLE ====================

@router.post("/occurrences/{occurrence_id}/snooze", response_model=SnoozeResponse)
async def snooze_occurrence(
    occurrence_id: int,
    request: SnoozeRequest,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Defer an occurrence's reminder
    """
    snooze_until = await container.schedule_service.snooze(occurrence_id, request.minutes, db=db)
    return SnoozeResponse(
        occurrence_id=occurrence_id,
        snoozed=snooze_until is not None,
        snooze_until=snooze_until
    )


@router.post("/medications/{medication_id}/pause", response_model=MedicationStateResponse)
async def pause_medication(
    medication_id: int,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Pause all pending occurrences of a medication
    """
    count = await container.schedule_service.pause(medication_id, db=db)
    return MedicationStateResponse(medication_id=medication_id, status="paused", affected=count)


@router.post("/medications/{medication_id}/resume", response_model=MedicationStateResponse)
async def resume_medication(
    medication_id: int,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Resume paused occurrences that are still in the future
    """
    count = await container.schedule_service.resume(medication_id, db=db)
    return MedicationStateResponse(medication_id=medication_id, status="active", affected=count)


@router.put("/occurrences/{occurrence_id}/reschedule", response_model=OccurrenceResponse)
async def reschedule_occurrence(
    occurrence_id: int,
    request: RescheduleRequest,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Move an occurrence to a new due time
    """
    occurrence = await container.schedule_service.reschedule(occurrence_id, request.new_time, db=db)
    return OccurrenceResponse.model_validate(occurrence)


# ==================== RESPONSES ====================

@router.post("/occurrences/{occurrence_id}/response", response_model=OccurrenceResponse)
async def record_response(
    occurrence_id: int,
    request: ResponseRequest,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Record a patient's answer to a reminder
    """
    controller = container.reminder_controller

    if request.action:
        occurrence = await controller.handle_response(
            occurrence_id,
            request.action,
            channel=request.channel,
            notes=request.notes,
            snooze_minutes=request.snooze_minutes,
            db=db
        )
    elif request.text:
        occurrence = await controller.handle_reply_text(occurrence_id, request.text, request.channel, db=db)
    else:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Either action or text is required"
        )

    return OccurrenceResponse.model_validate(occurrence)


@router.post("/occurrences/{occurrence_id}/voice-response", response_model=OccurrenceResponse)
async def record_voice_response(
    occurrence_id: int,
    request: VoiceResponseRequest,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Keypad answer from an interactive voice call (1 taken, 2 snooze, 3 skip)
    """
    if request.digits not in ("1", "2", "3"):
        raise InvalidResponseError(f"Unsupported keypad digit: {request.digits}")

    occurrence = await container.reminder_controller.handle_reply_text(
        occurrence_id, request.digits, channel="voice_call", db=db
    )
    return OccurrenceResponse.model_validate(occurrence)
