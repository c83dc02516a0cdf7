"""
Escalations API Router
Endpoints for escalation cancellation, history and analytics
"""

from typing import List
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_services, get_current_patient_id
from api.schemas.occurrence import (
    CancelEscalationRequest,
    CancelEscalationResponse,
    EscalationAnalysis,
    EscalationResponse,
)
from exceptions import OccurrenceNotFoundError
from services.container import ServiceContainer


router = APIRouter(tags=["escalations"])


@router.post(
    "/occurrences/{occurrence_id}/escalations/cancel",
    response_model=CancelEscalationResponse
)
async def cancel_escalation(
    occurrence_id: int,
    request: CancelEscalationRequest = CancelEscalationRequest(),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Stop the escalation chain for an occurrence
    """
    occurrence = await container.schedule_service.get_occurrence(occurrence_id, db=db)
    if not occurrence:
        raise OccurrenceNotFoundError(occurrence_id)

    result = await container.escalation_service.cancel_escalation(
        occurrence_id,
        resolved_by=request.resolved_by,
        outcome=request.outcome,
        db=db
    )
    db.commit()
    return CancelEscalationResponse(occurrence_id=occurrence_id, **result)


@router.get("/patients/{patient_id}/escalations", response_model=List[EscalationResponse])
async def get_escalation_history(
    patient_id: int = Depends(get_current_patient_id),
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Escalation records for a patient, newest first
    """
    escalations = await container.escalation_service.get_escalation_history(patient_id, days=days, db=db)
    return [EscalationResponse.model_validate(e) for e in escalations]


@router.get("/patients/{patient_id}/escalations/analysis", response_model=EscalationAnalysis)
async def analyze_escalations(
    patient_id: int = Depends(get_current_patient_id),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_services)
):
    """
    Escalation counts, resolution time and pattern flags for a patient
    """
    return await container.escalation_service.analyze_escalation_patterns(patient_id, db=db)


@router.get("/queues/stats")
async def get_queue_stats(container: ServiceContainer = Depends(get_services)):
    """
    Job counts per queue for this process
    """
    return container.get_queue_stats()
