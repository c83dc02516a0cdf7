"""
Occurrence Schemas
Pydantic models for occurrence and escalation API requests and responses
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict, field_validator


def _enum_value(value):
    return value.value if isinstance(value, Enum) else value


# ==================== REQUEST SCHEMAS ====================

class ExpandRequest(BaseModel):
    """Schema for expanding a medication schedule"""
    timezone: Optional[str] = Field(None, max_length=50, description="Overrides the patient's timezone")


class SnoozeRequest(BaseModel):
    """Schema for snoozing an occurrence"""
    minutes: int = Field(default=30, ge=1, le=24 * 60)


class RescheduleRequest(BaseModel):
    """Schema for moving an occurrence"""
    new_time: datetime


class ResponseRequest(BaseModel):
    """Patient response; either an explicit action or raw reply text"""
    action: Optional[str] = Field(None, description="taken, snoozed or skipped")
    text: Optional[str] = Field(None, description="Raw reply, e.g. '✅ Taken' or a keypad digit")
    channel: str = Field(default="text", max_length=20)
    notes: Optional[str] = None
    snooze_minutes: Optional[int] = Field(None, ge=1, le=24 * 60)


class VoiceResponseRequest(BaseModel):
    """Digits gathered by an interactive voice call"""
    digits: str = Field(..., min_length=1, max_length=1)


class CancelEscalationRequest(BaseModel):
    resolved_by: str = Field(default="user", max_length=20)
    outcome: Optional[str] = Field(None, max_length=20)


# ==================== RESPONSE SCHEMAS ====================

class OccurrenceResponse(BaseModel):
    """Schema for occurrence response"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    medication_id: int
    due_at: datetime
    status: str
    dose_amount: Optional[str] = None
    dose_unit: Optional[str] = None
    escalation_level: int = 0
    snooze_count: int = 0
    snoozed_until: Optional[datetime] = None
    response_action: Optional[str] = None
    response_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        return _enum_value(value)


class ExpandResponse(BaseModel):
    count: int
    occurrences: List[OccurrenceResponse]


class SnoozeResponse(BaseModel):
    occurrence_id: int
    snoozed: bool
    snooze_until: Optional[datetime] = None


class MedicationStateResponse(BaseModel):
    medication_id: int
    status: str
    affected: int


class EscalationResponse(BaseModel):
    """Schema for escalation record response"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    occurrence_id: int
    medication_id: int
    level: int
    type: str
    status: str
    attempts: List[Dict[str, Any]] = []
    caregiver_notified: bool = False
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    outcome: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("status", "type", mode="before")
    @classmethod
    def normalize_enums(cls, value):
        return _enum_value(value)


class CancelEscalationResponse(BaseModel):
    occurrence_id: int
    removed_jobs: int
    cancelled_records: int


class EscalationAnalysis(BaseModel):
    total_escalations: int
    by_level: Dict[int, int]
    by_medication: Dict[int, Dict[str, Any]]
    average_resolution_minutes: int
    caregiver_interventions: int
    patterns: List[str]
