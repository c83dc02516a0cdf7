"""
Database Models
SQLAlchemy ORM models for MedNudge
"""

from sqlalchemy import Column, Integer, String, Boolean, Float, DateTime, ForeignKey, Text, Date, Enum, Index, JSON
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from enum import Enum as PyEnum

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ==================== ENUMS ====================

class Frequency(str, PyEnum):
    """How often a medication schedule recurs"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    AS_NEEDED = "asNeeded"


class OccurrenceStatus(str, PyEnum):
    """Lifecycle status of a single scheduled dose"""
    PENDING = "pending"
    SENT = "sent"
    TAKEN = "taken"
    SNOOZED = "snoozed"
    SKIPPED = "skipped"
    MISSED = "missed"
    PAUSED = "paused"


class EscalationType(str, PyEnum):
    """Notification action taken at each escalation level"""
    URGENT = "urgent"
    VOICE_REMINDER = "voice_reminder"
    VOICE_CALL = "voice_call"
    CAREGIVER = "caregiver"
    CLINIC = "clinic"


class EscalationStatus(str, PyEnum):
    """Status of an escalation record"""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    RESPONDED = "responded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MedicationStatus(str, PyEnum):
    """Medication status"""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    DISCONTINUED = "discontinued"


class ResponseAction(str, PyEnum):
    """Ways a patient can answer a reminder"""
    TAKEN = "taken"
    SNOOZED = "snoozed"
    SKIPPED = "skipped"


# Level -> notification action
ESCALATION_TYPES = {
    1: EscalationType.URGENT,
    2: EscalationType.VOICE_REMINDER,
    3: EscalationType.VOICE_CALL,
    4: EscalationType.CAREGIVER,
    5: EscalationType.CLINIC,
}


# ==================== MODELS ====================

class Patient(Base):
    """Person receiving medication reminders"""
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)

    name = Column(String(100), nullable=False, default="Friend")
    phone_number = Column(String(20), unique=True, index=True, nullable=False)
    messaging_id = Column(String(100), unique=True)  # Messaging channel address
    language = Column(String(10), default="en")
    timezone = Column(String(50), default="UTC")

    # Notification preferences
    voice_reminders = Column(Boolean, default=False)
    escalation_enabled = Column(Boolean, default=True)
    quiet_hours_enabled = Column(Boolean, default=False)
    quiet_hours_start = Column(String(5), default="22:00")
    quiet_hours_end = Column(String(5), default="07:00")

    # Clinic affiliation
    clinic_id = Column(String(100))

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    caregivers = relationship(
        "Caregiver",
        back_populates="patient",
        cascade="all, delete-orphan",
        order_by="Caregiver.id"
    )
    medications = relationship("Medication", back_populates="patient", cascade="all, delete-orphan")
    occurrences = relationship("ScheduleOccurrence", back_populates="patient", cascade="all, delete-orphan")
    escalations = relationship("Escalation", back_populates="patient", cascade="all, delete-orphan")

    @property
    def recipient(self) -> str:
        """Address used by the messaging transport"""
        return self.messaging_id or self.phone_number


class Caregiver(Base):
    """Family member or carer alerted at the caregiver escalation level"""
    __tablename__ = "caregivers"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)

    name = Column(String(100))
    phone_number = Column(String(20), nullable=False)
    relationship_label = Column("relationship", String(50))
    alert_level = Column(Integer, default=4)

    created_at = Column(DateTime, default=_utcnow)

    patient = relationship("Patient", back_populates="caregivers")


class Medication(Base):
    """Medication with its recurring schedule definition"""
    __tablename__ = "medications"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)

    # Identification
    nickname = Column(String(50), nullable=False)
    name = Column(String(255))
    dosage = Column(String(100))      # e.g., "500mg"
    dosage_form = Column(String(50))  # tablet, capsule, syrup
    purpose = Column(String(255))
    critical = Column(Boolean, default=False)

    # Privacy and visual identification
    privacy_level = Column(Integer, default=2)
    color = Column(String(30))
    shape = Column(String(30))

    # Recurring schedule definition
    frequency = Column(String(20), default=Frequency.DAILY.value)
    times = Column(JSON, default=list)           # [{"time": "08:00", "dose": "1", "with_food": true}]
    days_of_week = Column(JSON, default=list)    # 0=Monday ... 6=Sunday
    day_of_month = Column(Integer)
    start_date = Column(Date)
    end_date = Column(Date)
    duration_days = Column(Integer)

    # Settings
    reminders_enabled = Column(Boolean, default=True)
    escalation_enabled = Column(Boolean, default=True)
    snooze_enabled = Column(Boolean, default=True)

    # Adherence counters
    taken_count = Column(Integer, default=0)
    missed_count = Column(Integer, default=0)
    snoozed_count = Column(Integer, default=0)
    adherence_rate = Column(Float, default=100.0)
    streak = Column(Integer, default=0)
    last_taken_at = Column(DateTime)

    status = Column(Enum(MedicationStatus), default=MedicationStatus.ACTIVE)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    patient = relationship("Patient", back_populates="medications")
    occurrences = relationship("ScheduleOccurrence", back_populates="medication", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_medications_patient_status", "patient_id", "status"),
    )

    @property
    def display_name(self) -> str:
        """Name shown in messages, honouring the privacy level"""
        if self.privacy_level == 2 and self.color and self.shape:
            return f"{self.color} {self.shape} pill"
        if self.privacy_level == 3 and self.times:
            return f"{self.times[0].get('time')} medication"
        if self.privacy_level == 4 and self.purpose:
            return f"Medicine for {self.purpose}"
        if self.privacy_level in (5, 6) and self.name:
            if self.privacy_level == 6 and self.dosage:
                return f"{self.name} {self.dosage}"
            return self.name
        return self.nickname or "Your medication"

    def update_adherence_rate(self) -> None:
        """Recompute the taken/(taken+missed) percentage"""
        total = (self.taken_count or 0) + (self.missed_count or 0)
        if total > 0:
            self.adherence_rate = round((self.taken_count or 0) / total * 100)


class ScheduleOccurrence(Base):
    """One concrete, time-stamped dose derived from a medication schedule"""
    __tablename__ = "schedule_occurrences"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    medication_id = Column(Integer, ForeignKey("medications.id"), nullable=False)

    due_at = Column(DateTime, nullable=False, index=True)  # UTC
    actual_time = Column(DateTime)

    dose_amount = Column(String(50))
    dose_unit = Column(String(50), default="unit")

    status = Column(Enum(OccurrenceStatus), default=OccurrenceStatus.PENDING, index=True)

    # Escalation sub-state
    escalation_level = Column(Integer, default=0)
    last_escalated_at = Column(DateTime)
    caregiver_alerted = Column(Boolean, default=False)
    caregiver_alerted_at = Column(DateTime)

    # Snooze sub-state
    snooze_count = Column(Integer, default=0)
    snoozed_until = Column(DateTime)

    # Patient response
    response_action = Column(String(20))
    response_at = Column(DateTime)
    response_channel = Column(String(20))
    response_notes = Column(Text)

    reminders = Column(JSON, default=list)  # [{"sent_at": ..., "type": "initial"}]

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    patient = relationship("Patient", back_populates="occurrences")
    medication = relationship("Medication", back_populates="occurrences")
    escalations = relationship("Escalation", back_populates="occurrence", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_occurrences_patient_due", "patient_id", "due_at"),
        Index("ix_occurrences_medication_status", "medication_id", "status"),
    )

    @property
    def dose(self) -> dict:
        return {"amount": self.dose_amount, "unit": self.dose_unit}


class Escalation(Base):
    """Record of one escalation level reached for an occurrence"""
    __tablename__ = "escalations"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    medication_id = Column(Integer, ForeignKey("medications.id"), nullable=False)
    occurrence_id = Column(Integer, ForeignKey("schedule_occurrences.id"), nullable=False, index=True)

    level = Column(Integer, nullable=False)
    type = Column(Enum(EscalationType), nullable=False)
    status = Column(Enum(EscalationStatus), default=EscalationStatus.PENDING)

    attempts = Column(JSON, default=list)  # [{"attempted_at", "method", "success", "error"}]

    # Caregiver notification
    caregiver_notified = Column(Boolean, default=False)
    caregiver_phone = Column(String(20))
    caregiver_relationship = Column(String(50))
    caregiver_notified_at = Column(DateTime)
    caregiver_response = Column(String(255))

    # Resolution
    resolved = Column(Boolean, default=False)
    resolved_at = Column(DateTime)
    resolved_by = Column(String(20))  # "user", "caregiver", "timeout"
    outcome = Column(String(20))      # "taken", "skipped", "missed"
    resolution_notes = Column(Text)

    extra = Column("metadata", JSON, default=dict)  # critical_medication, adherence_rate

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    patient = relationship("Patient", back_populates="escalations")
    medication = relationship("Medication")
    occurrence = relationship("ScheduleOccurrence", back_populates="escalations")

    __table_args__ = (
        Index("ix_escalations_status_level", "status", "level"),
        Index("ix_escalations_patient_created", "patient_id", "created_at"),
    )

    def add_attempt(self, method: str, success: bool, error: str = None) -> None:
        """Append to the attempts log (reassigned so the JSON column is flagged dirty)"""
        self.attempts = list(self.attempts or []) + [{
            "attempted_at": _utcnow().isoformat(),
            "method": method,
            "success": success,
            "error": error,
        }]
