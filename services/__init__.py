"""
Services Module
Business logic layer for the MedNudge application
"""

from services.schedule_service import ScheduleService
from services.escalation_service import EscalationService


__all__ = [
    "ScheduleService",
    "EscalationService",
]
