"""
Actions Module
Controllers that deliver reminders and run escalation levels
"""

from .reminder_controller import (
    ReminderController,
    parse_response,
    parse_snooze_minutes,
)

from .escalation_controller import EscalationController


__all__ = [
    "ReminderController",
    "parse_response",
    "parse_snooze_minutes",
    "EscalationController",
]
