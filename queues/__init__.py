"""
Queues Package
Delayed job queues for reminders and escalations
"""

from .job_queue import (
    DelayedJobQueue,
    Job,
    JobBackend,
    JobState,
    RetryPolicy,
)
from .backends import CeleryJobBackend, InMemoryJobBackend
from .reminder_queue import ReminderQueue, SEND_REMINDER
from .escalation_queue import EscalationQueue, PROCESS_ESCALATION


__all__ = [
    "DelayedJobQueue",
    "Job",
    "JobBackend",
    "JobState",
    "RetryPolicy",
    "CeleryJobBackend",
    "InMemoryJobBackend",
    "ReminderQueue",
    "SEND_REMINDER",
    "EscalationQueue",
    "PROCESS_ESCALATION",
]
