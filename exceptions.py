"""
Domain exceptions for MedNudge
"""


class SchedulingError(Exception):
    """Base class for scheduling and escalation errors"""


class InvalidScheduleError(SchedulingError, ValueError):
    """A schedule definition or requested time cannot be used"""


class NotFoundError(SchedulingError, ValueError):
    """A referenced record does not exist"""

    entity = "Record"

    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(f"{self.entity} {record_id} not found")


class OccurrenceNotFoundError(NotFoundError):
    entity = "Schedule occurrence"

    @property
    def occurrence_id(self) -> int:
        return self.record_id


class MedicationNotFoundError(NotFoundError):
    entity = "Medication"


class PatientNotFoundError(NotFoundError):
    entity = "Patient"


class InvalidResponseError(SchedulingError, ValueError):
    """A response arrived for an occurrence that is not awaiting one"""


class NotificationError(SchedulingError):
    """An outbound notification could not be delivered"""
