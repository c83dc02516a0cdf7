"""
Schedule Service
Expands recurring medication schedules into occurrences and manages their lifecycle
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from config import escalation_config
from database import SessionLocal, session_scope
from exceptions import (
    InvalidScheduleError,
    MedicationNotFoundError,
    OccurrenceNotFoundError,
)
import models
from queues.reminder_queue import ReminderQueue
from tools.clock import Clock, as_naive_utc, local_today, parse_time_of_day, resolve_local_time, utcnow


logger = logging.getLogger(__name__)


SUPPORTED_FREQUENCIES = (
    models.Frequency.DAILY.value,
    models.Frequency.WEEKLY.value,
    models.Frequency.MONTHLY.value,
)

SNOOZABLE = (models.OccurrenceStatus.SENT, models.OccurrenceStatus.SNOOZED)

TERMINAL = (
    models.OccurrenceStatus.TAKEN,
    models.OccurrenceStatus.SKIPPED,
    models.OccurrenceStatus.MISSED,
)


def _slot_time(slot: Any) -> str:
    """Clock time of a slot given as {"time": "08:00", ...} or "08:00" """
    if isinstance(slot, dict):
        return slot.get("time")
    return slot


def _slot_dose(slot: Any) -> Optional[str]:
    if isinstance(slot, dict) and slot.get("dose") is not None:
        return str(slot["dose"])
    return None


class ScheduleService:
    """
    Service for schedule expansion and occurrence lifecycle changes
    """

    def __init__(
        self,
        reminder_queue: ReminderQueue,
        escalation_service=None,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = utcnow
    ):
        self.reminder_queue = reminder_queue
        self.escalation_service = escalation_service
        self.session_factory = session_factory
        self.clock = clock

    # ==================== VALIDATION ====================

    def validate_schedule(self, medication: models.Medication) -> None:
        """
        Check a medication's schedule definition

        Raises:
            InvalidScheduleError: If the definition cannot be expanded
        """
        if not medication.times:
            raise InvalidScheduleError(f"Medication {medication.id} has no time slots")

        for slot in medication.times:
            try:
                parse_time_of_day(_slot_time(slot))
            except ValueError as e:
                raise InvalidScheduleError(str(e)) from e

        if medication.frequency == models.Frequency.WEEKLY.value and not medication.days_of_week:
            raise InvalidScheduleError("Weekly schedules need days_of_week")

        if medication.frequency == models.Frequency.MONTHLY.value and not medication.day_of_month:
            raise InvalidScheduleError("Monthly schedules need day_of_month")

        if medication.end_date is None and not medication.duration_days:
            raise InvalidScheduleError("Schedule needs an end_date or duration_days")

        if medication.duration_days is not None and medication.end_date is None and medication.duration_days < 1:
            raise InvalidScheduleError("duration_days must be at least 1")

    def schedule_window(self, medication: models.Medication, tz_name: str) -> Tuple[date, date]:
        """First and last calendar day (inclusive) of the schedule in the patient's timezone"""
        start = medication.start_date or local_today(tz_name, self.clock())
        if medication.end_date is not None:
            end = medication.end_date
        else:
            end = start + timedelta(days=medication.duration_days - 1)
        return start, end

    @staticmethod
    def should_schedule_today(medication: models.Medication, day: date) -> bool:
        """Whether the medication's frequency puts any dose on `day`"""
        frequency = medication.frequency
        if frequency == models.Frequency.DAILY.value:
            return True
        if frequency == models.Frequency.WEEKLY.value:
            return day.weekday() in (medication.days_of_week or [])
        if frequency == models.Frequency.MONTHLY.value:
            return day.day == medication.day_of_month
        return False

    # ==================== EXPANSION ====================

    async def expand(
        self,
        medication_id: int,
        timezone: Optional[str] = None,
        db: Optional[Session] = None
    ) -> List[models.ScheduleOccurrence]:
        """
        Create occurrences for every future dose of a medication's schedule

        Args:
            medication_id: Medication whose schedule is expanded
            timezone: Override for the patient's timezone
            db: Database session

        Returns:
            Created occurrences, each with a queued reminder
        """
        with session_scope(db, self.session_factory) as session:
            medication = session.query(models.Medication).filter(
                models.Medication.id == medication_id
            ).first()
            if not medication:
                raise MedicationNotFoundError(medication_id)

            return await self._expand_medication(session, medication, timezone)

    async def _expand_medication(
        self,
        session: Session,
        medication: models.Medication,
        timezone: Optional[str] = None
    ) -> List[models.ScheduleOccurrence]:
        if medication.frequency not in SUPPORTED_FREQUENCIES:
            logger.warning(
                f"Unsupported frequency '{medication.frequency}' for medication {medication.id}, "
                f"no occurrences created"
            )
            return []

        self.validate_schedule(medication)

        tz_name = timezone or (medication.patient.timezone if medication.patient else None) or "UTC"
        now = self.clock()
        start, end = self.schedule_window(medication, tz_name)

        created: List[models.ScheduleOccurrence] = []
        day = start
        while day <= end:
            if self.should_schedule_today(medication, day):
                for slot in medication.times:
                    due_at = resolve_local_time(day, _slot_time(slot), tz_name)
                    if due_at <= now:
                        continue

                    occurrence = models.ScheduleOccurrence(
                        patient_id=medication.patient_id,
                        medication_id=medication.id,
                        due_at=due_at,
                        dose_amount=_slot_dose(slot),
                        dose_unit=medication.dosage_form or "unit",
                        status=models.OccurrenceStatus.PENDING,
                    )
                    session.add(occurrence)
                    created.append(occurrence)
            day += timedelta(days=1)

        session.commit()

        for occurrence in created:
            await self.reminder_queue.add_reminder(
                occurrence.id,
                occurrence.due_at,
                medication_id=medication.id
            )

        logger.info(f"Created {len(created)} occurrences for medication {medication.id}")
        return created

    async def expand_for_patient(
        self,
        patient_id: int,
        db: Optional[Session] = None
    ) -> List[models.ScheduleOccurrence]:
        """Expand every active medication of a patient"""
        with session_scope(db, self.session_factory) as session:
            medications = session.query(models.Medication).filter(
                models.Medication.patient_id == patient_id,
                models.Medication.status == models.MedicationStatus.ACTIVE
            ).all()

            # Reject a bad definition before any medication is committed
            for medication in medications:
                if medication.frequency in SUPPORTED_FREQUENCIES:
                    self.validate_schedule(medication)

            occurrences: List[models.ScheduleOccurrence] = []
            for medication in medications:
                occurrences.extend(await self._expand_medication(session, medication))

        logger.info(
            f"Expanded schedules for patient {patient_id} "
            f"(occurrences: {len(occurrences)}, count: {len(medications)})"
        )
        return occurrences

    # ==================== LIFECYCLE MUTATORS ====================

    async def snooze(
        self,
        occurrence_id: int,
        minutes: Optional[int] = None,
        db: Optional[Session] = None
    ) -> Optional[datetime]:
        """
        Defer an occurrence's reminder by `minutes`

        Only occurrences waiting on an answer (`sent`, or `snoozed` again)
        can be snoozed.

        Returns:
            The re-fire time, or None when the occurrence does not exist or
            is not waiting on an answer
        """
        minutes = minutes or escalation_config.DEFAULT_SNOOZE_MINUTES

        with session_scope(db, self.session_factory) as session:
            occurrence = session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.id == occurrence_id
            ).first()

            if not occurrence:
                logger.warning(f"Snooze requested for unknown occurrence {occurrence_id}")
                return None

            if occurrence.status not in SNOOZABLE:
                logger.warning(
                    f"Snooze ignored for occurrence {occurrence_id} in status {occurrence.status.value}"
                )
                return None

            snooze_until = self.clock() + timedelta(minutes=minutes)
            occurrence.status = models.OccurrenceStatus.SNOOZED
            occurrence.snoozed_until = snooze_until
            occurrence.snooze_count = (occurrence.snooze_count or 0) + 1
            medication_id = occurrence.medication_id

            if self.escalation_service is not None:
                await self.escalation_service.cancel_escalation(occurrence_id, db=session)
            session.commit()

        await self.reminder_queue.remove_by_occurrence(occurrence_id)
        await self.reminder_queue.add_reminder(
            occurrence_id,
            snooze_until,
            medication_id=medication_id,
            is_snoozed=True
        )

        logger.info(f"Occurrence {occurrence_id} snoozed for {minutes} minutes (until {snooze_until.isoformat()})")
        return snooze_until

    async def pause(self, medication_id: int, db: Optional[Session] = None) -> int:
        """Pause all pending occurrences of a medication and drop their reminders"""
        with session_scope(db, self.session_factory) as session:
            medication = session.query(models.Medication).filter(
                models.Medication.id == medication_id
            ).first()
            if not medication:
                raise MedicationNotFoundError(medication_id)

            count = session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.medication_id == medication_id,
                models.ScheduleOccurrence.status == models.OccurrenceStatus.PENDING
            ).update({"status": models.OccurrenceStatus.PAUSED}, synchronize_session="fetch")

            medication.status = models.MedicationStatus.PAUSED
            session.commit()

        removed = await self.reminder_queue.remove_by_medication(medication_id)
        logger.info(f"Paused medication {medication_id}: {count} occurrences, {removed} reminders removed")
        return count

    async def resume(self, medication_id: int, db: Optional[Session] = None) -> int:
        """Restore paused occurrences that are still in the future"""
        now = self.clock()

        with session_scope(db, self.session_factory) as session:
            medication = session.query(models.Medication).filter(
                models.Medication.id == medication_id
            ).first()
            if not medication:
                raise MedicationNotFoundError(medication_id)

            occurrences = session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.medication_id == medication_id,
                models.ScheduleOccurrence.status == models.OccurrenceStatus.PAUSED,
                models.ScheduleOccurrence.due_at > now
            ).order_by(models.ScheduleOccurrence.due_at).all()

            for occurrence in occurrences:
                occurrence.status = models.OccurrenceStatus.PENDING

            medication.status = models.MedicationStatus.ACTIVE
            session.commit()

            resumed = [(o.id, o.due_at) for o in occurrences]

        for occurrence_id, due_at in resumed:
            await self.reminder_queue.add_reminder(occurrence_id, due_at, medication_id=medication_id)

        logger.info(f"Resumed medication {medication_id}: {len(resumed)} occurrences")
        return len(resumed)

    async def reschedule(
        self,
        occurrence_id: int,
        new_time: datetime,
        db: Optional[Session] = None
    ) -> models.ScheduleOccurrence:
        """
        Move an occurrence to `new_time`

        A paused occurrence keeps its status and gets no reminder until its
        medication is resumed.

        Raises:
            OccurrenceNotFoundError: If the occurrence does not exist
            InvalidScheduleError: If `new_time` is not in the future or the
                occurrence has already been taken, skipped or missed
        """
        new_time = as_naive_utc(new_time)

        with session_scope(db, self.session_factory) as session:
            occurrence = session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.id == occurrence_id
            ).first()
            if not occurrence:
                raise OccurrenceNotFoundError(occurrence_id)

            if new_time <= self.clock():
                raise InvalidScheduleError(f"Cannot reschedule occurrence {occurrence_id} into the past")

            if occurrence.status in TERMINAL:
                raise InvalidScheduleError(
                    f"Cannot reschedule occurrence {occurrence_id}, it is already {occurrence.status.value}"
                )

            await self.reminder_queue.remove_by_occurrence(occurrence_id)
            if self.escalation_service is not None:
                await self.escalation_service.cancel_escalation(occurrence_id, db=session)

            old_time = occurrence.due_at
            occurrence.due_at = new_time
            occurrence.snoozed_until = None
            paused = occurrence.status == models.OccurrenceStatus.PAUSED
            if not paused:
                occurrence.status = models.OccurrenceStatus.PENDING
            session.commit()

            if not paused:
                await self.reminder_queue.add_reminder(
                    occurrence_id,
                    new_time,
                    medication_id=occurrence.medication_id
                )

        logger.info(
            f"Occurrence {occurrence_id} rescheduled from {old_time.isoformat()} to {new_time.isoformat()}"
        )
        return occurrence

    # ==================== QUERIES ====================

    async def get_occurrence(
        self,
        occurrence_id: int,
        db: Optional[Session] = None
    ) -> Optional[models.ScheduleOccurrence]:
        with session_scope(db, self.session_factory) as session:
            return session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.id == occurrence_id
            ).first()

    async def get_upcoming(
        self,
        patient_id: int,
        days: int = 7,
        db: Optional[Session] = None
    ) -> List[models.ScheduleOccurrence]:
        """Pending occurrences due within the next `days` days"""
        now = self.clock()

        with session_scope(db, self.session_factory) as session:
            return session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.patient_id == patient_id,
                models.ScheduleOccurrence.status == models.OccurrenceStatus.PENDING,
                models.ScheduleOccurrence.due_at > now,
                models.ScheduleOccurrence.due_at <= now + timedelta(days=days)
            ).order_by(models.ScheduleOccurrence.due_at).all()

