"""
Reminder Controller
Delivers due reminders and applies patient responses to occurrences
"""

import logging
import re
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import escalation_config
from database import SessionLocal, session_scope
from exceptions import InvalidResponseError, OccurrenceNotFoundError
import models
from services.escalation_service import EscalationService
from services.schedule_service import ScheduleService
from tools.clock import Clock, parse_time_of_day, to_local, utcnow
from tools import message_templates
from tools.notification_service import NotificationTransport, SpeechSynthesizer


logger = logging.getLogger(__name__)


# Reply text -> action; digits come from voice-call keypads
RESPONSE_KEYWORDS = {
    models.ResponseAction.TAKEN: ("taken", "taking now", "done", "yes", "took it", "already taken", "✅", "1"),
    models.ResponseAction.SNOOZED: ("snooze", "later", "taking soon", "in 15 mins", "⏰", "2"),
    models.ResponseAction.SKIPPED: ("skip", "skip today", "no", "❌", "3"),
}

_MINUTES_PATTERN = re.compile(r"(\d+)\s*min", re.IGNORECASE)

AWAITING_RESPONSE = (models.OccurrenceStatus.SENT, models.OccurrenceStatus.SNOOZED)


def parse_response(text: str) -> Optional[models.ResponseAction]:
    """
    Map a free-text reply, quick-reply label, emoji or keypad digit to an action

    Returns None when the reply is not recognised.
    """
    normalized = (text or "").strip().lower()
    if not normalized:
        return None

    for action, keywords in RESPONSE_KEYWORDS.items():
        if normalized in keywords:
            return action

    # Quick-reply labels lead with their emoji ("✅ Taken", "⏰ Snooze 30min")
    for action, keywords in RESPONSE_KEYWORDS.items():
        if any(normalized.startswith(k) for k in keywords if not k.isdigit() and len(k) == 1):
            return action

    first_word = normalized.split()[0]
    for action, keywords in RESPONSE_KEYWORDS.items():
        if first_word in keywords and not first_word.isdigit():
            return action
    return None


def parse_snooze_minutes(text: str) -> Optional[int]:
    """Minutes named in a snooze reply such as "⏰ In 15 mins" """
    match = _MINUTES_PATTERN.search(text or "")
    return int(match.group(1)) if match else None


class ReminderController:
    """
    Sends reminders for due occurrences and records how patients answer them
    """

    def __init__(
        self,
        transport: NotificationTransport,
        synthesizer: SpeechSynthesizer,
        schedule_service: ScheduleService,
        escalation_service: EscalationService,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = utcnow
    ):
        self.transport = transport
        self.synthesizer = synthesizer
        self.schedule_service = schedule_service
        self.escalation_service = escalation_service
        self.session_factory = session_factory
        self.clock = clock

    # ==================== DELIVERY ====================

    async def send_reminder(
        self,
        occurrence_id: int,
        is_snooze_refire: bool = False,
        scheduled_time: Optional[datetime] = None
    ) -> bool:
        """
        Deliver the reminder for an occurrence

        Only `pending` occurrences (or `snoozed` ones, for a snooze re-fire)
        are acted on; anything else has been answered, paused or moved and
        the call is a no-op. When `scheduled_time` is given it must still
        match the occurrence's due time (or snooze time), so a job left
        behind by a reschedule or repeat snooze does nothing.

        Returns:
            True if a reminder was sent
        """
        expected = models.OccurrenceStatus.SNOOZED if is_snooze_refire else models.OccurrenceStatus.PENDING

        with session_scope(None, self.session_factory) as session:
            occurrence = session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.id == occurrence_id
            ).first()

            if not occurrence or occurrence.status != expected:
                logger.info(
                    f"Occurrence {occurrence_id} no longer awaiting a reminder "
                    f"(status={occurrence.status.value if occurrence else None}, is_snoozed={is_snooze_refire})"
                )
                return False

            expected_time = occurrence.snoozed_until if is_snooze_refire else occurrence.due_at
            if scheduled_time is not None and scheduled_time != expected_time:
                logger.info(
                    f"Stale reminder for occurrence {occurrence_id} "
                    f"(scheduled_time={scheduled_time.isoformat()}, expected={expected_time})"
                )
                return False

            patient = occurrence.patient
            medication = occurrence.medication

            if not medication.reminders_enabled or not patient.is_active:
                logger.info(f"Reminders disabled for occurrence {occurrence_id}")
                return False

            if self.is_quiet_hours(patient):
                logger.info(f"Skipping reminder during quiet hours (patient_id={patient.id}, occurrence_id={occurrence_id})")
                return False

            message = message_templates.reminder_message(
                medication.display_name,
                message_templates.format_dose(occurrence.dose_amount, occurrence.dose_unit),
                patient.language,
            )

            if patient.voice_reminders:
                await self._send_voice_reminder(patient, message)
            else:
                quick_replies = (
                    escalation_config.REMINDER_REPLIES if medication.snooze_enabled
                    else escalation_config.REMINDER_REPLIES_NO_SNOOZE
                )
                await self.transport.send_text(patient.recipient, message, quick_replies)

            occurrence.status = models.OccurrenceStatus.SENT
            occurrence.reminders = list(occurrence.reminders or []) + [{
                "sent_at": self.clock().isoformat(),
                "type": "snooze" if is_snooze_refire else "initial",
                "delivered": True,
            }]
            session.commit()

            start_chain = patient.escalation_enabled and medication.escalation_enabled
            patient_id, medication_id = patient.id, medication.id

        if start_chain:
            await self.escalation_service.schedule_escalation(occurrence_id, 1)

        logger.info(
            f"Reminder sent (patient_id={patient_id}, medication_id={medication_id}, "
            f"occurrence_id={occurrence_id}, is_snoozed={is_snooze_refire})"
        )
        return True

    async def _send_voice_reminder(self, patient: models.Patient, message: str) -> None:
        audio_url = await self.synthesizer.synthesize(message, patient.language)
        await self.transport.send_voice_note(patient.recipient, audio_url)
        await self.transport.send_text(patient.recipient, "Reply with:", escalation_config.REMINDER_REPLIES)

    def is_quiet_hours(self, patient: models.Patient) -> bool:
        """Whether it is currently inside the patient's quiet hours (local time)"""
        if not patient.quiet_hours_enabled:
            return False

        current = to_local(self.clock(), patient.timezone).time()
        start = parse_time_of_day(patient.quiet_hours_start)
        end = parse_time_of_day(patient.quiet_hours_end)

        if start <= end:
            return start <= current < end
        return current >= start or current < end

    # ==================== RESPONSES ====================

    async def handle_response(
        self,
        occurrence_id: int,
        action: str,
        channel: str = "text",
        notes: Optional[str] = None,
        snooze_minutes: Optional[int] = None,
        db: Optional[Session] = None
    ) -> models.ScheduleOccurrence:
        """
        Apply a patient's answer to an occurrence

        Every answer stops the escalation chain. Taken and skipped are
        terminal; a snooze queues a re-fire.

        Raises:
            OccurrenceNotFoundError: If the occurrence does not exist
            InvalidResponseError: If the action is unknown or the occurrence
                is not awaiting a response
        """
        try:
            action = models.ResponseAction(action)
        except ValueError:
            raise InvalidResponseError(f"Unknown response action: {action}")

        now = self.clock()

        with session_scope(db, self.session_factory) as session:
            occurrence = session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.id == occurrence_id
            ).first()
            if not occurrence:
                raise OccurrenceNotFoundError(occurrence_id)

            if occurrence.status not in AWAITING_RESPONSE:
                raise InvalidResponseError(
                    f"Occurrence {occurrence_id} is {occurrence.status.value}, not awaiting a response"
                )

            medication = occurrence.medication
            occurrence.response_action = action.value
            occurrence.response_at = now
            occurrence.response_channel = channel
            occurrence.response_notes = notes

            if action == models.ResponseAction.TAKEN:
                occurrence.status = models.OccurrenceStatus.TAKEN
                occurrence.actual_time = now
                medication.taken_count = (medication.taken_count or 0) + 1
                medication.streak = (medication.streak or 0) + 1
                medication.last_taken_at = now
                medication.update_adherence_rate()

            elif action == models.ResponseAction.SKIPPED:
                occurrence.status = models.OccurrenceStatus.SKIPPED
                medication.missed_count = (medication.missed_count or 0) + 1
                medication.streak = 0
                medication.update_adherence_rate()

            else:
                medication.snoozed_count = (medication.snoozed_count or 0) + 1

            if action == models.ResponseAction.SNOOZED:
                # snooze() cancels the chain and queues the re-fire
                await self.schedule_service.snooze(occurrence_id, snooze_minutes, db=session)
            else:
                await self.schedule_service.reminder_queue.remove_by_occurrence(occurrence_id)
                await self.escalation_service.cancel_escalation(
                    occurrence_id,
                    resolved_by="user",
                    outcome=action.value,
                    db=session
                )
            session.commit()

            logger.info(
                f"Response recorded (occurrence_id={occurrence_id}, medication_id={medication.id}, "
                f"action={action.value}, channel={channel})"
            )
            return occurrence

    async def handle_reply_text(
        self,
        occurrence_id: int,
        text: str,
        channel: str = "text",
        db: Optional[Session] = None
    ) -> models.ScheduleOccurrence:
        """Parse a raw reply and apply it"""
        action = parse_response(text)
        if action is None:
            logger.warning(f"Unknown reminder response for occurrence {occurrence_id}: {text!r}")
            raise InvalidResponseError(f"Unrecognised response: {text}")

        minutes = parse_snooze_minutes(text) if action == models.ResponseAction.SNOOZED else None
        return await self.handle_response(occurrence_id, action.value, channel, notes=text, snooze_minutes=minutes, db=db)
