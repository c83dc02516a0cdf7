"""
Escalation Controller
Runs one escalation level for an unanswered occurrence
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import Settings, escalation_config, settings as default_settings
from database import SessionLocal, session_scope
import models
from services.escalation_service import EscalationService
from tools.clock import Clock, utcnow
from tools import message_templates
from tools.notification_service import ClinicNotifier, NotificationTransport, SpeechSynthesizer


logger = logging.getLogger(__name__)


class EscalationController:
    """
    Escalation state machine

    Each level is handled once per occurrence:
        1 urgent text, 2 voice note, 3 voice call, 4 caregiver alert, 5 clinic alert.
    The occurrence is re-read first; anything no longer `sent` has been
    answered and the level is skipped.
    """

    def __init__(
        self,
        transport: NotificationTransport,
        synthesizer: SpeechSynthesizer,
        clinic_notifier: ClinicNotifier,
        escalation_service: EscalationService,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = utcnow,
        config: Settings = default_settings
    ):
        self.transport = transport
        self.synthesizer = synthesizer
        self.clinic_notifier = clinic_notifier
        self.escalation_service = escalation_service
        self.session_factory = session_factory
        self.clock = clock
        self.config = config

        self._handlers = {
            1: self.send_urgent_reminder,
            2: self.send_voice_reminder,
            3: self.make_voice_call,
            4: self.alert_caregiver,
            5: self.alert_clinic,
        }

    async def handle_escalation(self, occurrence_id: int, level: int) -> Optional[models.Escalation]:
        """
        Perform escalation `level` for an occurrence and queue the next one

        Returns:
            The level's escalation record, or None when nothing was done
        """
        handler = self._handlers.get(level)
        if handler is None:
            logger.warning(f"Unknown escalation level {level} for occurrence {occurrence_id}")
            return None

        with session_scope(None, self.session_factory) as session:
            occurrence = session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.id == occurrence_id
            ).first()

            if not occurrence or occurrence.status != models.OccurrenceStatus.SENT:
                logger.info(f"Occurrence {occurrence_id} no longer needs escalation (level={level})")
                return None

            medication = occurrence.medication
            escalation = self._get_or_create_record(session, occurrence, level)

            logger.info(
                f"Starting escalation (escalation_id={escalation.id}, level={level}, "
                f"patient_id={occurrence.patient_id}, occurrence_id={occurrence_id})"
            )

            method = escalation.type.value
            try:
                method = await handler(occurrence.patient, medication, occurrence, escalation) or method
            except Exception as e:
                escalation.add_attempt(method, success=False, error=str(e))
                session.commit()
                raise
            escalation.add_attempt(method, success=True)

            now = self.clock()
            occurrence.escalation_level = level
            occurrence.last_escalated_at = now
            session.commit()

        if level < escalation_config.MAX_ESCALATION_LEVEL:
            await self.escalation_service.schedule_escalation(
                occurrence_id,
                level + 1,
                delay_ms=self.escalation_service.get_escalation_delay(level)
            )

        return escalation

    def _get_or_create_record(
        self,
        session: Session,
        occurrence: models.ScheduleOccurrence,
        level: int
    ) -> models.Escalation:
        escalation = session.query(models.Escalation).filter(
            models.Escalation.occurrence_id == occurrence.id,
            models.Escalation.level == level
        ).first()
        if escalation:
            return escalation

        medication = occurrence.medication
        escalation = models.Escalation(
            patient_id=occurrence.patient_id,
            medication_id=occurrence.medication_id,
            occurrence_id=occurrence.id,
            level=level,
            type=models.ESCALATION_TYPES[level],
            status=models.EscalationStatus.PENDING,
            attempts=[],
            extra={
                "critical_medication": bool(medication.critical),
                "adherence_rate": medication.adherence_rate,
            },
        )
        session.add(escalation)
        session.flush()
        return escalation

    def _time_ago(self, occurrence: models.ScheduleOccurrence) -> str:
        return message_templates.time_ago(occurrence.due_at, self.clock())

    # ==================== LEVEL ACTIONS ====================

    async def send_urgent_reminder(self, patient, medication, occurrence, escalation=None) -> str:
        message = message_templates.urgent_message(
            medication.display_name, self._time_ago(occurrence), patient.language
        )
        await self.transport.send_text(patient.recipient, message, escalation_config.URGENT_REPLIES)
        logger.info(f"Urgent reminder sent (patient_id={patient.id}, occurrence_id={occurrence.id})")
        return models.EscalationType.URGENT.value

    async def send_voice_reminder(self, patient, medication, occurrence, escalation=None) -> str:
        if not patient.voice_reminders:
            return await self.send_urgent_reminder(patient, medication, occurrence, escalation)

        message = message_templates.voice_message(
            medication.display_name, self._time_ago(occurrence), patient.language
        )
        audio_url = await self.synthesizer.synthesize(message, patient.language)
        await self.transport.send_voice_note(patient.recipient, audio_url)
        await self.transport.send_text(patient.recipient, "Please respond:", escalation_config.VOICE_FOLLOWUP_REPLIES)

        logger.info(f"Voice reminder sent (patient_id={patient.id}, occurrence_id={occurrence.id})")
        return models.EscalationType.VOICE_REMINDER.value

    async def make_voice_call(self, patient, medication, occurrence, escalation=None) -> str:
        if not self.config.ENABLE_VOICE_CALLS:
            return await self.send_voice_reminder(patient, medication, occurrence, escalation)

        script = message_templates.voice_call_script(
            medication.display_name,
            self._time_ago(occurrence),
            patient.language,
            f"{self.config.SERVER_URL.rstrip('/')}{self.config.API_PREFIX}/occurrences/{occurrence.id}/voice-response",
        )
        try:
            result = await self.transport.place_voice_call(patient.phone_number, script)
        except Exception as e:
            logger.error(f"Voice call failed for occurrence {occurrence.id}, falling back to voice note: {e}")
            if escalation is not None:
                escalation.add_attempt(models.EscalationType.VOICE_CALL.value, success=False, error=str(e))
            return await self.send_voice_reminder(patient, medication, occurrence, escalation)

        logger.info(f"Voice call initiated (patient_id={patient.id}, call_id={result.message_id})")
        return models.EscalationType.VOICE_CALL.value

    async def alert_caregiver(self, patient, medication, occurrence, escalation) -> str:
        if not patient.caregivers:
            logger.warning(f"No caregivers to alert (patient_id={patient.id}, occurrence_id={occurrence.id})")
            return "caregiver_unavailable"

        caregiver = patient.caregivers[0]
        message = message_templates.caregiver_message(
            patient.name,
            medication.display_name,
            self._time_ago(occurrence),
            caregiver.relationship_label,
        )
        await self.transport.send_text(caregiver.phone_number, message, escalation_config.CAREGIVER_REPLIES)

        now = self.clock()
        escalation.caregiver_notified = True
        escalation.caregiver_phone = caregiver.phone_number
        escalation.caregiver_relationship = caregiver.relationship_label
        escalation.caregiver_notified_at = now
        occurrence.caregiver_alerted = True
        occurrence.caregiver_alerted_at = now

        logger.info(f"Caregiver alerted (patient_id={patient.id}, caregiver_id={caregiver.id})")
        return models.EscalationType.CAREGIVER.value

    async def alert_clinic(self, patient, medication, occurrence, escalation=None) -> str:
        if patient.clinic_id:
            await self.clinic_notifier.alert_clinic(patient.clinic_id, {
                "patient_id": patient.id,
                "medication_id": medication.id,
                "occurrence_id": occurrence.id,
                "due_at": occurrence.due_at.isoformat(),
                "critical_medication": bool(medication.critical),
                "adherence_rate": medication.adherence_rate,
            })
            logger.info(f"Clinic alerted (patient_id={patient.id}, clinic_id={patient.clinic_id})")
            return models.EscalationType.CLINIC.value

        message = message_templates.critical_message(
            medication.display_name, bool(medication.critical), patient.language
        )
        await self.transport.send_text(patient.recipient, message)
        logger.info(f"Critical alert sent to patient (patient_id={patient.id}, occurrence_id={occurrence.id})")
        return "critical_alert"
