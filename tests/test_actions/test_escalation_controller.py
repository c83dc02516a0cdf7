"""
Tests for Escalation Controller
Tests each escalation level, fallbacks, failure handling and the full chain
"""

import logging
import pytest
from datetime import timedelta

from actions.escalation_controller import EscalationController
from config import Settings, escalation_config
from exceptions import NotificationError
from models import Escalation, EscalationType, OccurrenceStatus, ScheduleOccurrence


# =============================================================================
# Helpers
# =============================================================================

def escalation_jobs(container):
    return container.escalation_queue.queue.get_jobs()


def records_for(db_session, occurrence_id):
    db_session.expire_all()
    return db_session.query(Escalation).filter(
        Escalation.occurrence_id == occurrence_id
    ).order_by(Escalation.level).all()


@pytest.fixture
def voice_call_controller(container, transport, synthesizer, clinic_notifier, session_factory, clock):
    """Controller with voice calls switched on"""
    return EscalationController(
        transport,
        synthesizer,
        clinic_notifier,
        container.escalation_service,
        session_factory=session_factory,
        clock=clock,
        config=Settings(QUEUE_BACKEND="memory", ENABLE_VOICE_CALLS=True, SERVER_URL="https://nudge.example.com"),
    )


# =============================================================================
# Guard Tests
# =============================================================================

class TestGuards:
    """Tests for levels that must not act"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        OccurrenceStatus.TAKEN,
        OccurrenceStatus.SKIPPED,
        OccurrenceStatus.SNOOZED,
        OccurrenceStatus.PENDING,
    ])
    async def test_answered_occurrence_is_noop(self, container, db_session, make_occurrence, transport, status):
        occurrence = make_occurrence(status)

        result = await container.escalation_controller.handle_escalation(occurrence.id, 2)

        assert result is None
        transport.send_text.assert_not_awaited()
        assert records_for(db_session, occurrence.id) == []
        assert escalation_jobs(container) == []

    @pytest.mark.asyncio
    async def test_unknown_level_is_noop(self, container, db_session, make_occurrence, transport, caplog):
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        with caplog.at_level(logging.WARNING):
            result = await container.escalation_controller.handle_escalation(occurrence.id, 7)

        assert result is None
        assert "Unknown escalation level 7" in caplog.text
        transport.send_text.assert_not_awaited()
        assert records_for(db_session, occurrence.id) == []

    @pytest.mark.asyncio
    async def test_missing_occurrence_is_noop(self, container, transport):
        assert await container.escalation_controller.handle_escalation(999, 1) is None
        transport.send_text.assert_not_awaited()


# =============================================================================
# Level Tests
# =============================================================================

class TestLevelOne:
    """Tests for the urgent text"""

    @pytest.mark.asyncio
    async def test_sends_urgent_text_and_queues_level_two(self, container, db_session, make_occurrence, transport, clock):
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        escalation = await container.escalation_controller.handle_escalation(occurrence.id, 1)

        to, message, quick_replies = transport.send_text.await_args.args
        assert to == "whatsapp:+27820000001"
        assert "URGENT REMINDER" in message
        assert "Morning pill was due 30 minutes ago" in message
        assert quick_replies == escalation_config.URGENT_REPLIES

        assert escalation.level == 1
        assert escalation.type == EscalationType.URGENT
        assert escalation.attempts[-1]["method"] == "urgent"
        assert escalation.attempts[-1]["success"] is True
        assert escalation.extra == {"critical_medication": False, "adherence_rate": 100.0}

        jobs = escalation_jobs(container)
        assert len(jobs) == 1
        assert jobs[0].payload["level"] == 2
        assert jobs[0].delay_ms == 1800000

        db_session.expire_all()
        refreshed = db_session.get(ScheduleOccurrence, occurrence.id)
        assert refreshed.escalation_level == 1
        assert refreshed.last_escalated_at == clock()

    @pytest.mark.asyncio
    async def test_repeat_reuses_the_levels_record(self, container, db_session, make_occurrence, clock):
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        await container.escalation_controller.handle_escalation(occurrence.id, 1)
        clock.advance(seconds=30)
        escalation = await container.escalation_controller.handle_escalation(occurrence.id, 1)

        assert len(records_for(db_session, occurrence.id)) == 1
        assert len(escalation.attempts) == 2


class TestLevelTwo:
    """Tests for the voice note"""

    @pytest.mark.asyncio
    async def test_voice_note_when_enabled(self, container, db_session, make_occurrence, test_patient, transport, synthesizer):
        test_patient.voice_reminders = True
        db_session.commit()
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        escalation = await container.escalation_controller.handle_escalation(occurrence.id, 2)

        message, language = synthesizer.synthesize.await_args.args
        assert "Urgent reminder: Your Morning pill" in message
        assert language == "en"
        transport.send_voice_note.assert_awaited_once_with(
            "whatsapp:+27820000001", "https://audio.example.com/reminder.mp3"
        )
        transport.send_text.assert_awaited_once_with(
            "whatsapp:+27820000001", "Please respond:", escalation_config.VOICE_FOLLOWUP_REPLIES
        )
        assert escalation.attempts[-1]["method"] == "voice_reminder"

    @pytest.mark.asyncio
    async def test_falls_back_to_urgent_text(self, container, make_occurrence, transport, synthesizer):
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        escalation = await container.escalation_controller.handle_escalation(occurrence.id, 2)

        synthesizer.synthesize.assert_not_awaited()
        assert transport.send_text.await_args.args[2] == escalation_config.URGENT_REPLIES
        assert escalation.type == EscalationType.VOICE_REMINDER
        assert escalation.attempts[-1]["method"] == "urgent"

        jobs = escalation_jobs(container)
        assert jobs[0].payload["level"] == 3
        assert jobs[0].delay_ms == 900000


class TestLevelThree:
    """Tests for the voice call"""

    @pytest.mark.asyncio
    async def test_disabled_calls_fall_back(self, container, make_occurrence, transport):
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        escalation = await container.escalation_controller.handle_escalation(occurrence.id, 3)

        transport.place_voice_call.assert_not_awaited()
        transport.send_text.assert_awaited_once()
        assert escalation.type == EscalationType.VOICE_CALL

    @pytest.mark.asyncio
    async def test_places_call_with_callback(self, voice_call_controller, make_occurrence, transport):
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        escalation = await voice_call_controller.handle_escalation(occurrence.id, 3)

        to, script = transport.place_voice_call.await_args.args
        assert to == "+27820000001"
        assert f"https://nudge.example.com/api/v1/occurrences/{occurrence.id}/voice-response" in script
        assert 'language="en-US"' in script
        transport.send_text.assert_not_awaited()
        assert escalation.attempts[-1]["method"] == "voice_call"

    @pytest.mark.asyncio
    async def test_failed_call_falls_back_and_is_recorded(self, voice_call_controller, make_occurrence, transport):
        transport.place_voice_call.side_effect = NotificationError("no route")
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        escalation = await voice_call_controller.handle_escalation(occurrence.id, 3)

        assert [(a["method"], a["success"]) for a in escalation.attempts] == [
            ("voice_call", False),
            ("urgent", True),
        ]
        assert escalation.attempts[0]["error"] == "no route"
        transport.send_text.assert_awaited_once()


class TestLevelFour:
    """Tests for the caregiver alert"""

    @pytest.mark.asyncio
    async def test_alerts_first_caregiver(self, container, db_session, make_occurrence, test_caregiver, transport, clock):
        occurrence = make_occurrence(OccurrenceStatus.SENT, due_at=clock() - timedelta(minutes=70))

        escalation = await container.escalation_controller.handle_escalation(occurrence.id, 4)

        to, message, quick_replies = transport.send_text.await_args.args
        assert to == "+27820000002"
        assert "Thandi hasn't taken their Morning pill" in message
        assert "over an hour ago" in message
        assert "This is their son." in message
        assert quick_replies == escalation_config.CAREGIVER_REPLIES

        assert escalation.caregiver_notified is True
        assert escalation.caregiver_phone == "+27820000002"
        assert escalation.caregiver_relationship == "son"
        assert escalation.caregiver_notified_at == clock()

        db_session.expire_all()
        refreshed = db_session.get(ScheduleOccurrence, occurrence.id)
        assert refreshed.caregiver_alerted is True
        assert refreshed.caregiver_alerted_at == clock()

    @pytest.mark.asyncio
    async def test_no_caregiver_still_advances_chain(self, container, db_session, make_occurrence, transport, caplog):
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        with caplog.at_level(logging.WARNING):
            escalation = await container.escalation_controller.handle_escalation(occurrence.id, 4)

        transport.send_text.assert_not_awaited()
        assert "No caregivers to alert" in caplog.text
        assert not escalation.caregiver_notified
        assert escalation.caregiver_phone is None
        assert escalation.attempts[-1]["method"] == "caregiver_unavailable"

        jobs = escalation_jobs(container)
        assert len(jobs) == 1
        assert jobs[0].payload["level"] == 5
        assert jobs[0].delay_ms == 600000

    @pytest.mark.asyncio
    async def test_send_failure_is_recorded_and_raised(self, container, db_session, make_occurrence, test_caregiver, transport):
        transport.send_text.side_effect = NotificationError("gateway down")
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        with pytest.raises(NotificationError):
            await container.escalation_controller.handle_escalation(occurrence.id, 4)

        records = records_for(db_session, occurrence.id)
        assert len(records) == 1
        (attempt,) = records[0].attempts
        assert (attempt["method"], attempt["success"], attempt["error"]) == ("caregiver", False, "gateway down")
        assert escalation_jobs(container) == []


class TestLevelFive:
    """Tests for the final alert"""

    @pytest.mark.asyncio
    async def test_alerts_clinic_when_registered(self, container, db_session, make_occurrence, test_patient, clinic_notifier, transport):
        test_patient.clinic_id = "clinic-7"
        db_session.commit()
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        escalation = await container.escalation_controller.handle_escalation(occurrence.id, 5)

        clinic_id, payload = clinic_notifier.alert_clinic.await_args.args
        assert clinic_id == "clinic-7"
        assert payload["occurrence_id"] == occurrence.id
        assert payload["patient_id"] == test_patient.id
        transport.send_text.assert_not_awaited()
        assert escalation.attempts[-1]["method"] == "clinic"
        assert escalation_jobs(container) == []

    @pytest.mark.asyncio
    async def test_critical_text_without_clinic(self, container, db_session, make_occurrence, test_medication, transport, clinic_notifier):
        test_medication.critical = True
        db_session.commit()
        occurrence = make_occurrence(OccurrenceStatus.SENT)

        escalation = await container.escalation_controller.handle_escalation(occurrence.id, 5)

        clinic_notifier.alert_clinic.assert_not_awaited()
        to, message = transport.send_text.await_args.args
        assert to == "whatsapp:+27820000001"
        assert "CRITICAL ALERT" in message
        assert "This is a critical medication." in message
        assert escalation.attempts[-1]["method"] == "critical_alert"
        assert escalation.extra["critical_medication"] is True
        assert escalation_jobs(container) == []


# =============================================================================
# Chain Tests
# =============================================================================

@pytest.mark.integration
class TestEscalationChain:
    """Tests for the chain driven through the queue workers"""

    @pytest.mark.asyncio
    async def test_unanswered_occurrence_walks_every_level(
        self, container, db_session, make_occurrence, test_caregiver, backend, clock, transport
    ):
        occurrence = make_occurrence(OccurrenceStatus.SENT, due_at=clock())
        await container.escalation_service.schedule_escalation(occurrence.id, 1)

        # Each level waits the previous level's delay
        for minutes, level in [(30, 1), (30, 2), (15, 3), (15, 4), (10, 5)]:
            clock.advance(minutes=minutes)
            await backend.run_due()
            assert [r.level for r in records_for(db_session, occurrence.id)][-1] == level

        assert [r.level for r in records_for(db_session, occurrence.id)] == [1, 2, 3, 4, 5]
        assert escalation_jobs(container) == []
        recipients = [call.args[0] for call in transport.send_text.await_args_list]
        assert recipients.count("+27820000002") == 1

        clock.advance(minutes=61)
        assert await container.escalation_service.expire_unanswered() == 1
        db_session.expire_all()
        assert db_session.get(ScheduleOccurrence, occurrence.id).status == OccurrenceStatus.MISSED

    @pytest.mark.asyncio
    async def test_response_stops_the_chain(self, container, db_session, make_occurrence, backend, clock, transport):
        occurrence = make_occurrence(OccurrenceStatus.SENT)
        await container.escalation_service.schedule_escalation(occurrence.id, 1)

        clock.advance(minutes=30)
        await backend.run_due()
        await container.reminder_controller.handle_response(occurrence.id, "taken")

        clock.advance(hours=2)
        await backend.run_due()

        assert [r.level for r in records_for(db_session, occurrence.id)] == [1]
        assert transport.send_text.await_count == 1
        assert escalation_jobs(container) == []
