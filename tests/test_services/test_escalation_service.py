"""
Tests for Escalation Service
Tests delay lookup, chain scheduling and cancellation, history, analytics and the missed-dose sweep
"""

import pytest
from datetime import timedelta

from models import Escalation, EscalationStatus, ESCALATION_TYPES, OccurrenceStatus


# =============================================================================
# Helpers
# =============================================================================

def add_escalation(db_session, occurrence, level, **fields) -> Escalation:
    escalation = Escalation(
        patient_id=occurrence.patient_id,
        medication_id=occurrence.medication_id,
        occurrence_id=occurrence.id,
        level=level,
        type=ESCALATION_TYPES[level],
        **{"status": EscalationStatus.PENDING, **fields}
    )
    db_session.add(escalation)
    db_session.commit()
    return escalation


# =============================================================================
# Scheduling Tests
# =============================================================================

class TestEscalationDelay:
    """Tests for the per-level delay table"""

    @pytest.mark.parametrize("level,expected", [
        (1, 1800000),
        (2, 900000),
        (3, 900000),
        (4, 600000),
        (5, 300000),
        (0, 1800000),
        (6, 1800000),
    ])
    def test_delay_table(self, container, level, expected):
        assert container.escalation_service.get_escalation_delay(level) == expected


class TestScheduleEscalation:
    """Tests for queueing escalation levels"""

    @pytest.mark.asyncio
    async def test_defaults_to_the_levels_delay(self, container, clock):
        job = await container.escalation_service.schedule_escalation(12, 1)

        assert job.delay_ms == 1800000
        assert job.payload["level"] == 1
        assert job.payload["scheduled_for"] == (clock() + timedelta(minutes=30)).isoformat()

    @pytest.mark.asyncio
    async def test_explicit_delay(self, container):
        job = await container.escalation_service.schedule_escalation(12, 5, delay_ms=600000)

        assert job.delay_ms == 600000
        assert job.payload["level"] == 5


class TestCancelEscalation:
    """Tests for stopping an escalation chain"""

    @pytest.mark.asyncio
    async def test_removes_jobs_and_cancels_records(self, container, db_session, make_occurrence, backend, clock, transport):
        occurrence = make_occurrence(OccurrenceStatus.SENT)
        record = add_escalation(db_session, occurrence, 1)
        await container.escalation_service.schedule_escalation(occurrence.id, 2)

        result = await container.escalation_service.cancel_escalation(
            occurrence.id, outcome="taken", db=db_session
        )
        db_session.commit()

        assert result == {"removed_jobs": 1, "cancelled_records": 1}
        assert record.status == EscalationStatus.CANCELLED
        assert record.resolved is True
        assert record.resolved_by == "user"
        assert record.outcome == "taken"
        assert record.resolved_at == clock()

        clock.advance(hours=1)
        await backend.run_due()
        transport.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_leaves_finished_records_alone(self, container, db_session, make_occurrence):
        occurrence = make_occurrence(OccurrenceStatus.SENT)
        failed = add_escalation(db_session, occurrence, 1, status=EscalationStatus.FAILED)

        result = await container.escalation_service.cancel_escalation(occurrence.id, db=db_session)

        assert result == {"removed_jobs": 0, "cancelled_records": 0}
        assert failed.status == EscalationStatus.FAILED

    @pytest.mark.asyncio
    async def test_only_touches_the_given_occurrence(self, container, db_session, make_occurrence):
        first = make_occurrence(OccurrenceStatus.SENT)
        second = make_occurrence(OccurrenceStatus.SENT)
        await container.escalation_service.schedule_escalation(first.id, 2)
        await container.escalation_service.schedule_escalation(second.id, 2)

        await container.escalation_service.cancel_escalation(first.id, db=db_session)

        jobs = container.escalation_queue.queue.get_jobs()
        assert [j.payload["occurrence_id"] for j in jobs] == [second.id]


# =============================================================================
# History and Analytics Tests
# =============================================================================

class TestHistory:
    """Tests for escalation history"""

    @pytest.mark.asyncio
    async def test_newest_first_within_window(self, container, db_session, make_occurrence, test_patient, clock):
        occurrence = make_occurrence(OccurrenceStatus.SENT)
        old = add_escalation(db_session, occurrence, 1, created_at=clock() - timedelta(days=45))
        older = add_escalation(db_session, occurrence, 2, created_at=clock() - timedelta(days=2))
        newer = add_escalation(db_session, occurrence, 3, created_at=clock() - timedelta(hours=1))

        history = await container.escalation_service.get_escalation_history(test_patient.id, db=db_session)

        assert [e.id for e in history] == [newer.id, older.id]
        assert old.id not in [e.id for e in history]


class TestAnalyzePatterns:
    """Tests for escalation analytics"""

    @pytest.mark.asyncio
    async def test_empty_history(self, container, db_session, test_patient):
        analysis = await container.escalation_service.analyze_escalation_patterns(test_patient.id, db=db_session)

        assert analysis == {
            "total_escalations": 0,
            "by_level": {},
            "by_medication": {},
            "average_resolution_minutes": 0,
            "caregiver_interventions": 0,
            "patterns": [],
        }

    @pytest.mark.asyncio
    async def test_counts_and_resolution_time(self, container, db_session, make_occurrence, test_patient, test_medication, clock):
        occurrence = make_occurrence(OccurrenceStatus.SENT)
        created = clock() - timedelta(hours=2)
        add_escalation(db_session, occurrence, 1, created_at=created, resolved=True,
                       resolved_at=created + timedelta(minutes=20))
        add_escalation(db_session, occurrence, 4, created_at=created, resolved=True,
                       resolved_at=created + timedelta(minutes=40), caregiver_notified=True)
        add_escalation(db_session, occurrence, 4, created_at=created)

        analysis = await container.escalation_service.analyze_escalation_patterns(test_patient.id, db=db_session)

        assert analysis["total_escalations"] == 3
        assert analysis["by_level"] == {1: 1, 4: 2}
        assert analysis["by_medication"] == {test_medication.id: {"count": 3, "name": "Morning pill"}}
        assert analysis["average_resolution_minutes"] == 30
        assert analysis["caregiver_interventions"] == 1
        # Patterns need more than ten escalations
        assert analysis["patterns"] == []

    @pytest.mark.asyncio
    async def test_flags_severe_and_concentrated_escalations(self, container, db_session, make_occurrence, test_patient):
        occurrence = make_occurrence(OccurrenceStatus.SENT)
        for level in [4] * 6 + [1] * 5:
            add_escalation(db_session, occurrence, level)

        analysis = await container.escalation_service.analyze_escalation_patterns(test_patient.id, db=db_session)

        assert analysis["total_escalations"] == 11
        assert "High frequency of severe escalations - consider medication review" in analysis["patterns"]
        assert "Morning pill accounts for >30% of escalations" in analysis["patterns"]

    @pytest.mark.asyncio
    async def test_ten_escalations_are_not_flagged(self, container, db_session, make_occurrence, test_patient):
        occurrence = make_occurrence(OccurrenceStatus.SENT)
        for _ in range(10):
            add_escalation(db_session, occurrence, 5)

        analysis = await container.escalation_service.analyze_escalation_patterns(test_patient.id, db=db_session)

        assert analysis["patterns"] == []


# =============================================================================
# Missed-Dose Sweep Tests
# =============================================================================

class TestExpireUnanswered:
    """Tests for marking exhausted occurrences missed"""

    @pytest.mark.asyncio
    async def test_marks_only_silent_fully_escalated_occurrences(
        self, container, db_session, make_occurrence, test_medication, clock
    ):
        expired = make_occurrence(
            OccurrenceStatus.SENT, escalation_level=5, last_escalated_at=clock() - timedelta(minutes=61)
        )
        recent = make_occurrence(
            OccurrenceStatus.SENT, escalation_level=5, last_escalated_at=clock() - timedelta(minutes=30)
        )
        mid_chain = make_occurrence(
            OccurrenceStatus.SENT, escalation_level=3, last_escalated_at=clock() - timedelta(hours=3)
        )
        record = add_escalation(db_session, expired, 5)

        count = await container.escalation_service.expire_unanswered(db=db_session)
        db_session.commit()

        assert count == 1
        assert expired.status == OccurrenceStatus.MISSED
        assert expired.response_action == "missed"
        assert recent.status == OccurrenceStatus.SENT
        assert mid_chain.status == OccurrenceStatus.SENT

        assert test_medication.missed_count == 1
        assert test_medication.streak == 0
        assert test_medication.adherence_rate == 0

        assert record.status == EscalationStatus.CANCELLED
        assert record.resolved_by == "timeout"
        assert record.outcome == "missed"

    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, container, db_session):
        assert await container.escalation_service.expire_unanswered(db=db_session) == 0
