"""
Escalation Service
Scheduling, cancellation and analytics for escalation chains
"""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from config import escalation_config
from database import SessionLocal, session_scope
import models
from queues.escalation_queue import EscalationQueue
from queues.job_queue import Job
from tools.clock import Clock, utcnow


logger = logging.getLogger(__name__)


class EscalationService:
    """
    Service for escalation chain bookkeeping
    """

    def __init__(
        self,
        escalation_queue: EscalationQueue,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = utcnow
    ):
        self.escalation_queue = escalation_queue
        self.session_factory = session_factory
        self.clock = clock

    # ==================== SCHEDULING ====================

    @staticmethod
    def get_escalation_delay(level: int) -> int:
        """Delay in milliseconds configured for `level`; unknown levels use the default"""
        return escalation_config.LEVEL_DELAYS_MS.get(level, escalation_config.DEFAULT_LEVEL_DELAY_MS)

    async def schedule_escalation(
        self,
        occurrence_id: int,
        level: int,
        delay_ms: Optional[int] = None
    ) -> Job:
        """
        Enqueue escalation `level` for an occurrence

        Args:
            occurrence_id: Occurrence to escalate
            level: Level the job will run
            delay_ms: Delay before it runs, defaults to the level's own delay
        """
        if delay_ms is None:
            delay_ms = self.get_escalation_delay(level)

        scheduled_for = self.clock() + timedelta(milliseconds=delay_ms)
        job = await self.escalation_queue.add_escalation(occurrence_id, level, scheduled_for)

        logger.info(f"Escalation scheduled (occurrence_id={occurrence_id}, level={level}, delay={delay_ms}ms)")
        return job

    async def cancel_escalation(
        self,
        occurrence_id: int,
        resolved_by: str = "user",
        outcome: Optional[str] = None,
        db: Optional[Session] = None
    ) -> Dict[str, int]:
        """
        Stop the escalation chain for an occurrence

        Removes every not-yet-fired escalation job and marks every pending
        escalation record cancelled.
        """
        removed_jobs = await self.escalation_queue.remove_by_occurrence(occurrence_id)
        now = self.clock()

        with session_scope(db, self.session_factory) as session:
            records = session.query(models.Escalation).filter(
                models.Escalation.occurrence_id == occurrence_id,
                models.Escalation.status == models.EscalationStatus.PENDING
            ).all()

            for record in records:
                record.status = models.EscalationStatus.CANCELLED
                record.resolved = True
                record.resolved_at = now
                record.resolved_by = resolved_by
                if outcome:
                    record.outcome = outcome

            session.flush()

        logger.info(
            f"Escalation cancelled (occurrence_id={occurrence_id}, removed_jobs={removed_jobs}, "
            f"cancelled_records={len(records)}, resolved_by={resolved_by})"
        )
        return {"removed_jobs": removed_jobs, "cancelled_records": len(records)}

    # ==================== HISTORY AND ANALYTICS ====================

    async def get_escalation_history(
        self,
        patient_id: int,
        days: int = 30,
        db: Optional[Session] = None
    ) -> List[models.Escalation]:
        """Escalation records created in the last `days` days, newest first"""
        since = self.clock() - timedelta(days=days)

        with session_scope(db, self.session_factory) as session:
            return session.query(models.Escalation).filter(
                models.Escalation.patient_id == patient_id,
                models.Escalation.created_at >= since
            ).order_by(models.Escalation.created_at.desc()).all()

    async def analyze_escalation_patterns(
        self,
        patient_id: int,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Summarise a patient's escalations

        Returns:
            Dict with total, by_level, by_medication, average resolution
            minutes, caregiver interventions and pattern flags
        """
        with session_scope(db, self.session_factory) as session:
            escalations = session.query(models.Escalation).filter(
                models.Escalation.patient_id == patient_id
            ).all()

            by_level: Dict[int, int] = defaultdict(int)
            by_medication: Dict[int, Dict[str, Any]] = {}
            caregiver_interventions = 0

            for escalation in escalations:
                by_level[escalation.level] += 1

                entry = by_medication.get(escalation.medication_id)
                if entry is None:
                    medication = escalation.medication
                    entry = by_medication[escalation.medication_id] = {
                        "count": 0,
                        "name": medication.display_name if medication else None,
                    }
                entry["count"] += 1

                if escalation.caregiver_notified:
                    caregiver_interventions += 1

            resolved = [e for e in escalations if e.resolved and e.resolved_at and e.created_at]
            average_resolution_minutes = 0
            if resolved:
                total_seconds = sum((e.resolved_at - e.created_at).total_seconds() for e in resolved)
                average_resolution_minutes = int(total_seconds / len(resolved) // 60)

        total = len(escalations)
        patterns = []
        if total > 10:
            if by_level.get(4, 0) > 5 or by_level.get(5, 0) > 3:
                patterns.append("High frequency of severe escalations - consider medication review")
            for entry in by_medication.values():
                if entry["count"] > total * 0.3:
                    patterns.append(f"{entry['name']} accounts for >30% of escalations")

        return {
            "total_escalations": total,
            "by_level": dict(by_level),
            "by_medication": by_medication,
            "average_resolution_minutes": average_resolution_minutes,
            "caregiver_interventions": caregiver_interventions,
            "patterns": patterns,
        }

    # ==================== MISSED-DOSE SWEEP ====================

    async def expire_unanswered(self, db: Optional[Session] = None) -> int:
        """
        Mark fully escalated, silent occurrences as missed

        An occurrence qualifies once it is still `sent`, has reached the last
        escalation level and nothing has happened for the response timeout.
        """
        now = self.clock()
        cutoff = now - timedelta(minutes=escalation_config.RESPONSE_TIMEOUT_MINUTES)

        with session_scope(db, self.session_factory) as session:
            occurrences = session.query(models.ScheduleOccurrence).filter(
                models.ScheduleOccurrence.status == models.OccurrenceStatus.SENT,
                models.ScheduleOccurrence.escalation_level >= escalation_config.MAX_ESCALATION_LEVEL,
                models.ScheduleOccurrence.last_escalated_at <= cutoff
            ).all()

            for occurrence in occurrences:
                occurrence.status = models.OccurrenceStatus.MISSED
                occurrence.response_action = models.OccurrenceStatus.MISSED.value

                medication = occurrence.medication
                if medication is not None:
                    medication.missed_count = (medication.missed_count or 0) + 1
                    medication.streak = 0
                    medication.update_adherence_rate()

                await self.cancel_escalation(
                    occurrence.id,
                    resolved_by="timeout",
                    outcome="missed",
                    db=session
                )

            session.flush()

        logger.info(f"Missed-dose sweep marked {len(occurrences)} occurrences missed")
        return len(occurrences)
