"""
Reminder Queue
Delayed "send reminder" jobs, one per occurrence firing
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from config import escalation_config
from queues.job_queue import DelayedJobQueue, Job, JobBackend, RetryPolicy
from tools.clock import Clock, epoch_ms, utcnow


logger = logging.getLogger(__name__)


SEND_REMINDER = "send-reminder"


class ReminderQueue:
    """
    Queue of reminder jobs

    Reminders due in the past are refused: a past due time means something
    upstream scheduled it wrongly, and firing it late would start an
    escalation chain out of step with the dose.
    """

    def __init__(
        self,
        backend: JobBackend,
        clock: Clock = utcnow,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.clock = clock
        self.queue = DelayedJobQueue(
            "reminders",
            backend,
            retry_policy or RetryPolicy(
                attempts=escalation_config.REMINDER_ATTEMPTS,
                backoff_type=escalation_config.REMINDER_BACKOFF_TYPE,
                backoff_delay_ms=escalation_config.REMINDER_BACKOFF_MS,
            ),
            index_fields=("occurrence_id", "medication_id"),
            clock=clock,
        )
        self._setup_event_handlers()

    def _setup_event_handlers(self):
        self.queue.on("error", lambda error, job=None: logger.error(
            f"Reminder queue error (job_id={getattr(job, 'id', None)}): {error}"
        ))
        self.queue.on("failed", lambda job, error: logger.error(
            f"Reminder job failed (job_id={job.id}, occurrence_id={job.payload.get('occurrence_id')}, "
            f"is_snoozed={job.payload.get('is_snoozed')}, attempts={job.attempts_made}): {error}"
        ))
        self.queue.on("completed", lambda job, result: logger.info(
            f"Reminder job completed (job_id={job.id}, occurrence_id={job.payload.get('occurrence_id')})"
        ))

    async def add_reminder(
        self,
        occurrence_id: int,
        scheduled_time: datetime,
        medication_id: Optional[int] = None,
        is_snoozed: bool = False
    ) -> Optional[Job]:
        """
        Queue a reminder for `scheduled_time` (naive UTC)

        Returns None without enqueueing when the time is already past.
        """
        now = self.clock()
        delay_ms = int((scheduled_time - now).total_seconds() * 1000)

        if delay_ms < 0:
            logger.warning(
                f"Attempted to schedule reminder in the past "
                f"(occurrence_id={occurrence_id}, scheduled_time={scheduled_time.isoformat()})"
            )
            return None

        payload: Dict[str, Any] = {
            "occurrence_id": occurrence_id,
            "medication_id": medication_id,
            "is_snoozed": is_snoozed,
            "scheduled_time": scheduled_time.isoformat(),
        }
        job_id = f"reminder-{occurrence_id}-{epoch_ms(now)}"
        job = await self.queue.add(SEND_REMINDER, payload, delay_ms, job_id)

        logger.info(
            f"Reminder queued (job_id={job.id}, occurrence_id={occurrence_id}, "
            f"delay={delay_ms // 1000}s, is_snoozed={is_snoozed})"
        )
        return job

    async def remove_by_occurrence(self, occurrence_id: int) -> int:
        count = await self.queue.remove_by("occurrence_id", occurrence_id)
        logger.info(f"Removed reminder jobs (occurrence_id={occurrence_id}, count={count})")
        return count

    async def remove_by_medication(self, medication_id: int) -> int:
        count = await self.queue.remove_by("medication_id", medication_id)
        logger.info(f"Removed reminder jobs (medication_id={medication_id}, count={count})")
        return count

    def get_queue_stats(self) -> Dict[str, int]:
        counts = self.queue.get_counts()
        counts["total"] = counts["waiting"] + counts["active"] + counts["delayed"]
        return counts

    async def clear_queue(self) -> int:
        removed = await self.queue.empty()
        logger.warning(f"Reminder queue cleared ({removed} jobs)")
        return removed
