"""
Escalation Queue
Delayed "process escalation" jobs, one per occurrence and level
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from config import escalation_config
from queues.job_queue import DelayedJobQueue, Job, JobBackend, RetryPolicy
from tools.clock import Clock, epoch_ms, utcnow


logger = logging.getLogger(__name__)


PROCESS_ESCALATION = "process-escalation"


class EscalationQueue:
    """
    Queue of escalation jobs

    Unlike reminders, an escalation whose time has already passed is still
    accepted and runs immediately so a delayed chain can catch up.
    """

    def __init__(
        self,
        backend: JobBackend,
        clock: Clock = utcnow,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.clock = clock
        self.queue = DelayedJobQueue(
            "escalations",
            backend,
            retry_policy or RetryPolicy(
                attempts=escalation_config.ESCALATION_ATTEMPTS,
                backoff_type=escalation_config.ESCALATION_BACKOFF_TYPE,
                backoff_delay_ms=escalation_config.ESCALATION_BACKOFF_MS,
            ),
            index_fields=("occurrence_id",),
            clock=clock,
        )
        self._setup_event_handlers()

    def _setup_event_handlers(self):
        self.queue.on("error", lambda error, job=None: logger.error(
            f"Escalation queue error (job_id={getattr(job, 'id', None)}): {error}"
        ))
        self.queue.on("failed", lambda job, error: logger.error(
            f"Escalation job failed (job_id={job.id}, occurrence_id={job.payload.get('occurrence_id')}, "
            f"level={job.payload.get('level')}, attempts={job.attempts_made}): {error}"
        ))
        self.queue.on("completed", lambda job, result: logger.info(
            f"Escalation job completed (job_id={job.id}, occurrence_id={job.payload.get('occurrence_id')}, "
            f"level={job.payload.get('level')})"
        ))

    async def add_escalation(
        self,
        occurrence_id: int,
        level: int,
        scheduled_for: datetime
    ) -> Job:
        """Queue escalation `level` for `scheduled_for` (naive UTC)"""
        now = self.clock()
        delay_ms = int((scheduled_for - now).total_seconds() * 1000)

        job_id = f"escalation-{occurrence_id}-{level}-{epoch_ms(now)}"
        job = await self.queue.add(
            PROCESS_ESCALATION,
            {
                "occurrence_id": occurrence_id,
                "level": level,
                "scheduled_for": scheduled_for.isoformat(),
            },
            delay_ms,
            job_id,
        )

        logger.info(
            f"Escalation queued (job_id={job.id}, occurrence_id={occurrence_id}, "
            f"level={level}, delay={delay_ms // 1000}s)"
        )
        return job

    async def remove_by_occurrence(self, occurrence_id: int) -> int:
        count = await self.queue.remove_by("occurrence_id", occurrence_id)
        logger.info(f"Removed escalation jobs (occurrence_id={occurrence_id}, count={count})")
        return count

    def get_queue_stats(self) -> Dict[str, int]:
        counts = self.queue.get_counts()
        counts["total"] = counts["waiting"] + counts["active"] + counts["delayed"]
        return counts
