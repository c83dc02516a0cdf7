"""
Job queue backends
Celery for deployments, an in-process heap for development and tests
"""

import heapq
import itertools
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from queues.job_queue import DelayedJobQueue, Job, JobBackend, PENDING_STATES
from tools.clock import Clock, utcnow


logger = logging.getLogger(__name__)


RUN_JOB_TASK = "mednudge.run_job"


class CeleryJobBackend(JobBackend):
    """
    Publishes jobs to a Celery broker

    The delay becomes the task countdown and the job id becomes the Celery
    task id, so revoking a job revokes exactly that task.
    """

    tracks_completion = False

    def __init__(self, celery_app=None):
        if celery_app is None:
            from queues.celery_app import celery_app as default_app
            celery_app = default_app
        self.celery_app = celery_app

    async def schedule(self, queue: DelayedJobQueue, job: Job, delay_ms: int) -> None:
        self.celery_app.send_task(
            RUN_JOB_TASK,
            args=[queue.name, job.to_message()],
            countdown=max(delay_ms, 0) / 1000.0,
            task_id=job.id,
        )
        logger.debug(f"Published job {job.id} to Celery (queue={queue.name}, countdown={delay_ms}ms)")

    async def revoke(self, queue: DelayedJobQueue, job: Job) -> None:
        self.celery_app.control.revoke(job.id)
        logger.debug(f"Revoked Celery task {job.id} (queue={queue.name})")


class InMemoryJobBackend(JobBackend):
    """
    Keeps scheduled jobs in a heap ordered by due time

    Nothing runs on its own: `run_due(now)` dispatches every job due at `now`.
    """

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self._heap: List[Tuple[datetime, int, str, Job]] = []
        self._queues: Dict[str, DelayedJobQueue] = {}
        self._sequence = itertools.count()

    async def schedule(self, queue: DelayedJobQueue, job: Job, delay_ms: int) -> None:
        self._queues[queue.name] = queue
        run_at = self.clock() + timedelta(milliseconds=max(delay_ms, 0))
        heapq.heappush(self._heap, (run_at, next(self._sequence), queue.name, job))

    async def revoke(self, queue: DelayedJobQueue, job: Job) -> None:
        # Entries are dropped lazily: a removed job is no longer known to its queue
        return None

    def pending(self) -> int:
        return len(self._heap)

    def next_run_at(self) -> Optional[datetime]:
        return self._heap[0][0] if self._heap else None

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Run every job due at `now` (default: the backend clock). Returns jobs run."""
        now = now or self.clock()
        ran = 0
        while self._heap and self._heap[0][0] <= now:
            _, _, queue_name, job = heapq.heappop(self._heap)
            queue = self._queues.get(queue_name)
            # Skip entries for removed jobs, or superseded by a new job with the same id
            if queue is None or queue.get_job(job.id) is not job or job.state not in PENDING_STATES:
                continue
            await queue.run(job)
            ran += 1
        return ran
