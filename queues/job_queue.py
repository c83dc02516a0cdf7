"""
Delayed Job Queue
Durable, at-least-once, time-delayed job execution with bounded retries
"""

import itertools
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from tools.clock import Clock, utcnow


logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """Lifecycle state of a queued job"""
    DELAYED = "delayed"
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = (JobState.DELAYED, JobState.WAITING)

# Slack past a broker job's last possible run before it is forgotten locally
DISPATCH_GRACE_MS = 60000


class QueueEvent(str, Enum):
    """Events emitted by a queue for observability"""
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


@dataclass
class RetryPolicy:
    """How many times a job runs and how long to wait between attempts"""
    attempts: int
    backoff_type: str = "fixed"  # "fixed" or "exponential"
    backoff_delay_ms: int = 0

    def backoff_ms(self, attempts_made: int) -> int:
        """Delay before the next attempt after `attempts_made` failures"""
        if self.backoff_type == "exponential":
            return self.backoff_delay_ms * (2 ** max(attempts_made - 1, 0))
        return self.backoff_delay_ms

    def remaining_backoff_ms(self, attempts_made: int) -> int:
        """Total backoff a job can still accumulate if every remaining attempt fails"""
        return sum(self.backoff_ms(n) for n in range(attempts_made + 1, self.attempts))


@dataclass
class Job:
    """A unit of delayed work"""
    id: str
    name: str
    payload: Dict[str, Any]
    delay_ms: int
    run_at: datetime
    state: JobState = JobState.DELAYED
    attempts_made: int = 0
    created_at: datetime = field(default_factory=utcnow)
    result: Any = None
    failed_reason: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        """Serializable form carried by a broker"""
        return {
            "id": self.id,
            "name": self.name,
            "payload": self.payload,
            "delay_ms": self.delay_ms,
            "run_at": self.run_at.isoformat(),
            "attempts_made": self.attempts_made,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "Job":
        return cls(
            id=message["id"],
            name=message["name"],
            payload=dict(message.get("payload") or {}),
            delay_ms=int(message.get("delay_ms", 0)),
            run_at=datetime.fromisoformat(message["run_at"]),
            state=JobState.WAITING,
            attempts_made=int(message.get("attempts_made", 0)),
            created_at=datetime.fromisoformat(message["created_at"]) if message.get("created_at") else utcnow(),
        )


JobHandler = Callable[[Job], Awaitable[Any]]
EventListener = Callable[..., Any]


class JobBackend(ABC):
    """Transport that delivers a job back to its queue once its delay elapses"""

    # False when jobs finish in another process, so this queue never sees them complete
    tracks_completion = True

    @abstractmethod
    async def schedule(self, queue: "DelayedJobQueue", job: Job, delay_ms: int) -> None:
        """Arrange for `queue.run(job)` to be called after `delay_ms`"""

    @abstractmethod
    async def revoke(self, queue: "DelayedJobQueue", job: Job) -> None:
        """Drop a job that has not been dispatched yet"""


class DelayedJobQueue:
    """
    Named queue of delayed jobs

    Keeps an index from payload fields (e.g. occurrence id) to job ids so
    cancellation does not scan every pending job. Removal only affects jobs
    that are still delayed or waiting; a job already handed to a consumer
    runs to completion and is expected to re-check its own preconditions.

    With a broker backend the producer never sees its jobs complete. Those
    jobs are forgotten once their last possible run (delay, every retry
    backoff and a grace period) is behind us, so the index and the counts
    only cover jobs that may still be waiting in the broker.
    """

    def __init__(
        self,
        name: str,
        backend: JobBackend,
        retry_policy: RetryPolicy,
        index_fields: Iterable[str] = ("occurrence_id",),
        clock: Clock = utcnow
    ):
        self.name = name
        self.backend = backend
        self.retry_policy = retry_policy
        self.index_fields = tuple(index_fields)
        self.clock = clock

        self._jobs: Dict[str, Job] = {}
        self._index: Dict[Tuple[str, Any], Set[str]] = defaultdict(set)
        self._handlers: Dict[str, List[JobHandler]] = defaultdict(list)
        self._rotation: Dict[str, Any] = {}
        self._listeners: Dict[QueueEvent, List[EventListener]] = defaultdict(list)
        self._finished: Dict[JobState, int] = defaultdict(int)

    # ==================== PRODUCER SIDE ====================

    async def add(
        self,
        name: str,
        payload: Dict[str, Any],
        delay_ms: int,
        job_id: str
    ) -> Job:
        """
        Enqueue a job to run after `delay_ms` milliseconds

        A job id that is still pending returns the existing job instead of
        enqueueing a duplicate. Non-positive delays run as soon as possible.
        """
        self._prune_dispatched()
        existing = self._jobs.get(job_id)
        if existing and existing.state in PENDING_STATES:
            logger.info(f"Job {job_id} already queued on {self.name}, skipping duplicate")
            return existing

        delay_ms = int(delay_ms)
        now = self.clock()
        job = Job(
            id=job_id,
            name=name,
            payload=dict(payload),
            delay_ms=delay_ms,
            run_at=now + timedelta(milliseconds=max(delay_ms, 0)),
            state=JobState.DELAYED if delay_ms > 0 else JobState.WAITING,
            created_at=now,
        )
        self._track(job)

        try:
            await self.backend.schedule(self, job, max(delay_ms, 0))
        except Exception as e:
            self._untrack(job)
            self._emit(QueueEvent.ERROR, e, job)
            raise

        return job

    async def remove_matching(self, predicate: Callable[[Dict[str, Any]], bool]) -> int:
        """Remove every delayed/waiting job whose payload satisfies `predicate`"""
        self._prune_dispatched()
        candidates = [
            job for job in self._jobs.values()
            if job.state in PENDING_STATES and predicate(job.payload)
        ]
        return await self._remove(candidates)

    async def remove_by(self, field_name: str, value: Any) -> int:
        """Remove delayed/waiting jobs indexed under `field_name == value`"""
        self._prune_dispatched()
        job_ids = self._index.get((field_name, value), set())
        candidates = [
            self._jobs[job_id] for job_id in list(job_ids)
            if job_id in self._jobs and self._jobs[job_id].state in PENDING_STATES
        ]
        return await self._remove(candidates)

    async def _remove(self, jobs: List[Job]) -> int:
        for job in jobs:
            await self.backend.revoke(self, job)
            self._untrack(job)
        return len(jobs)

    async def empty(self) -> int:
        """Remove all pending jobs"""
        return await self._remove([j for j in self._jobs.values() if j.state in PENDING_STATES])

    # ==================== CONSUMER SIDE ====================

    def process(self, name: str, handler: JobHandler) -> None:
        """
        Register a consumer for jobs called `name`

        Every call adds another independent consumer; jobs are spread across
        consumers in turn.
        """
        self._handlers[name].append(handler)
        self._rotation[name] = itertools.cycle(list(self._handlers[name]))

    def has_consumer(self, name: str) -> bool:
        return bool(self._handlers.get(name))

    async def run(self, job: Job) -> Any:
        """
        Execute a job with a registered consumer

        Handler errors are retried with the queue's backoff while attempts
        remain; once exhausted the job is marked failed and a `failed` event
        is emitted. Errors never propagate to the caller.
        """
        if job.id not in self._jobs:
            # Delivered by a broker into a fresh process
            self._track(job)

        rotation = self._rotation.get(job.name)
        if rotation is None:
            error = LookupError(f"No consumer registered for job '{job.name}' on queue {self.name}")
            self._emit(QueueEvent.ERROR, error, job)
            return None

        handler = next(rotation)
        job.state = JobState.ACTIVE
        job.attempts_made += 1

        try:
            result = await handler(job)
        except Exception as e:
            job.failed_reason = str(e)
            if job.attempts_made < self.retry_policy.attempts:
                delay = self.retry_policy.backoff_ms(job.attempts_made)
                job.state = JobState.DELAYED
                job.run_at = self.clock() + timedelta(milliseconds=delay)
                logger.warning(
                    f"Job {job.id} on {self.name} failed attempt "
                    f"{job.attempts_made}/{self.retry_policy.attempts}, retrying in {delay}ms: {e}"
                )
                try:
                    await self.backend.schedule(self, job, delay)
                except Exception as schedule_error:
                    self._finish(job, JobState.FAILED)
                    self._emit(QueueEvent.ERROR, schedule_error, job)
                return None

            self._finish(job, JobState.FAILED)
            self._emit(QueueEvent.FAILED, job, e)
            return None

        job.result = result
        self._finish(job, JobState.COMPLETED)
        self._emit(QueueEvent.COMPLETED, job, result)
        return result

    # ==================== EVENTS ====================

    def on(self, event: str, listener: EventListener) -> None:
        """Subscribe to `completed`, `failed` or `error`"""
        self._listeners[QueueEvent(event)].append(listener)

    def _emit(self, event: QueueEvent, *args) -> None:
        for listener in self._listeners.get(event, []):
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Listener for {event.value} on {self.name} raised: {e}", exc_info=True)

    # ==================== INSPECTION ====================

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_jobs(self, states: Iterable[JobState] = PENDING_STATES) -> List[Job]:
        self._prune_dispatched()
        wanted = {JobState(s) for s in states}
        jobs = [job for job in self._jobs.values() if job.state in wanted]
        return sorted(jobs, key=lambda j: j.run_at)

    def get_counts(self) -> Dict[str, int]:
        self._prune_dispatched()
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        counts[JobState.COMPLETED.value] += self._finished[JobState.COMPLETED]
        counts[JobState.FAILED.value] += self._finished[JobState.FAILED]
        return counts

    # ==================== INDEX ====================

    def _track(self, job: Job) -> None:
        self._jobs[job.id] = job
        for field_name in self.index_fields:
            value = job.payload.get(field_name)
            if value is not None:
                self._index[(field_name, value)].add(job.id)

    def _untrack(self, job: Job) -> None:
        self._jobs.pop(job.id, None)
        for field_name in self.index_fields:
            key = (field_name, job.payload.get(field_name))
            ids = self._index.get(key)
            if ids is not None:
                ids.discard(job.id)
                if not ids:
                    del self._index[key]

    def _prune_dispatched(self) -> None:
        if self.backend.tracks_completion:
            return

        now = self.clock()
        for job in list(self._jobs.values()):
            if job.state not in PENDING_STATES:
                continue
            budget_ms = self.retry_policy.remaining_backoff_ms(job.attempts_made) + DISPATCH_GRACE_MS
            if job.run_at + timedelta(milliseconds=budget_ms) <= now:
                self._untrack(job)

    def _finish(self, job: Job, state: JobState) -> None:
        job.state = state
        self._finished[state] += 1
        self._untrack(job)
