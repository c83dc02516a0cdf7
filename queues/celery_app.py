"""
Celery application for the reminder and escalation workers

Start a worker with:
    celery -A queues.celery_app worker --loglevel=INFO
and the missed-dose sweep with:
    celery -A queues.celery_app beat
"""

import asyncio
import logging

from celery import Celery, signals

from config import settings


logger = logging.getLogger(__name__)


celery_app = Celery(
    "mednudge",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    timezone="UTC",
)

# Periodic sweep for occurrences that never got a response
celery_app.conf.beat_schedule = {
    "sweep-missed-occurrences": {
        "task": "mednudge.sweep_missed",
        "schedule": settings.MISSED_SWEEP_INTERVAL_SECONDS,
    },
}


@signals.worker_process_init.connect
def _configure_worker_logging(**kwargs):
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format=settings.LOG_FORMAT
    )


def _worker_container():
    """Container for this worker process, with consumers registered once"""
    from services.container import get_container
    from queues.workers import start_workers

    container = get_container()
    if not container.reminder_queue.queue.has_consumer("send-reminder"):
        start_workers(container)
    return container


@celery_app.task(name="mednudge.run_job")
def run_job(queue_name: str, message: dict):
    """Hand a delivered job to its queue, which applies the retry policy"""
    from queues.job_queue import Job

    container = _worker_container()
    queue = container.queue_by_name(queue_name)
    return asyncio.run(queue.run(Job.from_message(message)))


@celery_app.task(name="mednudge.sweep_missed")
def sweep_missed() -> int:
    """Mark silent, fully-escalated occurrences as missed"""
    container = _worker_container()
    return asyncio.run(container.escalation_service.expire_unanswered())
