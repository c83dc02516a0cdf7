"""
Queue workers
Consumers that hand due reminder and escalation jobs to their controllers
"""

import logging
from datetime import datetime
from typing import Any, Dict

from queues.escalation_queue import EscalationQueue, PROCESS_ESCALATION
from queues.job_queue import Job
from queues.reminder_queue import ReminderQueue, SEND_REMINDER


logger = logging.getLogger(__name__)


def start_reminder_worker(reminder_queue: ReminderQueue, reminder_controller) -> None:
    """
    Register a consumer for reminder jobs

    Each call adds another independent consumer.
    """

    async def process_reminder(job: Job) -> Dict[str, Any]:
        occurrence_id = job.payload["occurrence_id"]
        is_snoozed = bool(job.payload.get("is_snoozed"))
        scheduled_time = job.payload.get("scheduled_time")
        logger.info(f"Processing reminder job (job_id={job.id}, occurrence_id={occurrence_id}, is_snoozed={is_snoozed})")

        try:
            await reminder_controller.send_reminder(
                occurrence_id,
                is_snooze_refire=is_snoozed,
                scheduled_time=datetime.fromisoformat(scheduled_time) if scheduled_time else None
            )
        except Exception as e:
            logger.error(
                f"Reminder job error (job_id={job.id}, occurrence_id={occurrence_id}, is_snoozed={is_snoozed}): {e}",
                exc_info=True
            )
            raise

        return {"success": True, "occurrence_id": occurrence_id}

    reminder_queue.queue.process(SEND_REMINDER, process_reminder)
    logger.info("Reminder worker started")


def start_escalation_worker(escalation_queue: EscalationQueue, escalation_controller) -> None:
    """
    Register a consumer for escalation jobs

    Each call adds another independent consumer.
    """

    async def process_escalation(job: Job) -> Dict[str, Any]:
        occurrence_id = job.payload["occurrence_id"]
        level = job.payload["level"]
        logger.info(f"Processing escalation job (job_id={job.id}, occurrence_id={occurrence_id}, level={level})")

        try:
            await escalation_controller.handle_escalation(occurrence_id, level)
        except Exception as e:
            logger.error(
                f"Escalation job error (job_id={job.id}, occurrence_id={occurrence_id}, level={level}): {e}",
                exc_info=True
            )
            raise

        return {"success": True, "occurrence_id": occurrence_id, "level": level}

    escalation_queue.queue.process(PROCESS_ESCALATION, process_escalation)
    logger.info("Escalation worker started")


def start_workers(container) -> None:
    """Register one reminder and one escalation consumer on a container's queues"""
    start_reminder_worker(container.reminder_queue, container.reminder_controller)
    start_escalation_worker(container.escalation_queue, container.escalation_controller)
    logger.info("All workers started")
