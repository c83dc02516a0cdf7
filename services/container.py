"""
Service Container
Explicit wiring of queues, collaborators, services and controllers
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import SessionLocal
from queues.backends import CeleryJobBackend, InMemoryJobBackend
from queues.escalation_queue import EscalationQueue
from queues.job_queue import DelayedJobQueue, JobBackend
from queues.reminder_queue import ReminderQueue
from services.escalation_service import EscalationService
from services.schedule_service import ScheduleService
from actions.escalation_controller import EscalationController
from actions.reminder_controller import ReminderController
from tools.clock import Clock, utcnow
from tools.notification_service import (
    ClinicNotifier,
    HttpNotificationTransport,
    HttpSpeechSynthesizer,
    NotificationTransport,
    SpeechSynthesizer,
    WebhookClinicNotifier,
)


logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything one process needs to schedule and escalate reminders"""
    settings: Settings
    backend: JobBackend
    reminder_queue: ReminderQueue
    escalation_queue: EscalationQueue
    schedule_service: ScheduleService
    escalation_service: EscalationService
    reminder_controller: ReminderController
    escalation_controller: EscalationController

    def queue_by_name(self, name: str) -> DelayedJobQueue:
        for queue in (self.reminder_queue.queue, self.escalation_queue.queue):
            if queue.name == name:
                return queue
        raise KeyError(f"Unknown queue: {name}")

    def get_queue_stats(self) -> dict:
        return {
            "reminders": self.reminder_queue.get_queue_stats(),
            "escalations": self.escalation_queue.get_queue_stats(),
        }


def build_backend(settings: Settings, clock: Clock = utcnow) -> JobBackend:
    if settings.QUEUE_BACKEND == "memory":
        return InMemoryJobBackend(clock)
    if settings.QUEUE_BACKEND == "celery":
        return CeleryJobBackend()
    raise ValueError(f"Unknown QUEUE_BACKEND: {settings.QUEUE_BACKEND}")


def build_container(
    settings: Optional[Settings] = None,
    backend: Optional[JobBackend] = None,
    transport: Optional[NotificationTransport] = None,
    synthesizer: Optional[SpeechSynthesizer] = None,
    clinic_notifier: Optional[ClinicNotifier] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    clock: Clock = utcnow
) -> ServiceContainer:
    """
    Construct a fully wired container

    Any collaborator left as None is built from settings.
    """
    settings = settings or get_settings()
    backend = backend or build_backend(settings, clock)
    transport = transport or HttpNotificationTransport(settings)
    synthesizer = synthesizer or HttpSpeechSynthesizer(settings)
    clinic_notifier = clinic_notifier or WebhookClinicNotifier(settings)

    reminder_queue = ReminderQueue(backend, clock)
    escalation_queue = EscalationQueue(backend, clock)

    escalation_service = EscalationService(escalation_queue, session_factory, clock)
    schedule_service = ScheduleService(reminder_queue, escalation_service, session_factory, clock)

    reminder_controller = ReminderController(
        transport, synthesizer, schedule_service, escalation_service, session_factory, clock
    )
    escalation_controller = EscalationController(
        transport, synthesizer, clinic_notifier, escalation_service, session_factory, clock, settings
    )

    logger.info(f"Service container built (queue_backend={type(backend).__name__})")
    return ServiceContainer(
        settings=settings,
        backend=backend,
        reminder_queue=reminder_queue,
        escalation_queue=escalation_queue,
        schedule_service=schedule_service,
        escalation_service=escalation_service,
        reminder_controller=reminder_controller,
        escalation_controller=escalation_controller,
    )


@lru_cache()
def get_container() -> ServiceContainer:
    """Default container for the API process and Celery workers"""
    return build_container()
