from __future__ import annotations

import logging
import uuid
from typing import Protocol

from sqlalchemy.orm import Session

from orthoflow import events
from orthoflow.context import get_correlation_id
from orthoflow.core.celery_app import celery_app
from orthoflow.core.config import Settings
from orthoflow.workflow.models import NotificationIntent

logger = logging.getLogger("orthoflow.workflow.notifier")

TRANSITION_COMMITTED_EVENT = "workflow.transition.committed"


class Notifier(Protocol):
    backend: str

    def notify(
        self,
        session: Session,
        entity_id: uuid.UUID,
        transition_record_id: uuid.UUID,
        tags: list[str],
    ) -> None: ...


class EventBusNotifier:
    """Queues an outbox row and announces the transition on the in-process bus."""

    backend = "eventbus"

    def notify(
        self,
        session: Session,
        entity_id: uuid.UUID,
        transition_record_id: uuid.UUID,
        tags: list[str],
    ) -> None:
        intent = NotificationIntent(
            entity_id=entity_id,
            transition_record_id=transition_record_id,
            tags=list(tags),
            status="Queued",
        )
        session.add(intent)
        session.commit()

        events.publish(
            TRANSITION_COMMITTED_EVENT,
            {
                "entity_id": str(entity_id),
                "transition_record_id": str(transition_record_id),
                "notification_intent_id": str(intent.id),
                "tags": list(tags),
            },
        )


class CeleryNotifier:
    backend = "celery"

    def __init__(self, task_name: str) -> None:
        self.task_name = task_name

    def notify(
        self,
        session: Session,
        entity_id: uuid.UUID,
        transition_record_id: uuid.UUID,
        tags: list[str],
    ) -> None:
        celery_app.send_task(
            self.task_name,
            kwargs={
                "entity_id": str(entity_id),
                "transition_record_id": str(transition_record_id),
                "tags": list(tags),
                "correlation_id": get_correlation_id(),
            },
        )
        logger.info(
            "notification.enqueued",
            extra={"entity_id": str(entity_id), "transition_record_id": str(transition_record_id), "tags": list(tags)},
        )


def build_notifier(settings: Settings) -> Notifier:
    if settings.notifier_backend == "celery":
        return CeleryNotifier(settings.notification_task_name)
    if settings.notifier_backend != "eventbus":
        raise ValueError(f"unknown notifier backend '{settings.notifier_backend}'")
    return EventBusNotifier()
