import logging
from typing import Any

from celery import Celery

from orthoflow.context import correlation_scope
from orthoflow.core.config import get_settings

settings = get_settings()
logger = logging.getLogger("orthoflow.tasks")

celery_app = Celery("orthoflow_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.task_default_queue = "workflow-notifications"


@celery_app.task(name="orthoflow.tasks.deliver_transition_notification")
def deliver_transition_notification(
    entity_id: str,
    transition_record_id: str,
    tags: list[str],
    correlation_id: str | None = None,
) -> dict[str, Any]:
    # Delivery channels (email, SMS, task creation) live in the notification service.
    with correlation_scope(correlation_id):
        logger.info(
            "notification.delivered",
            extra={"entity_id": entity_id, "transition_record_id": transition_record_id, "tags": tags},
        )
    return {"entity_id": entity_id, "transition_record_id": transition_record_id, "tags": tags}
