from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from orthoflow.api.routes import router as api_router
from orthoflow.core.config import get_settings
from orthoflow.core.events import InternalEvent, event_bus
from orthoflow.logging import configure_logging
from orthoflow.middleware.correlation_id import CorrelationIdMiddleware
from orthoflow.middleware.rate_limit import TransitionRateLimitMiddleware
from orthoflow.middleware.request_logging import RequestLoggingMiddleware
from orthoflow.otel import get_fastapi_server_request_hook, setup_otel
from orthoflow.workflow.notifier import TRANSITION_COMMITTED_EVENT
from orthoflow.workflow.service import workflow_service


configure_logging()
logger = logging.getLogger("orthoflow.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_transition_committed(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    logger.info(
        "notification.queued",
        extra={
            "entity_id": payload.get("entity_id"),
            "transition_record_id": payload.get("transition_record_id"),
            "tags": payload.get("tags"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe(TRANSITION_COMMITTED_EVENT, _on_transition_committed)
    workflows = [definition.entity_type for definition in workflow_service.rule_table.definitions()]
    event_bus.publish("system.started", {"service": "api", "workflows": workflows})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(TransitionRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("orthoflow-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
