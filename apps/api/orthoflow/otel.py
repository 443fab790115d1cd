from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from orthoflow.core.config import get_settings

_provider: TracerProvider | None = None
_console_attached = False


def _tracer_provider(service_name: str) -> TracerProvider:
    """Install the process-wide provider once; later calls reuse it."""
    global _provider
    if _provider is None:
        settings = get_settings()
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _console_attached
    if not enable:
        return None

    provider = _tracer_provider(service_name)
    if get_settings().otel_console_exporter and not _console_attached:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        _console_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "orthoflow-api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def _entity_type_from_path(path: str) -> str | None:
    parts = [part for part in path.split("/") if part]
    if len(parts) >= 2 and parts[0] == "entities":
        return parts[1]
    return None


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        for name, value in scope.get("headers", []):
            if name == b"x-correlation-id" and value:
                span.set_attribute("correlation_id", value.decode("utf-8"))
                break
        entity_type = _entity_type_from_path(scope.get("path", ""))
        if entity_type is not None:
            span.set_attribute("entity_type", entity_type)

    return server_request_hook
