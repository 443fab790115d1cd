from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from orthoflow.metrics import observe_http_request, resolve_http_path_label

logger = logging.getLogger("orthoflow.request")


def _finish(request: Request, status_code: int, started: float, *, failed: bool = False) -> None:
    elapsed = time.perf_counter() - started
    # The route template is only known after routing, so the label is resolved here.
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)

    entity_type = (request.scope.get("path_params") or {}).get("entity_type")
    fields = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
        "entity_type": str(entity_type) if entity_type is not None else None,
    }
    if failed:
        logger.error("http.error", exc_info=True, extra=fields)
    elif status_code >= 500:
        logger.warning("http.request", extra=fields)
    else:
        logger.info("http.request", extra=fields)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _finish(request, 500, started, failed=True)
            raise
        _finish(request, response.status_code, started)
        return response
