from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from orthoflow.core.auth import ANONYMOUS_SUBJECT, bearer_token, decode_claims
from orthoflow.core.config import get_settings
from orthoflow.workflow.api import error_response

WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class TransitionThrottle:
    """Token buckets keyed by (user, entity type), refilled continuously over the window."""

    def __init__(self, window_seconds: int = WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._lock = threading.Lock()

    def acquire(self, user_id: str, entity_type: str, capacity: int) -> int | None:
        """Take one token. Returns None when allowed, otherwise seconds until a token is free."""
        if capacity <= 0:
            return self.window_seconds

        per_second = capacity / self.window_seconds
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault((user_id, entity_type), _Bucket(float(capacity), now))
            bucket.tokens = min(float(capacity), bucket.tokens + (now - bucket.updated_at) * per_second)
            bucket.updated_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return None
            return max(1, math.ceil((1.0 - bucket.tokens) / per_second))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_throttle = TransitionThrottle()


def transition_entity_type(method: str, path: str) -> str | None:
    """Entity type of a ``POST /entities/{type}/{id}/transitions`` call, else None."""
    if method.upper() != "POST":
        return None
    parts = path.strip("/").split("/")
    if len(parts) == 4 and parts[0] == "entities" and parts[3] == "transitions":
        return parts[1]
    return None


def _caller_id(request: Request) -> str:
    claims = decode_claims(bearer_token(request)) or {}
    subject = claims.get("sub")
    return ANONYMOUS_SUBJECT if subject is None else str(subject)


class TransitionRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        entity_type = transition_entity_type(request.method, request.url.path)
        if settings.rate_limit_disabled or entity_type is None:
            return await call_next(request)

        retry_after = _throttle.acquire(_caller_id(request), entity_type, settings.rate_limit_transitions_per_minute)
        if retry_after is None:
            return await call_next(request)

        response = error_response(
            request,
            status_code=429,
            code="RATE_LIMITED",
            message="Too many requests",
            details={"entity_type": entity_type, "retry_after": retry_after},
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    _throttle.clear()
