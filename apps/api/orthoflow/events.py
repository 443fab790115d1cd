from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from orthoflow.context import get_correlation_id
from orthoflow.core.events import event_bus

RECENT_EVENTS_LIMIT = 1000

published_events: deque[dict[str, Any]] = deque(maxlen=RECENT_EVENTS_LIMIT)


def publish(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Wrap ``payload`` in an envelope and fan it out on the in-process bus.

    The most recent envelopes are kept in ``published_events`` (oldest dropped
    first) so callers and tests can inspect what left the service.
    """
    envelope: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "correlation_id": get_correlation_id(),
        **payload,
    }
    published_events.append(envelope)
    event_bus.publish(event_type, envelope)
    return envelope
