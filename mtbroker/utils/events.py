"""Kubernetes event recording.

Events are an audit trail for operators only; nothing reads them back.
"""

import logging
from typing import Any, Protocol

import kopf

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# kopf truncates longer messages anyway; keep ours readable.
MAX_MESSAGE_LENGTH = 1024


class EventRecorder(Protocol):
    """Records an event against an object."""

    def record(self, body: dict[str, Any], type: str, reason: str, message: str) -> None: ...


class KopfEventRecorder:
    """Posts events through kopf's event queue."""

    def record(self, body: dict[str, Any], type: str, reason: str, message: str) -> None:
        try:
            kopf.event(body, type=type, reason=reason, message=message[:MAX_MESSAGE_LENGTH])
        except LookupError:
            # Outside a running operator there is no event queue to post to.
            logger.warning(f"Dropping event {reason}: {message}")
