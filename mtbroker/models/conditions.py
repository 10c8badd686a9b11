"""Broker status conditions.

``Ready`` is never set directly: it is derived from the dependent conditions
every time one of them changes.
"""

from datetime import UTC, datetime
from typing import Any

CONDITION_READY = "Ready"
CONDITION_ADDRESSABLE = "Addressable"
CONDITION_INGRESS = "IngressReady"
CONDITION_FILTER = "FilterReady"
CONDITION_TRIGGER_CHANNEL = "TriggerChannelReady"
CONDITION_DEAD_LETTER_SINK = "DeadLetterSinkResolved"

BROKER_DEPENDENT_CONDITIONS = (
    CONDITION_INGRESS,
    CONDITION_TRIGGER_CHANNEL,
    CONDITION_FILTER,
    CONDITION_ADDRESSABLE,
    CONDITION_DEAD_LETTER_SINK,
)

STATUS_TRUE = "True"
STATUS_FALSE = "False"
STATUS_UNKNOWN = "Unknown"


def _now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _create_condition(
    condition_type: str,
    status: str,
    reason: str,
    message: str,
) -> dict[str, Any]:
    """Create a Kubernetes-style condition dict.

    Args:
        condition_type: The condition type (e.g., "Ready").
        status: The condition status ("True", "False", "Unknown").
        reason: The reason code.
        message: Human-readable message.

    Returns:
        A condition dict.
    """
    return {
        "type": condition_type,
        "status": status,
        "lastTransitionTime": _now(),
        "reason": reason,
        "message": message,
    }


class ConditionSet:
    """Mutable view over a status ``conditions`` list.

    Conditions are kept sorted by type so two passes that reach the same
    state produce identical lists.
    """

    def __init__(
        self,
        conditions: list[dict[str, Any]] | None = None,
        dependents: tuple[str, ...] = BROKER_DEPENDENT_CONDITIONS,
    ) -> None:
        self.dependents = dependents
        self._conditions: dict[str, dict[str, Any]] = {
            c["type"]: dict(c) for c in conditions or [] if c.get("type")
        }

    def initialize(self) -> None:
        """Add every missing dependent (and Ready) as Unknown."""
        for condition_type in (CONDITION_READY, *self.dependents):
            if condition_type not in self._conditions:
                self._conditions[condition_type] = _create_condition(
                    condition_type, STATUS_UNKNOWN, "", ""
                )
        self._recompute_ready()

    def get(self, condition_type: str) -> dict[str, Any] | None:
        return self._conditions.get(condition_type)

    def is_true(self, condition_type: str) -> bool:
        condition = self.get(condition_type)
        return condition is not None and condition["status"] == STATUS_TRUE

    def mark_true(self, condition_type: str, reason: str = "", message: str = "") -> None:
        self._set(condition_type, STATUS_TRUE, reason, message)

    def mark_false(self, condition_type: str, reason: str, message: str) -> None:
        self._set(condition_type, STATUS_FALSE, reason, message)

    def mark_unknown(self, condition_type: str, reason: str, message: str) -> None:
        self._set(condition_type, STATUS_UNKNOWN, reason, message)

    def to_list(self) -> list[dict[str, Any]]:
        return [self._conditions[t] for t in sorted(self._conditions)]

    def _set(self, condition_type: str, status: str, reason: str, message: str) -> None:
        if condition_type == CONDITION_READY:
            raise ValueError("Ready is derived from the dependent conditions")
        self._put(condition_type, status, reason, message)
        self._recompute_ready()

    def _put(self, condition_type: str, status: str, reason: str, message: str) -> None:
        existing = self._conditions.get(condition_type)
        if (
            existing is not None
            and existing.get("status") == status
            and (existing.get("reason") or "") == reason
            and (existing.get("message") or "") == message
        ):
            return
        self._conditions[condition_type] = _create_condition(
            condition_type, status, reason, message
        )

    def _recompute_ready(self) -> None:
        dependents = [self._conditions.get(t) for t in self.dependents]
        for status in (STATUS_FALSE, STATUS_UNKNOWN):
            for condition in dependents:
                if condition is None or condition["status"] != status:
                    continue
                self._put(
                    CONDITION_READY,
                    status,
                    condition.get("reason") or "",
                    condition.get("message") or "",
                )
                return
            if status == STATUS_UNKNOWN and any(c is None for c in dependents):
                self._put(CONDITION_READY, STATUS_UNKNOWN, "", "")
                return
        self._put(CONDITION_READY, STATUS_TRUE, "", "")
