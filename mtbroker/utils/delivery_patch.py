"""JSON patch generation for a trigger channel's delivery spec.

Only ``spec.delivery.retry`` and ``spec.delivery.deadLetterSink`` are owned by
the Broker controller, so the diff walks that fixed set of paths rather than
the whole object. Keys outside it are never touched, which keeps fields set by
other controllers intact.
"""

import json
from typing import Any

SPEC_PATH = "/spec"
DELIVERY_PATH = "/spec/delivery"
RETRY_PATH = f"{DELIVERY_PATH}/retry"
DLS_PATH = f"{DELIVERY_PATH}/deadLetterSink"
DLS_URI_PATH = f"{DLS_PATH}/uri"
DLS_REF_PATH = f"{DLS_PATH}/ref"

REF_FIELDS = ("apiVersion", "kind", "name", "namespace")


def _op(op: str, path: str, value: Any = None) -> dict[str, Any]:
    if op == "remove":
        return {"op": op, "path": path}
    return {"op": op, "path": path, "value": value}


def _field_ops(
    current: dict[str, Any], desired: dict[str, Any], key: str, path: str
) -> list[dict[str, Any]]:
    """Add/replace/remove a single scalar member."""
    old = current.get(key)
    new = desired.get(key)
    if old == new:
        return []
    if new is None:
        return [_op("remove", path)]
    if old is None:
        return [_op("add", path, new)]
    return [_op("replace", path, new)]


def _ref_ops(
    current: dict[str, Any] | None, desired: dict[str, Any] | None
) -> list[dict[str, Any]]:
    if current == desired:
        return []
    if not desired:
        return [_op("remove", DLS_REF_PATH)]
    if not current:
        return [_op("add", DLS_REF_PATH, desired)]
    ops: list[dict[str, Any]] = []
    for field in REF_FIELDS:
        ops.extend(_field_ops(current, desired, field, f"{DLS_REF_PATH}/{field}"))
    return ops


def _dead_letter_sink_ops(
    current: dict[str, Any] | None,
    desired: dict[str, Any] | None,
) -> list[dict[str, Any]]:
    if not current and not desired:
        return []
    if not desired:
        return [_op("remove", DLS_PATH)]
    if not current:
        return [_op("add", DLS_PATH, desired)]
    ops = _ref_ops(current.get("ref"), desired.get("ref"))
    ops.extend(_field_ops(current, desired, "uri", DLS_URI_PATH))
    return ops


def delivery_patch(
    current_spec: dict[str, Any] | None,
    desired_delivery: dict[str, Any] | None,
) -> list[dict[str, Any]]:
    """Compute the JSON patch bringing a channel's delivery in line.

    Args:
        current_spec: The channel's current ``spec`` (may be absent).
        desired_delivery: The delivery the Broker declares, or None.

    Returns:
        An ordered list of JSON patch operations; empty when converged.
    """
    if current_spec is None:
        if not desired_delivery:
            return []
        return [_op("add", SPEC_PATH, {"delivery": desired_delivery})]

    current = current_spec.get("delivery")
    if not current and not desired_delivery:
        return []
    if not desired_delivery:
        return [_op("remove", DELIVERY_PATH)]
    if not current:
        return [_op("add", DELIVERY_PATH, desired_delivery)]

    ops = _field_ops(current, desired_delivery, "retry", RETRY_PATH)
    ops.extend(
        _dead_letter_sink_ops(current.get("deadLetterSink"), desired_delivery.get("deadLetterSink"))
    )
    return ops


def encode_patch(operations: list[dict[str, Any]]) -> bytes:
    """Serialize patch operations the way they go over the wire."""
    return json.dumps(operations, separators=(",", ":")).encode()
