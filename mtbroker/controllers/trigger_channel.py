"""Trigger channel reconciliation.

Each Broker owns exactly one channel, named ``<broker>-kne-trigger``, whose
kind comes from the Broker's channel template. This module makes sure that
channel exists and that its ``spec.delivery`` mirrors the Broker's.
"""

import copy
import logging
from typing import Any

from kubernetes.client.exceptions import ApiException

from mtbroker.errors import ChannelFailure, api_error_message
from mtbroker.models.crds import BROKER_API_VERSION, BROKER_KIND, BrokerSpec, ChannelTemplateSpec
from mtbroker.utils.delivery_patch import delivery_patch, encode_patch
from mtbroker.utils.metrics import CHANNEL_WRITES

logger = logging.getLogger(__name__)

TRIGGER_CHANNEL_SUFFIX = "kne-trigger"

BROKER_LABEL = "eventing.knative.dev/broker"
BROKER_EVERYTHING_LABEL = "eventing.knative.dev/brokerEverything"
SCOPE_ANNOTATION = "eventing.knative.dev/scope"
SCOPE_CLUSTER = "cluster"


def trigger_channel_name(broker_name: str) -> str:
    return f"{broker_name}-{TRIGGER_CHANNEL_SUFFIX}"


def trigger_channel_labels(broker_name: str) -> dict[str, str]:
    return {
        BROKER_LABEL: broker_name,
        BROKER_EVERYTHING_LABEL: "true",
    }


def broker_owner_reference(broker: dict[str, Any]) -> dict[str, Any]:
    """Controller owner reference so deleting the Broker collects the channel."""
    metadata = broker.get("metadata", {})
    return {
        "apiVersion": broker.get("apiVersion") or BROKER_API_VERSION,
        "kind": broker.get("kind") or BROKER_KIND,
        "name": metadata.get("name"),
        "uid": metadata.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def desired_delivery(spec: BrokerSpec) -> dict[str, Any] | None:
    """The ``spec.delivery`` the trigger channel should carry.

    Returns:
        ``{"retry": N}`` when retries are requested, plus ``deadLetterSink``
        when one is declared; None when neither is.
    """
    delivery: dict[str, Any] = {}
    if spec.delivery is None:
        return None
    if spec.delivery.retry:
        delivery["retry"] = spec.delivery.retry
    if spec.delivery.deadLetterSink is not None:
        delivery["deadLetterSink"] = spec.delivery.deadLetterSink.model_dump(exclude_none=True)
    return delivery or None


def make_trigger_channel(
    broker: dict[str, Any],
    template: ChannelTemplateSpec,
    delivery: dict[str, Any] | None,
) -> dict[str, Any]:
    """Build a new trigger channel object from the template."""
    metadata = broker["metadata"]
    channel: dict[str, Any] = {
        "apiVersion": template.apiVersion,
        "kind": template.kind,
        "metadata": {
            "name": trigger_channel_name(metadata["name"]),
            "namespace": metadata["namespace"],
            "ownerReferences": [broker_owner_reference(broker)],
            "labels": trigger_channel_labels(metadata["name"]),
            "annotations": {SCOPE_ANNOTATION: SCOPE_CLUSTER},
        },
    }

    spec = copy.deepcopy(template.spec) if template.spec else {}
    if delivery:
        spec["delivery"] = copy.deepcopy(delivery)
    channel["spec"] = spec
    return channel


def _get_or_create(
    k8s: Any,
    broker: dict[str, Any],
    template: ChannelTemplateSpec,
    delivery: dict[str, Any] | None,
) -> tuple[dict[str, Any], bool]:
    """Return the channel and whether it was created in this call."""
    namespace = broker["metadata"]["namespace"]
    name = trigger_channel_name(broker["metadata"]["name"])

    try:
        existing = k8s.get_object(template.apiVersion, template.kind, name, namespace)
    except ApiException as e:
        raise ChannelFailure(
            f"failed to get channel {namespace}/{name}: {api_error_message(e)}"
        ) from e
    if existing is not None:
        return existing, False

    channel = make_trigger_channel(broker, template, delivery)
    logger.info(f"Creating trigger channel {namespace}/{name} ({template.kind})")
    try:
        created = k8s.create_object(channel)
    except ApiException as e:
        if e.status != 409:
            raise ChannelFailure(
                f"failed to create channel {namespace}/{name}: {api_error_message(e)}"
            ) from e
        # Lost a race with another writer; take whatever is there now.
        logger.info(f"Trigger channel {namespace}/{name} already exists")
        try:
            existing = k8s.get_object(template.apiVersion, template.kind, name, namespace)
        except ApiException as err:
            raise ChannelFailure(
                f"failed to get channel {namespace}/{name}: {api_error_message(err)}"
            ) from err
        if existing is None:
            raise ChannelFailure(
                f"failed to create channel {namespace}/{name}: {api_error_message(e)}"
            ) from e
        return existing, False

    CHANNEL_WRITES.labels(operation="create").inc()
    return created, True


def reconcile_trigger_channel(
    k8s: Any,
    broker: dict[str, Any],
    template: ChannelTemplateSpec,
    delivery: dict[str, Any] | None,
) -> dict[str, Any]:
    """Ensure the Broker's trigger channel exists with the desired delivery.

    Args:
        k8s: The Kubernetes client.
        broker: The Broker object.
        template: The resolved channel template.
        delivery: The desired ``spec.delivery`` (see ``desired_delivery``).

    Returns:
        The channel as last read or written.

    Raises:
        ChannelFailure: A get, create or patch call failed.
    """
    channel, created = _get_or_create(k8s, broker, template, delivery)
    if created:
        return channel

    operations = delivery_patch(channel.get("spec"), delivery)
    if not operations:
        return channel

    namespace = broker["metadata"]["namespace"]
    name = trigger_channel_name(broker["metadata"]["name"])
    logger.info(f"Patching trigger channel {namespace}/{name}: {encode_patch(operations).decode()}")
    try:
        patched = k8s.patch_object(template.apiVersion, template.kind, name, namespace, operations)
    except ApiException as e:
        raise ChannelFailure(
            f"failed to patch channel {namespace}/{name}: {api_error_message(e)}"
        ) from e

    CHANNEL_WRITES.labels(operation="patch").inc()
    return patched
