"""Broker controller.

Handles reconciliation of Broker resources. Responsible for:
- Resolving the channel template referenced by ``spec.config``
- Creating the trigger channel and keeping its delivery spec in sync
- Resolving the trigger channel and dead-letter sink addresses
- Checking the shared filter/ingress endpoints
- Writing the derived status back, only when it changed

Each pass recomputes everything from the cluster; nothing is carried over
between passes. Every failure ends up as a status condition, a warning
event and a requeue, never as an exception out of ``reconcile``.
"""

import copy
import logging
from datetime import UTC, datetime
from typing import Any

import kopf
from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, Field, ValidationError

from mtbroker.config import ControllerSettings, get_settings
from mtbroker.controllers.broker_status import (
    BrokerObservations,
    DeadLetterSinkNotConfigured,
    DeadLetterSinkOutcome,
    DeadLetterSinkResolved,
    EndpointsOutcome,
    EndpointsReady,
    TriggerChannelInfo,
    aggregate_status,
)
from mtbroker.controllers.trigger_channel import (
    desired_delivery,
    reconcile_trigger_channel,
    trigger_channel_name,
)
from mtbroker.errors import (
    AddressNotFound,
    ChannelFailure,
    InvalidBrokerSpec,
    InvalidDestination,
    InvalidKey,
    NoAddress,
    ReconcileError,
    ServiceFailure,
    StatusUpdateFailure,
    TemplateError,
    api_error_message,
)
from mtbroker.models.crds import (
    BROKER_CLASS_ANNOTATION,
    BROKER_GROUP,
    BROKER_PLURAL,
    BROKER_VERSION,
    BrokerSpec,
)
from mtbroker.utils.addressable import resolve_destination, resolve_object_url
from mtbroker.utils.channel_template import resolve_channel_template
from mtbroker.utils.events import EVENT_TYPE_WARNING, EventRecorder, KopfEventRecorder
from mtbroker.utils.k8s_client import get_k8s_client
from mtbroker.utils.metrics import RECONCILIATION_DURATION, RECONCILIATION_TOTAL, STATUS_UPDATES

logger = logging.getLogger(__name__)

BROKER_ROLE_LABEL = "eventing.knative.dev/brokerRole"
FILTER_LABELS = {BROKER_ROLE_LABEL: "filter"}
INGRESS_LABELS = {BROKER_ROLE_LABEL: "ingress"}

INTERNAL_ERROR_REASON = "InternalError"
UPDATE_FAILED_REASON = "UpdateFailed"


class ReconcileResult(BaseModel):
    """Verdict of one reconcile pass, handed back to the scheduler."""

    key: str = Field(..., description="The namespace/name key that was reconciled")
    requeue: bool = Field(default=False, description="Whether the key should be retried")
    reason: str | None = Field(default=None, description="Reason of the failure, if any")
    message: str = Field(default="", description="Human-readable outcome")
    status_updated: bool = Field(default=False, description="Whether status was written")


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` work key.

    Raises:
        InvalidKey: The key does not have exactly two non-empty segments.
    """
    parts = key.split("/")
    if len(parts) != 2 or not all(parts):
        raise InvalidKey(f"unexpected key format: {key!r}")
    return parts[0], parts[1]


def _count_addresses(endpoints: list[dict[str, Any]]) -> int:
    return sum(
        len(subset.get("addresses") or [])
        for item in endpoints
        for subset in item.get("subsets") or []
    )


class BrokerReconciler:
    """Level-triggered reconciler for a single Broker key."""

    def __init__(
        self,
        k8s: Any = None,
        recorder: EventRecorder | None = None,
        settings: ControllerSettings | None = None,
    ) -> None:
        self.k8s = k8s if k8s is not None else get_k8s_client()
        self.recorder = recorder if recorder is not None else KopfEventRecorder()
        self.settings = settings if settings is not None else get_settings()

    def reconcile(self, key: str) -> ReconcileResult:
        """Run one reconcile pass for the Broker behind ``key``."""
        try:
            namespace, name = split_key(key)
        except InvalidKey as e:
            # Retrying cannot fix a malformed key.
            logger.error(f"Dropping work key: {e.message}")
            return ReconcileResult(key=key, reason=e.reason, message=e.message)

        try:
            broker = self.k8s.get_broker(name, namespace)
        except ApiException as e:
            message = f"failed to get Broker {key}: {api_error_message(e)}"
            logger.warning(message)
            return ReconcileResult(
                key=key, requeue=True, reason=INTERNAL_ERROR_REASON, message=message
            )

        if broker is None:
            logger.info(f"Broker {key} no longer exists")
            return ReconcileResult(key=key, message="Broker not found")

        if broker.get("metadata", {}).get("deletionTimestamp"):
            logger.info(f"Broker {key} is being deleted")
            return ReconcileResult(key=key, message="Broker is being deleted")

        try:
            spec = BrokerSpec(**(broker.get("spec") or {}))
        except ValidationError as e:
            err = InvalidBrokerSpec(f"invalid Broker spec: {e}")
            self.recorder.record(
                broker, EVENT_TYPE_WARNING, INTERNAL_ERROR_REASON, err.event_message
            )
            return ReconcileResult(key=key, requeue=True, reason=err.reason, message=err.message)

        observations = self._observe(broker, spec)
        error = observations.first_error()

        previous_status = broker.get("status") or {}
        new_status = aggregate_status(
            previous_status,
            observations,
            namespace=namespace,
            name=name,
            generation=broker["metadata"].get("generation"),
            settings=self.settings,
        )

        status_updated = False
        update_error: StatusUpdateFailure | None = None
        if new_status != previous_status:
            try:
                self._update_status(broker, new_status)
                status_updated = True
            except ApiException as e:
                update_error = StatusUpdateFailure(
                    f'Failed to update status for "{name}": {api_error_message(e)}'
                )

        if error is not None:
            logger.warning(f"Broker {key}: {error.reason}: {error.message}")
            if self._should_emit_event(error, observations):
                self.recorder.record(
                    broker, EVENT_TYPE_WARNING, INTERNAL_ERROR_REASON, error.event_message
                )
        if update_error is not None:
            logger.warning(f"Broker {key}: {update_error.message}")
            self.recorder.record(
                broker, EVENT_TYPE_WARNING, UPDATE_FAILED_REASON, update_error.event_message
            )

        failure = error or update_error
        if failure is None:
            return ReconcileResult(
                key=key, message="Broker reconciled", status_updated=status_updated
            )
        return ReconcileResult(
            key=key,
            requeue=failure.retryable,
            reason=failure.reason,
            message=failure.message,
            status_updated=status_updated,
        )

    def _observe(self, broker: dict[str, Any], spec: BrokerSpec) -> BrokerObservations:
        """Run the pipeline, stopping at the first step that blocks the rest."""
        observations = BrokerObservations()
        namespace = broker["metadata"]["namespace"]
        name = broker["metadata"]["name"]

        try:
            template = resolve_channel_template(spec.config, namespace, self.k8s)
        except TemplateError as e:
            observations.channel = e
            return observations

        try:
            channel = reconcile_trigger_channel(self.k8s, broker, template, desired_delivery(spec))
            address = resolve_object_url(channel)
        except (ChannelFailure, NoAddress) as e:
            observations.channel = e
            return observations

        observations.channel = TriggerChannelInfo(
            api_version=template.apiVersion,
            kind=template.kind,
            name=trigger_channel_name(name),
            address=address,
        )

        observations.dead_letter_sink = self._observe_dead_letter_sink(spec, namespace)

        observations.filter = self._observe_endpoints(
            self.settings.filter_service_name, FILTER_LABELS
        )
        if isinstance(observations.filter, ReconcileError):
            return observations
        observations.ingress = self._observe_endpoints(
            self.settings.ingress_service_name, INGRESS_LABELS
        )
        return observations

    def _observe_dead_letter_sink(self, spec: BrokerSpec, namespace: str) -> DeadLetterSinkOutcome:
        sink = spec.delivery.deadLetterSink if spec.delivery else None
        if sink is None:
            return DeadLetterSinkNotConfigured()
        try:
            return DeadLetterSinkResolved(
                uri=resolve_destination(sink, namespace, self.k8s, self.settings)
            )
        except (AddressNotFound, NoAddress, InvalidDestination) as e:
            return e

    def _observe_endpoints(self, service_name: str, labels: dict[str, str]) -> EndpointsOutcome:
        try:
            endpoints = self.k8s.list_endpoints(
                self.settings.system_namespace, {"matchLabels": labels}
            )
        except ApiException as e:
            return ServiceFailure(
                f'failed to list endpoints "{service_name}": {api_error_message(e)}'
            )
        count = _count_addresses(endpoints)
        if count == 0:
            return ServiceFailure(f'endpoints "{service_name}" not found')
        return EndpointsReady(service_name=service_name, address_count=count)

    def _should_emit_event(self, error: ReconcileError, observations: BrokerObservations) -> bool:
        # A trigger channel without an address is an expected wait state.
        if error is observations.channel and isinstance(error, (NoAddress, AddressNotFound)):
            return False
        return error.emits_event

    def _update_status(self, broker: dict[str, Any], status: dict[str, Any]) -> None:
        body = copy.deepcopy(broker)
        body["status"] = status
        try:
            self.k8s.update_broker_status(body)
        except ApiException:
            STATUS_UPDATES.labels(result="error").inc()
            raise
        STATUS_UPDATES.labels(result="success").inc()


# Module-level reconciler instance (lazy initialization)
_reconciler: BrokerReconciler | None = None


def get_reconciler() -> BrokerReconciler:
    """Get or create the singleton reconciler."""
    global _reconciler  # noqa: PLW0603
    if _reconciler is None:
        _reconciler = BrokerReconciler()
    return _reconciler


_BROKER_CLASS_FILTER = {BROKER_CLASS_ANNOTATION: get_settings().broker_class}


def _run_reconcile(name: str, namespace: str, retry: int, logger: kopf.Logger) -> None:
    """Run one reconcile pass and turn a requeue verdict into a kopf retry."""
    with RECONCILIATION_DURATION.labels(controller="broker").time():
        result = get_reconciler().reconcile(f"{namespace}/{name}")

    if result.requeue:
        RECONCILIATION_TOTAL.labels(controller="broker", result="error").inc()
        raise kopf.TemporaryError(
            f"{result.reason}: {result.message}",
            delay=get_settings().requeue_delay(retry),
        )
    RECONCILIATION_TOTAL.labels(controller="broker", result="success").inc()
    logger.info(f"Broker {namespace}/{name}: {result.message}")


@kopf.on.resume(BROKER_GROUP, BROKER_VERSION, BROKER_PLURAL, annotations=_BROKER_CLASS_FILTER)
@kopf.on.create(BROKER_GROUP, BROKER_VERSION, BROKER_PLURAL, annotations=_BROKER_CLASS_FILTER)
@kopf.on.update(  # type: ignore[arg-type]
    BROKER_GROUP, BROKER_VERSION, BROKER_PLURAL, annotations=_BROKER_CLASS_FILTER
)
def reconcile_broker(
    *,
    name: str,
    namespace: str,
    retry: int,
    logger: kopf.Logger,
    **_: object,
) -> None:
    """Reconcile a Broker resource.

    kopf runs sync handlers on its worker pool and never runs two handlers
    for the same object at once.

    Args:
        name: The Broker name.
        namespace: The Broker namespace.
        retry: How many times this handler has been retried.
        logger: The kopf logger.
        **_: Additional kwargs from kopf.
    """
    logger.info(f"Reconciling Broker {namespace}/{name}")
    _run_reconcile(name, namespace, retry, logger)


@kopf.timer(
    BROKER_GROUP,
    BROKER_VERSION,
    BROKER_PLURAL,
    annotations=_BROKER_CLASS_FILTER,
    interval=get_settings().resync_interval,
    idle=get_settings().resync_idle,
)
def resync_broker(
    *,
    name: str,
    namespace: str,
    retry: int,
    logger: kopf.Logger,
    **_: object,
) -> None:
    """Periodically re-reconcile a Broker.

    The trigger channel, the config map and the dead-letter sink are not
    watched, so drift in any of them (a deleted channel, an edited delivery,
    a changed template or sink address) is repaired here.
    """
    logger.debug(f"Resyncing Broker {namespace}/{name}")
    _run_reconcile(name, namespace, retry, logger)


# Last seen readiness of each data-plane Endpoints object, by namespace/name.
_endpoint_readiness: dict[str, bool] = {}


@kopf.on.event("", "v1", "endpoints", labels={BROKER_ROLE_LABEL: kopf.PRESENT})
def endpoints_changed(
    *,
    event: dict[str, Any],
    body: dict[str, Any],
    name: str,
    namespace: str,
    logger: kopf.Logger,
    **_: object,
) -> None:
    """Re-reconcile Brokers when a filter/ingress endpoint set gains or loses addresses.

    Args:
        event: The raw watch event.
        body: The Endpoints object.
        name: The Endpoints name.
        namespace: The Endpoints namespace.
        logger: The kopf logger.
        **_: Additional kwargs from kopf.
    """
    if namespace != get_settings().system_namespace:
        return

    key = f"{namespace}/{name}"
    ready = event.get("type") != "DELETED" and _count_addresses([dict(body)]) > 0
    previous = _endpoint_readiness.get(key)
    _endpoint_readiness[key] = ready

    if previous == ready or (previous is None and not ready):
        return

    logger.info(f"Endpoints {key} ready={ready}, triggering Broker reconciliation")
    _trigger_broker_reconciliation(logger)


def _trigger_broker_reconciliation(logger: kopf.Logger) -> None:
    """Touch every Broker of our class so its handlers run again.

    Args:
        logger: The kopf logger.
    """
    settings = get_settings()
    k8s = get_k8s_client()

    try:
        brokers = k8s.list_brokers()
    except ApiException as e:
        logger.warning(f"Failed to list Brokers: {api_error_message(e)}")
        return

    annotation = f"{settings.annotation_prefix}/dependencies-changed-at"
    now = datetime.now(UTC).isoformat()
    for broker in brokers:
        metadata = broker.get("metadata", {})
        broker_class = (metadata.get("annotations") or {}).get(BROKER_CLASS_ANNOTATION)
        if broker_class != settings.broker_class:
            continue
        try:
            k8s.touch_broker(metadata["name"], metadata["namespace"], {annotation: now})
            logger.info(
                f"Triggered reconciliation for Broker {metadata['namespace']}/{metadata['name']}"
            )
        except ApiException as e:
            logger.warning(f"Failed to trigger reconciliation for {metadata.get('name')}: {e}")
