"""Broker status aggregation.

``aggregate_status`` is a pure function: it folds what a reconcile pass
observed into a new status dict, starting from the previous status so that
conditions nothing looked at this pass keep their last value.
"""

import copy
from dataclasses import dataclass
from typing import Any

from mtbroker.config import ControllerSettings
from mtbroker.errors import ReconcileError
from mtbroker.models.conditions import (
    CONDITION_ADDRESSABLE,
    CONDITION_DEAD_LETTER_SINK,
    CONDITION_FILTER,
    CONDITION_INGRESS,
    CONDITION_TRIGGER_CHANNEL,
    ConditionSet,
)

CHANNEL_ADDRESS_ANNOTATION = "knative.dev/channelAddress"
CHANNEL_API_VERSION_ANNOTATION = "knative.dev/channelAPIVersion"
CHANNEL_KIND_ANNOTATION = "knative.dev/channelKind"
CHANNEL_NAME_ANNOTATION = "knative.dev/channelName"

DEAD_LETTER_SINK_NOT_CONFIGURED = "DeadLetterSinkNotConfigured"
DEAD_LETTER_SINK_RESOLVED = "DeadLetterSinkResolved"
DEAD_LETTER_SINK_FAILED_REASON = "Unable to get the DeadLetterSink's URI"

CHANNEL_TEMPLATE_MESSAGE = "Error on setting up the ChannelTemplate: {}"


@dataclass(frozen=True)
class TriggerChannelInfo:
    """What downstream consumers need to know about a ready trigger channel."""

    api_version: str
    kind: str
    name: str
    address: str


@dataclass(frozen=True)
class EndpointsReady:
    """At least one serving address exists for a data-plane service."""

    service_name: str
    address_count: int


@dataclass(frozen=True)
class DeadLetterSinkNotConfigured:
    pass


@dataclass(frozen=True)
class DeadLetterSinkResolved:
    uri: str


ChannelOutcome = TriggerChannelInfo | ReconcileError
EndpointsOutcome = EndpointsReady | ReconcileError
DeadLetterSinkOutcome = DeadLetterSinkNotConfigured | DeadLetterSinkResolved | ReconcileError


@dataclass
class BrokerObservations:
    """Outcomes of one pass. ``None`` means the step did not run."""

    channel: ChannelOutcome | None = None
    dead_letter_sink: DeadLetterSinkOutcome | None = None
    filter: EndpointsOutcome | None = None
    ingress: EndpointsOutcome | None = None

    def first_error(self) -> ReconcileError | None:
        """The failure that ended the pass, in pipeline order."""
        for outcome in (self.channel, self.dead_letter_sink, self.filter, self.ingress):
            if isinstance(outcome, ReconcileError):
                return outcome
        return None


def broker_address(namespace: str, name: str, settings: ControllerSettings) -> str:
    """The Broker's public URL, served by the shared ingress."""
    host = settings.service_hostname(settings.ingress_service_name)
    return f"http://{host}/{namespace}/{name}"


def _channel_condition_message(err: ReconcileError) -> str:
    if err.reason == "ChannelTemplateFailed":
        return CHANNEL_TEMPLATE_MESSAGE.format(err.message)
    return err.message


def _apply_channel(
    conditions: ConditionSet, status: dict[str, Any], outcome: ChannelOutcome
) -> None:
    if isinstance(outcome, ReconcileError):
        conditions.mark_false(
            CONDITION_TRIGGER_CHANNEL, outcome.reason, _channel_condition_message(outcome)
        )
        return

    conditions.mark_true(CONDITION_TRIGGER_CHANNEL)
    annotations = dict(status.get("annotations") or {})
    annotations.update(
        {
            CHANNEL_ADDRESS_ANNOTATION: outcome.address,
            CHANNEL_API_VERSION_ANNOTATION: outcome.api_version,
            CHANNEL_KIND_ANNOTATION: outcome.kind,
            CHANNEL_NAME_ANNOTATION: outcome.name,
        }
    )
    status["annotations"] = annotations


def _apply_dead_letter_sink(
    conditions: ConditionSet, status: dict[str, Any], outcome: DeadLetterSinkOutcome
) -> None:
    if isinstance(outcome, DeadLetterSinkNotConfigured):
        status.pop("deadLetterSinkUri", None)
        conditions.mark_true(
            CONDITION_DEAD_LETTER_SINK,
            DEAD_LETTER_SINK_NOT_CONFIGURED,
            "No dead letter sink is configured.",
        )
    elif isinstance(outcome, DeadLetterSinkResolved):
        status["deadLetterSinkUri"] = outcome.uri
        conditions.mark_true(CONDITION_DEAD_LETTER_SINK, DEAD_LETTER_SINK_RESOLVED)
    else:
        # A previously resolved URI is dropped once the sink stops resolving.
        status.pop("deadLetterSinkUri", None)
        conditions.mark_false(
            CONDITION_DEAD_LETTER_SINK,
            DEAD_LETTER_SINK_FAILED_REASON,
            f"Failed to resolve Dead Letter Sink URI: {outcome.message}",
        )


def _apply_endpoints(
    conditions: ConditionSet, condition_type: str, outcome: EndpointsOutcome
) -> None:
    if isinstance(outcome, ReconcileError):
        conditions.mark_false(condition_type, outcome.reason, outcome.message)
    else:
        conditions.mark_true(condition_type)


def aggregate_status(
    previous_status: dict[str, Any] | None,
    observations: BrokerObservations,
    *,
    namespace: str,
    name: str,
    generation: int | None,
    settings: ControllerSettings,
) -> dict[str, Any]:
    """Compute the Broker's new status.

    Args:
        previous_status: The status read at the start of the pass.
        observations: What this pass found.
        namespace: The Broker namespace.
        name: The Broker name.
        generation: ``metadata.generation`` of the Broker that was read.
        settings: Controller settings (ingress identity).

    Returns:
        A new status dict; ``previous_status`` is not modified.
    """
    status = copy.deepcopy(previous_status or {})
    conditions = ConditionSet(status.get("conditions"))
    conditions.initialize()

    if observations.channel is not None:
        _apply_channel(conditions, status, observations.channel)
    if observations.dead_letter_sink is not None:
        _apply_dead_letter_sink(conditions, status, observations.dead_letter_sink)
    if observations.filter is not None:
        _apply_endpoints(conditions, CONDITION_FILTER, observations.filter)
    if observations.ingress is not None:
        _apply_endpoints(conditions, CONDITION_INGRESS, observations.ingress)

    if isinstance(observations.filter, EndpointsReady) and isinstance(
        observations.ingress, EndpointsReady
    ):
        status["address"] = {"url": broker_address(namespace, name, settings)}
        conditions.mark_true(CONDITION_ADDRESSABLE)
    else:
        for outcome in (observations.filter, observations.ingress):
            if isinstance(outcome, ReconcileError):
                status.pop("address", None)
                conditions.mark_false(CONDITION_ADDRESSABLE, outcome.reason, outcome.message)
                break

    if generation is not None:
        status["observedGeneration"] = generation
    status["conditions"] = conditions.to_list()
    return status
