"""Failure taxonomy for Broker reconciliation.

Every failure a reconcile pass can hit is one of these. Each carries the
condition ``reason`` it is reported under and the message used for the
warning event. All of them are retryable: "terminal" failures only mean the
next attempt needs an outside change first.
"""

import json

from kubernetes.client.exceptions import ApiException


class ReconcileError(Exception):
    """Base class for reconcile failures."""

    reason = "InternalError"
    retryable = True
    #: Whether a warning event is posted when the pass ends with this error.
    emits_event = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def event_message(self) -> str:
        return self.message


class InvalidKey(ReconcileError):
    """The work key is not ``namespace/name``. Never retried."""

    reason = "InvalidKey"
    retryable = False


class InvalidBrokerSpec(ReconcileError):
    """The Broker spec could not be parsed."""

    reason = "InvalidSpec"


# Channel template resolution


class TemplateError(ReconcileError):
    """Anything that prevents producing a channel template."""

    reason = "ChannelTemplateFailed"


class InvalidConfigReference(TemplateError):
    pass


class UnsupportedConfigReference(TemplateError):
    pass


class ConfigNotFound(TemplateError):
    pass


class InvalidChannelTemplate(TemplateError):
    pass


# Trigger channel


class ChannelFailure(ReconcileError):
    """Create or patch of the trigger channel failed."""

    reason = "ChannelFailure"

    @property
    def event_message(self) -> str:
        return f"failed to reconcile trigger channel: {self.message}"


# Addressables


class AddressNotFound(ReconcileError):
    """The addressable object does not exist (yet)."""

    reason = "NotFound"


class NoAddress(ReconcileError):
    """The addressable object exists but exposes no usable URL."""

    reason = "NoAddress"


class InvalidDestination(ReconcileError):
    """A destination is structurally unusable (needs a spec edit)."""

    reason = "InvalidDestination"


# Data plane and status


class ServiceFailure(ReconcileError):
    """Serving endpoints for the filter or ingress are missing."""

    reason = "ServiceFailure"


class StatusUpdateFailure(ReconcileError):
    """Writing the Broker status back failed."""

    reason = "UpdateFailed"


def api_error_message(err: ApiException) -> str:
    """Extract the human-readable message from an API error.

    Prefers the ``message`` of the Status object in the response body, falls
    back to the HTTP reason.
    """
    if err.body:
        try:
            body = json.loads(err.body)
        except (TypeError, ValueError):
            body = None
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
    return str(err.reason or f"HTTP {err.status}")
