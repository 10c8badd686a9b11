"""Pydantic models for the Broker CRD and the objects it points at.

These models mirror the parts of the eventing schemas the controller reads.
Structural checks that map to a status condition (e.g. a config reference
without a name) are left to the reconciler so they surface as conditions
rather than validation errors.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# API coordinates
# =============================================================================

BROKER_GROUP = "eventing.knative.dev"
BROKER_VERSION = "v1"
BROKER_PLURAL = "brokers"
BROKER_KIND = "Broker"
BROKER_API_VERSION = f"{BROKER_GROUP}/{BROKER_VERSION}"

BROKER_CLASS_ANNOTATION = "eventing.knative.dev/broker.class"

# =============================================================================
# Common models
# =============================================================================


class KReference(BaseModel):
    """Reference to a namespaced object by kind, apiVersion and name."""

    kind: str | None = None
    apiVersion: str | None = None
    name: str | None = None
    namespace: str | None = None


class Destination(BaseModel):
    """An addressable destination: an object reference, a URI, or both.

    When both are set, ``uri`` is resolved relative to the referenced object's
    address.
    """

    ref: KReference | None = None
    uri: str | None = None


# =============================================================================
# Broker
# =============================================================================


class DeliverySpec(BaseModel):
    """Delivery options shared by the Broker and its trigger channel."""

    model_config = ConfigDict(extra="allow")

    retry: int | None = Field(default=None, ge=0)
    deadLetterSink: Destination | None = None
    backoffPolicy: str | None = Field(default=None, pattern=r"^(linear|exponential)$")
    backoffDelay: str | None = None


class BrokerSpec(BaseModel):
    """Broker spec."""

    model_config = ConfigDict(extra="allow")

    config: KReference | None = None
    delivery: DeliverySpec | None = None


# =============================================================================
# Channel template
# =============================================================================


class ChannelTemplateSpec(BaseModel):
    """The embedded manifest describing what kind of channel to create."""

    apiVersion: str = Field(..., min_length=1)
    kind: str = Field(..., min_length=1)
    spec: dict[str, Any] | None = None
