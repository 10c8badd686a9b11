"""Broker controller Pydantic models."""

from mtbroker.models.crds import (
    BrokerSpec,
    ChannelTemplateSpec,
    DeliverySpec,
    Destination,
    KReference,
)

__all__ = [
    "BrokerSpec",
    "ChannelTemplateSpec",
    "DeliverySpec",
    "Destination",
    "KReference",
]
