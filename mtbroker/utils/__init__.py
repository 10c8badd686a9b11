"""Broker controller utilities."""

from mtbroker.utils.events import EventRecorder, KopfEventRecorder
from mtbroker.utils.k8s_client import K8sClient

__all__ = [
    "EventRecorder",
    "K8sClient",
    "KopfEventRecorder",
]
