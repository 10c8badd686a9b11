"""Broker controller reconcilers."""

from mtbroker.controllers.broker_controller import BrokerReconciler, reconcile_broker

__all__ = [
    "BrokerReconciler",
    "reconcile_broker",
]
