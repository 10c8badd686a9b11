"""Multi-tenant channel-based Broker controller."""

__version__ = "0.1.0"
