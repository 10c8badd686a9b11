"""Broker controller entry point.

This module serves as the main entry point for the kopf operator
(``kopf run -m mtbroker.main``). It imports the controllers to register
their handlers with kopf.
"""

import logging

import kopf
from pythonjsonlogger.json import JsonFormatter

# Import controllers to register handlers
from mtbroker.config import get_settings
from mtbroker.controllers import broker_controller
from mtbroker.utils.metrics import start_metrics_server

# Re-export to satisfy linters (controllers register via decorators)
__all__ = [
    "broker_controller",
]


def _json_default(obj: object) -> str:
    """Fallback serializer for objects that json can't handle (e.g. kopf settings)."""
    return str(obj)


def configure_logging() -> None:
    """Configure structured JSON logging for all operator output."""
    handler = logging.StreamHandler()
    handler.setFormatter(
        JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
            json_default=_json_default,
        )
    )
    logging.root.handlers = [handler]
    logging.root.setLevel(get_settings().log_level.upper())


configure_logging()


@kopf.on.startup()
async def startup_handler(
    settings: kopf.OperatorSettings, logger: kopf.Logger, **_: object
) -> None:
    """Handle operator startup."""
    controller_settings = get_settings()

    settings.execution.max_workers = controller_settings.max_workers
    # Broker status is replaced wholesale by the reconciler, so kopf must not
    # keep its own state there.
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix=controller_settings.annotation_prefix
    )
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix=controller_settings.annotation_prefix,
        key="last-handled-configuration",
    )
    settings.posting.level = logging.WARNING

    start_metrics_server(controller_settings.metrics_port)
    logger.info(
        f"Broker controller starting up (metrics on :{controller_settings.metrics_port}, "
        f"system namespace {controller_settings.system_namespace})"
    )


@kopf.on.probe(id="operator")
def probe_operator(**_: object) -> dict[str, str]:
    """Report operator health status."""
    return {"status": "running"}


@kopf.on.cleanup()
async def cleanup_handler(logger: kopf.Logger, **_: object) -> None:
    """Handle operator cleanup."""
    logger.info("Broker controller shutting down")
