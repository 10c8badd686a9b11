"""Controller configuration.

Settings are read from the environment (prefix ``BROKER_CONTROLLER_``) once per
process. The system namespace also honours the conventional ``SYSTEM_NAMESPACE``
variable injected by the deployment manifest.
"""

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ControllerSettings(BaseSettings):
    """Broker controller configuration."""

    model_config = SettingsConfigDict(env_prefix="BROKER_CONTROLLER_", populate_by_name=True)

    system_namespace: str = Field(
        default="knative-eventing",
        validation_alias=AliasChoices("SYSTEM_NAMESPACE", "BROKER_CONTROLLER_SYSTEM_NAMESPACE"),
        description="Namespace the controller and its data plane run in",
    )
    ingress_service_name: str = Field(default="broker-ingress", description="Ingress service")
    filter_service_name: str = Field(default="broker-filter", description="Filter service")
    cluster_domain: str = Field(default="cluster.local", description="Cluster DNS domain")
    broker_class: str = Field(
        default="MTChannelBasedBroker",
        description="Value of the broker class annotation handled by this controller",
    )
    max_workers: int = Field(default=4, ge=1, description="Size of the reconcile worker pool")
    requeue_base_delay: float = Field(default=5.0, gt=0, description="First retry delay (s)")
    requeue_max_delay: float = Field(default=300.0, gt=0, description="Retry delay cap (s)")
    resync_interval: float = Field(default=300.0, gt=0, description="Periodic resync (s)")
    resync_idle: float = Field(
        default=60.0, ge=0, description="Quiet period after a Broker change before resyncs (s)"
    )
    api_timeout: float =Field(default=30.0, gt=0, description="Kubernetes API call timeout (s)")
    metrics_port: int = Field(default=9090, ge=1, le=65535, description="Prometheus port")
    log_level: str = Field(default="INFO", description="Root log level")
    annotation_prefix: str = Field(
        default="mtbroker.eventing.knative.dev",
        description="Prefix for annotations written by the controller",
    )

    def service_hostname(self, service_name: str, namespace: str | None = None) -> str:
        """Return the cluster-internal DNS name of a service."""
        return f"{service_name}.{namespace or self.system_namespace}.svc.{self.cluster_domain}"

    def requeue_delay(self, retry: int) -> float:
        """Exponential backoff for the given retry attempt, capped."""
        return min(self.requeue_base_delay * (2 ** max(retry, 0)), self.requeue_max_delay)


@lru_cache(maxsize=1)
def get_settings() -> ControllerSettings:
    """Get the process-wide settings instance."""
    return ControllerSettings()
