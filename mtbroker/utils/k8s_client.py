"""Kubernetes client utilities.

Provides a wrapper around the kubernetes client for the operations used by
the Broker reconciler: reading Brokers and their inputs, writing Broker
status, and working with dynamically-typed objects (trigger channels,
addressables) whose kind is only known at runtime. Those are resolved
through API discovery with the dynamic client.
"""

from typing import Any, cast

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from mtbroker.config import get_settings
from mtbroker.models.crds import (
    BROKER_GROUP,
    BROKER_PLURAL,
    BROKER_VERSION,
)

JSON_PATCH = "application/json-patch+json"


def _build_label_selector_string(selector: dict[str, Any]) -> str:
    """Build a label selector string from a selector dict.

    Args:
        selector: Dict with matchLabels and/or matchExpressions.

    Returns:
        A comma-separated label selector string.
    """
    parts: list[str] = []

    match_labels = selector.get("matchLabels", {})
    for key, value in match_labels.items():
        parts.append(f"{key}={value}")

    match_expressions = selector.get("matchExpressions", [])
    for expr in match_expressions:
        key = expr.get("key", "")
        operator = expr.get("operator", "")
        values = expr.get("values", [])

        if operator == "In":
            parts.append(f"{key} in ({','.join(values)})")
        elif operator == "NotIn":
            parts.append(f"{key} notin ({','.join(values)})")
        elif operator == "Exists":
            parts.append(key)
        elif operator == "DoesNotExist":
            parts.append(f"!{key}")

    return ",".join(parts)


class K8sClient:
    """Kubernetes client wrapper for Broker controller operations."""

    def __init__(self, request_timeout: float | None = None) -> None:
        """Initialize the Kubernetes client.

        Attempts to load in-cluster config first, falls back to kubeconfig.

        Args:
            request_timeout: Per-call timeout in seconds (defaults to settings).
        """
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()

        self.core_v1 = client.CoreV1Api()
        self.custom_objects = client.CustomObjectsApi()
        self.dynamic = DynamicClient(client.ApiClient())
        self.request_timeout = (
            request_timeout if request_timeout is not None else get_settings().api_timeout
        )

    # -------------------------------------------------------------------------
    # Brokers
    # -------------------------------------------------------------------------

    def get_broker(self, name: str, namespace: str) -> dict[str, Any] | None:
        """Get a Broker by name.

        Returns:
            The Broker object, or None if not found.
        """
        try:
            result = self.custom_objects.get_namespaced_custom_object(
                group=BROKER_GROUP,
                version=BROKER_VERSION,
                namespace=namespace,
                plural=BROKER_PLURAL,
                name=name,
                _request_timeout=self.request_timeout,
            )
            return cast(dict[str, Any], result)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def list_brokers(self) -> list[dict[str, Any]]:
        """List Brokers in all namespaces."""
        result = self.custom_objects.list_cluster_custom_object(
            group=BROKER_GROUP,
            version=BROKER_VERSION,
            plural=BROKER_PLURAL,
            _request_timeout=self.request_timeout,
        )
        return cast(list[dict[str, Any]], result.get("items", []))

    def update_broker_status(self, broker: dict[str, Any]) -> dict[str, Any]:
        """Replace the status subresource of a Broker.

        The body carries ``metadata.resourceVersion``, so a stale write fails
        with 409 Conflict instead of overwriting a newer status.

        Args:
            broker: The full Broker object with the new status.

        Returns:
            The updated Broker.
        """
        metadata = broker["metadata"]
        result = self.custom_objects.replace_namespaced_custom_object_status(
            group=BROKER_GROUP,
            version=BROKER_VERSION,
            namespace=metadata["namespace"],
            plural=BROKER_PLURAL,
            name=metadata["name"],
            body=broker,
            _request_timeout=self.request_timeout,
        )
        return cast(dict[str, Any], result)

    def touch_broker(self, name: str, namespace: str, annotations: dict[str, str]) -> None:
        """Merge-patch annotations onto a Broker so the operator reconciles it again."""
        self.custom_objects.patch_namespaced_custom_object(
            group=BROKER_GROUP,
            version=BROKER_VERSION,
            namespace=namespace,
            plural=BROKER_PLURAL,
            name=name,
            body={"metadata": {"annotations": annotations}},
            _request_timeout=self.request_timeout,
        )

    # -------------------------------------------------------------------------
    # Core objects
    # -------------------------------------------------------------------------

    def get_configmap(self, name: str, namespace: str) -> dict[str, Any] | None:
        """Get a ConfigMap by name.

        Returns:
            The ConfigMap object as a dict, or None if not found.
        """
        try:
            cm = self.core_v1.read_namespaced_config_map(
                name, namespace, _request_timeout=self.request_timeout
            )
            return cast(dict[str, Any], cm.to_dict())
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def get_service(self, name: str, namespace: str) -> dict[str, Any] | None:
        """Get a Service by name.

        Returns:
            The service object as a dict, or None if not found.
        """
        try:
            svc = self.core_v1.read_namespaced_service(
                name, namespace, _request_timeout=self.request_timeout
            )
            return cast(dict[str, Any], svc.to_dict())
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def list_endpoints(
        self,
        namespace: str,
        label_selector: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """List Endpoints by label selector.

        Args:
            namespace: The namespace to search in.
            label_selector: The label selector dict with matchLabels/matchExpressions.

        Returns:
            List of matching Endpoints objects as dicts.
        """
        result = self.core_v1.list_namespaced_endpoints(
            namespace,
            label_selector=_build_label_selector_string(label_selector),
            _request_timeout=self.request_timeout,
        )
        return [cast(dict[str, Any], item.to_dict()) for item in result.items or []]

    # -------------------------------------------------------------------------
    # Dynamically-typed objects
    # -------------------------------------------------------------------------

    def _resource(self, api_version: str, kind: str) -> Any:
        """Look up the API resource serving a kind through discovery.

        A kind the cluster does not serve is reported as a 404 so callers
        treat it like a missing object.
        """
        try:
            return self.dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise ApiException(status=404, reason=f"{kind}.{api_version} is not served") from e

    def get_object(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str,
    ) -> dict[str, Any] | None:
        """Get an object of any kind.

        Returns:
            The object, or None if not found.
        """
        try:
            resource = self._resource(api_version, kind)
            result = resource.get(
                name=name, namespace=namespace, _request_timeout=self.request_timeout
            )
            return cast(dict[str, Any], result.to_dict())
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create_object(self, body: dict[str, Any]) -> dict[str, Any]:
        """Create an object of any kind.

        Args:
            body: The full object, including apiVersion, kind and metadata.

        Returns:
            The created object.
        """
        resource = self._resource(body["apiVersion"], body["kind"])
        result = resource.create(
            body=body,
            namespace=body["metadata"]["namespace"],
            _request_timeout=self.request_timeout,
        )
        return cast(dict[str, Any], result.to_dict())

    def patch_object(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str,
        operations: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Apply a JSON patch to an object of any kind.

        Returns:
            The patched object.
        """
        resource = self._resource(api_version, kind)
        result = resource.patch(
            body=operations,
            name=name,
            namespace=namespace,
            content_type=JSON_PATCH,
            _request_timeout=self.request_timeout,
        )
        return cast(dict[str, Any], result.to_dict())


# Module-level client instance (lazy initialization)
_client: K8sClient | None = None


def get_k8s_client() -> K8sClient:
    """Get or create the singleton K8s client instance.

    Returns:
        The K8sClient instance.
    """
    global _client  # noqa: PLW0603
    if _client is None:
        _client = K8sClient()
    return _client
