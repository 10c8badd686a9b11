"""Pytest fixtures for Broker controller tests."""

import copy
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException

from mtbroker.config import ControllerSettings

SYSTEM_NS = "knative-testing"
TEST_NS = "test-namespace"
BROKER_NAME = "test-broker"
CONFIGMAP_NAME = "test-configmap"
TRIGGER_CHANNEL_NAME = "test-broker-kne-trigger"
CHANNEL_API_VERSION = "messaging.knative.dev/v1"
CHANNEL_KIND = "InMemoryChannel"
CHANNEL_URL = "http://foo.bar.svc.cluster.local"
DLS_NAME = "test-dls"
DLS_URI = "http://test-dls.test-namespace.svc.cluster.local"
BROKER_ADDRESS = (
    f"http://broker-ingress.{SYSTEM_NS}.svc.cluster.local/{TEST_NS}/{BROKER_NAME}"
)

IMC_SPEC = """
apiVersion: "messaging.knative.dev/v1"
kind: "InMemoryChannel"
"""


def _split_pointer(path: str) -> list[str]:
    return [p.replace("~1", "/").replace("~0", "~") for p in path.lstrip("/").split("/")]


def apply_json_patch(obj: dict[str, Any], operations: list[dict[str, Any]]) -> dict[str, Any]:
    """Apply add/replace/remove operations on nested dicts."""
    result = copy.deepcopy(obj)
    for operation in operations:
        *parents, leaf = _split_pointer(operation["path"])
        target = result
        for part in parents:
            target = target[part]
        if operation["op"] == "remove":
            del target[leaf]
        elif operation["op"] == "replace":
            if leaf not in target:
                raise KeyError(operation["path"])
            target[leaf] = copy.deepcopy(operation["value"])
        else:
            target[leaf] = copy.deepcopy(operation["value"])
    return result


class FakeK8sClient:
    """In-memory stand-in for K8sClient that records every write."""

    def __init__(self) -> None:
        self.brokers: dict[tuple[str, str], dict[str, Any]] = {}
        self.configmaps: dict[tuple[str, str], dict[str, Any]] = {}
        self.services: dict[tuple[str, str], dict[str, Any]] = {}
        self.objects: dict[tuple[str, str, str, str], dict[str, Any]] = {}
        self.endpoints: list[dict[str, Any]] = []
        self.failures: dict[str, ApiException] = {}

        self.creates: list[dict[str, Any]] = []
        self.patches: list[dict[str, Any]] = []
        self.status_updates: list[dict[str, Any]] = []

    # -- seeding ------------------------------------------------------------

    def add(self, obj: dict[str, Any]) -> None:
        metadata = obj["metadata"]
        key = (metadata["namespace"], metadata["name"])
        if obj["kind"] == "Broker":
            self.brokers[key] = copy.deepcopy(obj)
        elif obj["kind"] == "ConfigMap":
            self.configmaps[key] = copy.deepcopy(obj)
        elif obj["kind"] == "Service" and obj["apiVersion"] == "v1":
            self.services[key] = copy.deepcopy(obj)
        elif obj["kind"] == "Endpoints":
            self.endpoints.append(copy.deepcopy(obj))
        else:
            self.objects[(obj["apiVersion"], obj["kind"], *key)] = copy.deepcopy(obj)

    def delete(self, obj: dict[str, Any]) -> None:
        metadata = obj["metadata"]
        del self.objects[(obj["apiVersion"], obj["kind"], metadata["namespace"], metadata["name"])]

    def fail(self, method: str,status: int = 500, reason: str = "Internal Server Error") -> None:
        self.failures[method] = ApiException(status=status, reason=reason)

    def _check(self, method: str) -> None:
        if method in self.failures:
            raise self.failures[method]

    @property
    def writes(self) -> int:
        return len(self.creates) + len(self.patches) + len(self.status_updates)

    # -- K8sClient surface --------------------------------------------------

    def get_broker(self, name: str, namespace: str) -> dict[str, Any] | None:
        self._check("get_broker")
        broker = self.brokers.get((namespace, name))
        return copy.deepcopy(broker) if broker else None

    def update_broker_status(self, broker: dict[str, Any]) -> dict[str, Any]:
        self.status_updates.append(copy.deepcopy(broker))
        self._check("update_broker_status")
        metadata = broker["metadata"]
        stored = self.brokers[(metadata["namespace"], metadata["name"])]
        stored["status"] = copy.deepcopy(broker["status"])
        stored["metadata"]["resourceVersion"] = str(
            int(stored["metadata"].get("resourceVersion", "1")) + 1
        )
        return copy.deepcopy(stored)

    def get_configmap(self, name: str, namespace: str) -> dict[str, Any] | None:
        self._check("get_configmap")
        return copy.deepcopy(self.configmaps.get((namespace, name)))

    def get_service(self, name: str, namespace: str) -> dict[str, Any] | None:
        self._check("get_service")
        return copy.deepcopy(self.services.get((namespace, name)))

    def list_endpoints(
        self, namespace: str, label_selector: dict[str, Any]
    ) -> list[dict[str, Any]]:
        self._check("list_endpoints")
        wanted = label_selector.get("matchLabels", {})
        return [
            copy.deepcopy(e)
            for e in self.endpoints
            if e["metadata"]["namespace"] == namespace
            and all(e["metadata"].get("labels", {}).get(k) == v for k, v in wanted.items())
        ]

    def get_object(
        self, api_version: str, kind: str, name: str, namespace: str
    ) -> dict[str, Any] | None:
        self._check("get_object")
        return copy.deepcopy(self.objects.get((api_version, kind, namespace, name)))

    def create_object(self, body: dict[str, Any]) -> dict[str, Any]:
        self.creates.append(copy.deepcopy(body))
        self._check("create_object")
        metadata = body["metadata"]
        key = (body["apiVersion"], body["kind"], metadata["namespace"], metadata["name"])
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.objects[key] = copy.deepcopy(body)
        return copy.deepcopy(body)

    def patch_object(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str,
        operations: list[dict[str, Any]],
    ) -> dict[str, Any]:
        self.patches.append({"namespace": namespace, "name": name, "patch": operations})
        self._check("patch_object")
        key = (api_version, kind, namespace, name)
        self.objects[key] = apply_json_patch(self.objects[key], operations)
        return copy.deepcopy(self.objects[key])


class FakeRecorder:
    """Collects events as ``"<type> <reason> <message>"`` strings."""

    def __init__(self) -> None:
        self.events: list[str] = []

    def record(self, body: dict[str, Any], type: str, reason: str, message: str) -> None:
        self.events.append(f"{type} {reason} {message}")


@pytest.fixture
def mock_k8s_client() -> MagicMock:
    """Create a mock Kubernetes client."""
    return MagicMock()


@pytest.fixture
def settings() -> ControllerSettings:
    """Controller settings pointing at the test system namespace."""
    return ControllerSettings(system_namespace=SYSTEM_NS)


@pytest.fixture
def cluster() -> FakeK8sClient:
    """An empty in-memory cluster."""
    return FakeK8sClient()


@pytest.fixture
def recorder() -> FakeRecorder:
    """An event recorder that keeps events in memory."""
    return FakeRecorder()


@pytest.fixture
def config_ref() -> dict[str, Any]:
    """The Broker config reference used by most tests."""
    return {
        "name": CONFIGMAP_NAME,
        "namespace": TEST_NS,
        "kind": "ConfigMap",
        "apiVersion": "v1",
    }


@pytest.fixture
def make_broker(config_ref: dict[str, Any]) -> Callable[..., dict[str, Any]]:
    """Factory for Broker objects."""

    def _make(
        config: dict[str, Any] | None = config_ref,
        delivery: dict[str, Any] | None = None,
        deleted: bool = False,
        status: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        spec: dict[str, Any] = {}
        if config is not None:
            spec["config"] = copy.deepcopy(config)
        if delivery is not None:
            spec["delivery"] = copy.deepcopy(delivery)
        broker: dict[str, Any] = {
            "apiVersion": "eventing.knative.dev/v1",
            "kind": "Broker",
            "metadata": {
                "name": BROKER_NAME,
                "namespace": TEST_NS,
                "uid": "broker-uid",
                "generation": 1,
                "resourceVersion": "1",
                "annotations": {"eventing.knative.dev/broker.class": "MTChannelBasedBroker"},
            },
            "spec": spec,
        }
        if deleted:
            broker["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        if status is not None:
            broker["status"] = copy.deepcopy(status)
        return broker

    return _make


@pytest.fixture
def imc_configmap() -> dict[str, Any]:
    """ConfigMap holding an InMemoryChannel template."""
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": CONFIGMAP_NAME, "namespace": TEST_NS},
        "data": {"channelTemplateSpec": IMC_SPEC},
    }


@pytest.fixture
def make_channel() -> Callable[..., dict[str, Any]]:
    """Factory for trigger channel objects as the controller would create them."""

    def _make(
        ready: bool = False,
        dead_letter_sink: dict[str, Any] | None = None,
        retry: int | None = None,
        url: str = CHANNEL_URL,
    ) -> dict[str, Any]:
        channel: dict[str, Any] = {
            "apiVersion": CHANNEL_API_VERSION,
            "kind": CHANNEL_KIND,
            "metadata": {
                "name": TRIGGER_CHANNEL_NAME,
                "namespace": TEST_NS,
                "ownerReferences": [
                    {
                        "apiVersion": "eventing.knative.dev/v1",
                        "kind": "Broker",
                        "name": BROKER_NAME,
                        "uid": "broker-uid",
                        "controller": True,
                        "blockOwnerDeletion": True,
                    }
                ],
                "labels": {
                    "eventing.knative.dev/broker": BROKER_NAME,
                    "eventing.knative.dev/brokerEverything": "true",
                },
                "annotations": {"eventing.knative.dev/scope": "cluster"},
            },
        }
        delivery: dict[str, Any] = {}
        if retry is not None:
            delivery["retry"] = retry
        if dead_letter_sink is not None:
            delivery["deadLetterSink"] = copy.deepcopy(dead_letter_sink)
        channel["spec"] = {"delivery": delivery} if delivery else {}
        if ready:
            channel["status"] = {"address": {"url": url}, "deadLetterSinkUri": DLS_URI}
        return channel

    return _make


def _endpoints(name: str, role: str, addresses: int) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Endpoints",
        "metadata": {
            "name": name,
            "namespace": SYSTEM_NS,
            "labels": {"eventing.knative.dev/brokerRole": role},
        },
        "subsets": [{"addresses": [{"ip": "127.0.0.1"}] * addresses}] if addresses else [],
    }


@pytest.fixture
def filter_endpoints() -> dict[str, Any]:
    """Filter endpoints with one address."""
    return _endpoints("broker-filter", "filter", 1)


@pytest.fixture
def ingress_endpoints() -> dict[str, Any]:
    """Ingress endpoints with one address."""
    return _endpoints("broker-ingress", "ingress", 1)


@pytest.fixture
def dls_service() -> dict[str, Any]:
    """A plain Kubernetes Service used as dead-letter sink."""
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": DLS_NAME, "namespace": TEST_NS},
    }


@pytest.fixture
def sink_service_destination() -> dict[str, Any]:
    """Destination pointing at the dead-letter sink Service."""
    return {
        "ref": {
            "name": DLS_NAME,
            "kind": "Service",
            "apiVersion": "v1",
            "namespace": TEST_NS,
        }
    }
