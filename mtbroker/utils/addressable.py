"""Address resolution for addressable objects and destinations.

An addressable is any object that publishes where it accepts events in its
status. The shape of that field changed across API generations, so each
shape has its own extractor and they are tried newest first.
"""

import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import urljoin, urlsplit

from kubernetes.client.exceptions import ApiException

from mtbroker.config import ControllerSettings
from mtbroker.errors import AddressNotFound, InvalidDestination, NoAddress, api_error_message
from mtbroker.models.crds import Destination, KReference

logger = logging.getLogger(__name__)

AddressExtractor = Callable[[dict[str, Any]], str | None]


def _address_from_addresses_list(obj: dict[str, Any]) -> str | None:
    """``status.addresses[*].url`` (multi-address shape)."""
    addresses = (obj.get("status") or {}).get("addresses")
    if not isinstance(addresses, list):
        return None
    for address in addresses:
        if isinstance(address, dict) and address.get("url"):
            return str(address["url"])
    return None


def _address_from_url(obj: dict[str, Any]) -> str | None:
    """``status.address.url`` (v1 / v1beta1)."""
    address = (obj.get("status") or {}).get("address")
    if isinstance(address, dict) and address.get("url"):
        return str(address["url"])
    return None


def _address_from_hostname(obj: dict[str, Any]) -> str | None:
    """``status.address.hostname`` (v1alpha1)."""
    address = (obj.get("status") or {}).get("address")
    if isinstance(address, dict) and address.get("hostname"):
        return f"http://{address['hostname']}"
    return None


ADDRESS_EXTRACTORS: tuple[AddressExtractor, ...] = (
    _address_from_addresses_list,
    _address_from_url,
    _address_from_hostname,
)


def has_host(url: str) -> bool:
    """Whether a URL names a host (``http://`` alone does not)."""
    try:
        return bool(urlsplit(url).hostname)
    except ValueError:
        return False


def extract_url(obj: dict[str, Any]) -> str | None:
    """Return the first usable address URL published by an object."""
    for extractor in ADDRESS_EXTRACTORS:
        url = extractor(obj)
        if url and has_host(url):
            return url
    return None


def resolve_object_url(obj: dict[str, Any], description: str = "Channel") -> str:
    """Resolve an already-fetched addressable to its URL.

    Raises:
        NoAddress: The object publishes no usable URL yet.
    """
    url = extract_url(obj)
    if url is None:
        raise NoAddress(f"{description} does not have an address.")
    return url


def _is_kubernetes_service(ref: KReference) -> bool:
    return ref.kind == "Service" and ref.apiVersion == "v1"


def resolve_reference_url(
    ref: KReference,
    default_namespace: str,
    k8s: Any,
    settings: ControllerSettings,
) -> str:
    """Resolve an object reference to the URL of the object it names.

    Args:
        ref: The reference; namespace defaults to ``default_namespace``.
        default_namespace: Namespace of the object holding the reference.
        k8s: The Kubernetes client.
        settings: Controller settings (cluster domain).

    Returns:
        The resolved URL.
    """
    if not ref.name or not ref.kind or not ref.apiVersion:
        raise InvalidDestination("reference must set kind, apiVersion and name")
    namespace = ref.namespace or default_namespace

    try:
        if _is_kubernetes_service(ref):
            if k8s.get_service(ref.name, namespace) is None:
                raise AddressNotFound(f'services "{ref.name}" not found')
            return f"http://{settings.service_hostname(ref.name, namespace)}"

        obj = k8s.get_object(ref.apiVersion, ref.kind, ref.name, namespace)
    except ApiException as e:
        raise AddressNotFound(
            f"failed to get {ref.kind} {namespace}/{ref.name}: {api_error_message(e)}"
        ) from e

    if obj is None:
        raise AddressNotFound(f'{ref.kind.lower()} "{ref.name}" not found')

    return resolve_object_url(obj, description=f"{ref.kind} {namespace}/{ref.name}")


def resolve_destination(
    destination: Destination,
    default_namespace: str,
    k8s: Any,
    settings: ControllerSettings,
) -> str:
    """Resolve a destination (ref, uri, or ref plus relative uri) to a URL."""
    if destination.ref is None:
        if not destination.uri:
            raise InvalidDestination("destination must set ref or uri")
        if not has_host(destination.uri):
            raise InvalidDestination(f"destination uri {destination.uri!r} is not absolute")
        return destination.uri

    base = resolve_reference_url(destination.ref, default_namespace, k8s, settings)
    if not destination.uri:
        return base
    if has_host(destination.uri):
        raise InvalidDestination("destination uri must be relative when a ref is set")
    return urljoin(base if base.endswith("/") else f"{base}/", destination.uri.lstrip("/"))
