"""Channel template resolution.

A Broker's ``spec.config`` points at a ConfigMap whose ``channelTemplateSpec``
key embeds the manifest (apiVersion, kind, optional spec) of the channel kind
that backs the Broker.
"""

from typing import Any

import yaml
from kubernetes.client.exceptions import ApiException
from pydantic import ValidationError

from mtbroker.errors import (
    ConfigNotFound,
    InvalidChannelTemplate,
    InvalidConfigReference,
    UnsupportedConfigReference,
    api_error_message,
)
from mtbroker.models.crds import ChannelTemplateSpec, KReference

CHANNEL_TEMPLATE_KEY = "channelTemplateSpec"

SUPPORTED_CONFIG_KIND = "ConfigMap"
SUPPORTED_CONFIG_API_VERSION = "v1"


def validate_config_reference(
    config_ref: KReference | None, broker_namespace: str
) -> tuple[str, str]:
    """Check the Broker's config reference and fill in the default namespace.

    Args:
        config_ref: The Broker's ``spec.config``.
        broker_namespace: Namespace used when the reference omits one.

    Returns:
        The ConfigMap ``(name, namespace)``.
    """
    if config_ref is None:
        raise InvalidConfigReference("failed to find channelTemplate")

    if (
        config_ref.kind != SUPPORTED_CONFIG_KIND
        or config_ref.apiVersion != SUPPORTED_CONFIG_API_VERSION
    ):
        raise UnsupportedConfigReference(
            "Broker.Spec.Config configuration not supported, only "
            f"[kind: {SUPPORTED_CONFIG_KIND}, apiVersion: {SUPPORTED_CONFIG_API_VERSION}]"
        )

    namespace = config_ref.namespace or broker_namespace
    if not config_ref.name or not namespace:
        raise InvalidConfigReference("Broker.Spec.Config name and namespace are required")

    return config_ref.name, namespace


def parse_channel_template(data: dict[str, str] | None, configmap_name: str) -> ChannelTemplateSpec:
    """Parse the embedded channel manifest out of ConfigMap data."""
    raw = (data or {}).get(CHANNEL_TEMPLATE_KEY)
    if not raw:
        raise InvalidChannelTemplate(
            f'configmap "{configmap_name}" has no "{CHANNEL_TEMPLATE_KEY}" key'
        )

    try:
        document: Any = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise InvalidChannelTemplate(
            f'configmap "{configmap_name}" key "{CHANNEL_TEMPLATE_KEY}" is not valid YAML: {e}'
        ) from e

    if not isinstance(document, dict):
        raise InvalidChannelTemplate(
            f'configmap "{configmap_name}" key "{CHANNEL_TEMPLATE_KEY}" is not a mapping'
        )

    try:
        return ChannelTemplateSpec(**document)
    except (ValidationError, TypeError) as e:
        raise InvalidChannelTemplate(
            f'configmap "{configmap_name}" has an invalid channel template: {e}'
        ) from e


def resolve_channel_template(
    config_ref: KReference | None,
    broker_namespace: str,
    k8s: Any,
) -> ChannelTemplateSpec:
    """Resolve the channel template for a Broker.

    Args:
        config_ref: The Broker's ``spec.config``.
        broker_namespace: The Broker's namespace.
        k8s: The Kubernetes client.

    Returns:
        The parsed channel template.
    """
    name, namespace = validate_config_reference(config_ref, broker_namespace)

    try:
        configmap = k8s.get_configmap(name, namespace)
    except ApiException as e:
        raise ConfigNotFound(f'failed to get configmap "{name}": {api_error_message(e)}') from e

    if configmap is None:
        raise ConfigNotFound(f'configmap "{name}" not found')

    return parse_channel_template(configmap.get("data"), name)
