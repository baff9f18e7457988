"""Azure Resource Manager provider adapter.

Implements the Provider protocol on top of the generic resources API, so
any ARM resource type can be managed without a type-specific SDK:

- Keys are full ARM resource IDs
- Resource groups go through `resource_groups`, everything else through
  `resources.*_by_id`
- The API version per key comes from node metadata (`apiVersion`), else
  from the resource provider's registered versions (latest stable),
  else from configuration

ERROR MAPPING:
- ResourceNotFoundError                -> ABSENT (observe) or no-op (delete)
- HTTP 408/429/5xx, transport failures -> transient ProviderError
- Any other HTTP error                 -> non-transient ProviderError

READINESS:
- provisioningState must be Succeeded (Failed/Canceled is fatal)
- Endpoint and Dns nodes with `metadata.dnsName` must also resolve to a
  private address from this host
- Resources without a provisioning state (role assignments) are ready as
  soon as they are readable

SECURITY: Credentials are injected (see security.py). This module never
reads secrets.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.pipeline.policies import BearerTokenCredentialPolicy, RetryPolicy
from azure.core.rest import HttpRequest
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup

from .config import AzureConfig
from .graph import ResourceGraph, ResourceKind, ResourceNode
from .probes import probe_private_dns
from .provider import ABSENT, CheckError, CheckErrorKind, ObservedState, ProviderError, _Absent

logger = logging.getLogger(__name__)

MANAGEMENT_ENDPOINT = "https://management.azure.com"
MANAGEMENT_SCOPE = "https://management.azure.com/.default"
KEYVAULT_API_VERSION = "2023-07-01"

TRANSIENT_STATUS_CODES = frozenset({408, 429})
SUCCEEDED_STATE = "Succeeded"
FAILED_STATES = frozenset({"Failed", "Canceled"})

DNS_PROBED_KINDS = frozenset({ResourceKind.ENDPOINT, ResourceKind.DNS})

_RESOURCE_GROUP_ID = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)/resourceGroups/(?P<name>[^/]+)/?$",
    re.IGNORECASE,
)
_SUBSCRIPTION_PREFIX = re.compile(r"^/subscriptions/(?P<subscription>[^/]+)/", re.IGNORECASE)

DnsProbe = Callable[..., bool]


def parse_resource_type(resource_id: str) -> tuple[str, str] | None:
    """Split an ARM ID into (namespace, resource type).

    "/subscriptions/s/resourceGroups/rg/providers/Microsoft.Network/
    virtualNetworks/vnet/subnets/default" -> ("Microsoft.Network",
    "virtualNetworks/subnets"). Returns None for IDs without a provider.
    """
    marker = "/providers/"
    index = resource_id.lower().rfind(marker)
    if index < 0:
        return None
    parts = resource_id[index + len(marker):].strip("/").split("/")
    if len(parts) < 3:
        return None
    return parts[0], "/".join(parts[1::2])


def is_transient(error: AzureError) -> bool:
    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return True
    if isinstance(error, HttpResponseError):
        status = error.status_code
        return status is not None and (status in TRANSIENT_STATUS_CODES or status >= 500)
    return False


def _provisioning_state(fields: Mapping[str, Any]) -> str | None:
    properties = fields.get("properties")
    if isinstance(properties, Mapping) and properties.get("provisioningState"):
        return str(properties["provisioningState"])
    state = fields.get("provisioningState")
    return str(state) if state else None


class AzureResourceProvider:
    """Provider backed by Azure Resource Manager.

    Args:
        client: Authenticated ResourceManagementClient.
        config: Azure settings.
        credential: Token credential, needed only for purge.
        api_versions: Known API version per resource key.
        dns_probe: Private DNS readiness probe.
    """

    def __init__(
        self,
        client: ResourceManagementClient,
        config: AzureConfig,
        *,
        credential: TokenCredential | None = None,
        api_versions: Mapping[str, str] | None = None,
        dns_probe: DnsProbe = probe_private_dns,
    ) -> None:
        self._client = client
        self._config = config
        self._credential = credential
        self._api_versions = {key.lower(): value for key, value in (api_versions or {}).items()}
        self._type_versions: dict[str, str | None] = {}
        self._dns_probe = dns_probe

    @classmethod
    def for_graph(
        cls,
        graph: ResourceGraph | Iterable[ResourceNode],
        config: AzureConfig,
        credential: TokenCredential,
        **kwargs: Any,
    ) -> AzureResourceProvider:
        """Build a provider that knows the API versions declared in a graph."""
        client = ResourceManagementClient(credential, config.subscription_id)
        api_versions = {
            node.key: str(node.metadata["apiVersion"])
            for node in graph
            if node.metadata.get("apiVersion")
        }
        return cls(client, config, credential=credential, api_versions=api_versions, **kwargs)

    # Provider protocol

    def observe(self, key: str) -> ObservedState | _Absent:
        group = self._resource_group_name(key)
        try:
            if group is not None:
                resource: Any = self._client.resource_groups.get(group)
            else:
                resource = self._client.resources.get_by_id(key, self._api_version(key))
        except ResourceNotFoundError:
            return ABSENT
        except AzureError as e:
            raise self._translate(e, key, "observe") from e
        return ObservedState(key, resource.serialize(keep_readonly=True))

    def apply(self, node: ResourceNode) -> None:
        body = dict(node.spec)
        group = self._resource_group_name(node.key)
        try:
            if group is not None:
                self._client.resource_groups.create_or_update(group, ResourceGroup.from_dict(body))
                return
            poller = self._client.resources.begin_create_or_update_by_id(
                node.key, self._api_version(node.key), GenericResource.from_dict(body)
            )
            if node.asynchronous:
                # Readiness is established by check_converged
                return
            poller.result(timeout=self._config.deployment_timeout_seconds)
        except AzureError as e:
            raise self._translate(e, node.key, "apply") from e

        if not poller.done():
            raise ProviderError(
                f"Create or update did not complete within "
                f"{self._config.deployment_timeout_seconds}s",
                key=node.key,
            )
        logger.info("Resource applied", extra={"key": node.key})

    def delete(self, key: str) -> None:
        group = self._resource_group_name(key)
        try:
            if group is not None:
                poller = self._client.resource_groups.begin_delete(group)
            else:
                poller = self._client.resources.begin_delete_by_id(key, self._api_version(key))
            poller.result(timeout=self._config.deployment_timeout_seconds)
        except ResourceNotFoundError:
            logger.info("Resource already absent", extra={"key": key})
            return
        except AzureError as e:
            raise self._translate(e, key, "delete") from e

        if not poller.done():
            raise ProviderError(
                f"Delete did not complete within {self._config.deployment_timeout_seconds}s",
                key=key,
            )
        logger.info("Resource deleted", extra={"key": key})

    def check_converged(self, node: ResourceNode) -> bool:
        observed = self.observe(node.key)
        if isinstance(observed, _Absent):
            return False

        state = _provisioning_state(observed.fields)
        if state in FAILED_STATES:
            raise CheckError(
                f"'{node.key}' provisioning state is {state}", kind=CheckErrorKind.FATAL
            )
        if state is not None and state != SUCCEEDED_STATE:
            return False

        dns_name = node.metadata.get("dnsName")
        if node.kind in DNS_PROBED_KINDS and dns_name:
            return self._dns_probe(
                str(dns_name), expected_prefixes=tuple(node.metadata.get("privatePrefixes", ()))
            )
        return True

    def list_links(self, key: str) -> list[str]:
        """Peerings attached to a virtual network."""
        if parse_resource_type(key) != ("Microsoft.Network", "virtualNetworks"):
            return []
        observed = self.observe(key)
        if isinstance(observed, _Absent):
            return []
        properties = observed.fields.get("properties") or {}
        peerings = properties.get("virtualNetworkPeerings") or []
        return [peering["id"] for peering in peerings if peering.get("id")]

    def purge(self, key: str) -> None:
        """Purge a soft-deleted key vault."""
        if parse_resource_type(key) != ("Microsoft.KeyVault", "vaults"):
            raise ProviderError(f"Purge is only supported for key vaults: {key}", key=key)
        if self._credential is None:
            raise ProviderError("Purge requires a credential", key=key)

        name = key.rstrip("/").rsplit("/", 1)[-1]
        subscription = self._config.subscription_id
        pipeline = PipelineClient(
            base_url=MANAGEMENT_ENDPOINT,
            policies=[RetryPolicy(), BearerTokenCredentialPolicy(self._credential, MANAGEMENT_SCOPE)],
        )
        try:
            with pipeline:
                listing = pipeline.send_request(
                    HttpRequest(
                        "GET",
                        f"{MANAGEMENT_ENDPOINT}/subscriptions/{subscription}"
                        "/providers/Microsoft.KeyVault/deletedVaults",
                        params={"api-version": KEYVAULT_API_VERSION},
                    )
                )
                listing.raise_for_status()
                deleted = [
                    item["id"]
                    for item in listing.json().get("value", [])
                    if item.get("name", "").lower() == name.lower()
                ]
                if not deleted:
                    logger.info("No soft-deleted vault to purge", extra={"key": key})
                    return
                response = pipeline.send_request(
                    HttpRequest(
                        "POST",
                        f"{MANAGEMENT_ENDPOINT}{deleted[0]}/purge",
                        params={"api-version": KEYVAULT_API_VERSION},
                    )
                )
                response.raise_for_status()
        except AzureError as e:
            raise self._translate(e, key, "purge") from e
        logger.warning("Soft-deleted vault purged", extra={"key": key})

    # Helpers

    def _resource_group_name(self, key: str) -> str | None:
        subscription = _SUBSCRIPTION_PREFIX.match(key)
        if subscription and subscription.group("subscription").lower() != (
            self._config.subscription_id.lower()
        ):
            raise ProviderError(
                f"Resource is outside subscription {self._config.subscription_id}", key=key
            )
        match = _RESOURCE_GROUP_ID.match(key)
        return match.group("name") if match else None

    def _api_version(self, key: str) -> str:
        known = self._api_versions.get(key.lower())
        if known:
            return known

        parsed = parse_resource_type(key)
        if parsed is None:
            return self._config.default_api_version

        type_key = "/".join(parsed).lower()
        if type_key not in self._type_versions:
            self._type_versions[type_key] = self._lookup_api_version(*parsed)
        return self._type_versions[type_key] or self._config.default_api_version

    def _lookup_api_version(self, namespace: str, resource_type: str) -> str | None:
        """Latest stable API version registered for a resource type."""
        try:
            provider = self._client.providers.get(namespace)
        except AzureError as e:
            logger.warning(
                "Could not look up API versions",
                extra={"namespace": namespace, "error": str(e)},
            )
            return None

        for registered in provider.resource_types or []:
            if (registered.resource_type or "").lower() != resource_type.lower():
                continue
            versions = sorted(
                (v for v in registered.api_versions or [] if "preview" not in v),
                reverse=True,
            )
            if versions:
                return versions[0]
        return None

    def _translate(self, error: AzureError, key: str, operation: str) -> ProviderError:
        transient = is_transient(error)
        status = getattr(error, "status_code", None)
        logger.warning(
            f"Azure {operation} failed",
            extra={
                "key": key,
                "status_code": status,
                "transient": transient,
                "error": str(error),
            },
        )
        return ProviderError(f"Azure {operation} failed: {error}", key=key, transient=transient)
