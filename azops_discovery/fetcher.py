"""
Entity fetcher - the ARM read calls discovery needs.

Every method returns raw ARM documents (plain dicts) in the order ARM
returned them. Missing single entities come back as None; everything else
that goes wrong surfaces as ArmClientError so the caller can decide whether
to retry.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Protocol

from .arm_client import ArmClient, ArmClientError, NotFoundError
from .scope import Scope, ScopeKind

logger = logging.getLogger(__name__)

MANAGEMENT_GROUPS_API_VERSION = "2020-05-01"
SUBSCRIPTIONS_API_VERSION = "2020-01-01"
RESOURCES_API_VERSION = "2021-04-01"
POLICY_DEFINITIONS_API_VERSION = "2021-06-01"
POLICY_ASSIGNMENTS_API_VERSION = "2022-06-01"

POLICY_NAMESPACE = "Microsoft.Authorization"


class EntityFetcher(Protocol):
    """Read interface used by the discovery engine and policy aggregator."""

    def list_resource_groups(self, subscription_id: str) -> list[dict[str, Any]]: ...

    def get_resource_group(self, subscription_id: str, name: str) -> dict[str, Any] | None: ...

    def list_resources(self, resource_group: str, subscription_id: str) -> list[dict[str, Any]]: ...

    def get_resource(self, resource_id: str) -> dict[str, Any] | None: ...

    def get_subscription(self, subscription_id: str) -> dict[str, Any] | None: ...

    def list_policy_definitions(self, scope: Scope) -> list[dict[str, Any]]: ...

    def list_policy_set_definitions(self, scope: Scope) -> list[dict[str, Any]]: ...

    def list_policy_assignments(self, scope: Scope) -> list[dict[str, Any]]: ...


def _defined_at(item: dict[str, Any], scope: Scope) -> bool:
    """True when an artifact's id lives directly under ``scope``."""
    prefix = f"{scope.id}/providers/{POLICY_NAMESPACE}/".lower()
    return (item.get("id") or "").lower().startswith(prefix)


class ArmEntityFetcher:
    """
    Entity fetcher backed by the ARM REST API.

    Args:
        client: Configured ArmClient
    """

    def __init__(self, client: ArmClient):
        self.client = client
        self._api_versions: dict[str, str] = {}
        self._api_versions_lock = Lock()

    # Hierarchy

    def list_subscriptions(self) -> list[dict[str, Any]]:
        return list(self.client.paginate("/subscriptions", SUBSCRIPTIONS_API_VERSION))

    def get_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        try:
            return self.client.get_json(f"/subscriptions/{subscription_id}", SUBSCRIPTIONS_API_VERSION)
        except NotFoundError:
            return None

    def get_management_group_tree_raw(self, name: str) -> dict[str, Any]:
        """Fetch a management group with all descendants expanded."""
        return self.client.get_json(
            f"/providers/Microsoft.Management/managementGroups/{name}",
            MANAGEMENT_GROUPS_API_VERSION,
            params={"$expand": "children", "$recurse": "true"},
        )

    # Resource groups and resources

    def list_resource_groups(self, subscription_id: str) -> list[dict[str, Any]]:
        return list(self.client.paginate(
            f"/subscriptions/{subscription_id}/resourcegroups", RESOURCES_API_VERSION,
        ))

    def get_resource_group(self, subscription_id: str, name: str) -> dict[str, Any] | None:
        try:
            return self.client.get_json(
                f"/subscriptions/{subscription_id}/resourcegroups/{name}", RESOURCES_API_VERSION,
            )
        except NotFoundError:
            return None

    def list_resources(self, resource_group: str, subscription_id: str) -> list[dict[str, Any]]:
        return list(self.client.paginate(
            f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}/resources",
            RESOURCES_API_VERSION,
        ))

    def get_resource(self, resource_id: str) -> dict[str, Any] | None:
        """
        Fetch one resource by id.

        The api-version is resolved from the provider's registered
        resource types and cached per type.
        """
        try:
            api_version = self._resolve_api_version(resource_id)
            return self.client.get_json(resource_id, api_version)
        except NotFoundError:
            return None

    def _resolve_api_version(self, resource_id: str) -> str:
        namespace, resource_type, subscription_id = self._split_resource_type(resource_id)
        cache_key = f"{namespace}/{resource_type}".lower()

        with self._api_versions_lock:
            cached = self._api_versions.get(cache_key)
        if cached:
            return cached

        if subscription_id:
            path = f"/subscriptions/{subscription_id}/providers/{namespace}"
        else:
            path = f"/providers/{namespace}"
        provider = self.client.get_json(path, RESOURCES_API_VERSION)

        for entry in provider.get("resourceTypes") or []:
            if (entry.get("resourceType") or "").lower() != resource_type.lower():
                continue
            versions = entry.get("apiVersions") or []
            stable = [v for v in versions if "preview" not in v.lower()]
            if stable or versions:
                api_version = (stable or versions)[0]
                with self._api_versions_lock:
                    self._api_versions[cache_key] = api_version
                return api_version

        raise ArmClientError(
            f"No api-version registered for {namespace}/{resource_type}", status_code=400,
        )

    @staticmethod
    def _split_resource_type(resource_id: str) -> tuple[str, str, str | None]:
        """Return (namespace, type path, subscription id) for a resource id."""
        segments = resource_id.strip("/").split("/")
        subscription_id = None
        if len(segments) > 1 and segments[0].lower() == "subscriptions":
            subscription_id = segments[1]

        lowered = [s.lower() for s in segments]
        if "providers" not in lowered:
            raise ArmClientError(f"Not a resource id: {resource_id}", status_code=400)
        index = len(lowered) - 1 - lowered[::-1].index("providers")
        tail = segments[index + 1:]
        if len(tail) < 3:
            raise ArmClientError(f"Not a resource id: {resource_id}", status_code=400)
        return tail[0], "/".join(tail[1::2]), subscription_id

    # Policy artifacts

    def list_policy_definitions(self, scope: Scope) -> list[dict[str, Any]]:
        """Custom policy definitions defined exactly at ``scope``."""
        return self._list_custom_definitions(scope, "policyDefinitions")

    def list_policy_set_definitions(self, scope: Scope) -> list[dict[str, Any]]:
        """Custom policy set definitions (initiatives) defined exactly at ``scope``."""
        return self._list_custom_definitions(scope, "policySetDefinitions")

    def list_policy_assignments(self, scope: Scope) -> list[dict[str, Any]]:
        """Policy assignments made exactly at ``scope`` (inherited ones excluded)."""
        items = self.client.paginate(
            f"{scope.id}/providers/{POLICY_NAMESPACE}/policyAssignments",
            POLICY_ASSIGNMENTS_API_VERSION,
            params={"$filter": "atExactScope()"},
        )
        return [item for item in items if _defined_at(item, scope)]

    def _list_custom_definitions(self, scope: Scope, collection: str) -> list[dict[str, Any]]:
        # Definitions cannot be created at resource group level
        if scope.kind not in (ScopeKind.MANAGEMENT_GROUP, ScopeKind.SUBSCRIPTION):
            return []
        items = self.client.paginate(
            f"{scope.id}/providers/{POLICY_NAMESPACE}/{collection}",
            POLICY_DEFINITIONS_API_VERSION,
            params={"$filter": "policyType eq 'Custom'"},
        )
        return [item for item in items if _defined_at(item, scope)]
