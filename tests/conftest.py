"""
Shared fixtures: an in-memory fetcher and a small tenant.

Tenant layout used throughout the tests:

    contoso (root)
    ├── platform
    │   └── SUB_PLATFORM
    └── landingzones
        ├── SUB_CORP
        └── SUB_DISABLED
"""

import copy
from threading import Lock

import pytest

from azops_discovery.arm_client import ArmClientError
from azops_discovery.scope import ScopeParser
from azops_discovery.state import StateWriter
from azops_discovery.tree import ManagementGroupTree

SUB_PLATFORM = "11111111-1111-1111-1111-111111111111"
SUB_CORP = "22222222-2222-2222-2222-222222222222"
SUB_DISABLED = "33333333-3333-3333-3333-333333333333"
TENANT_ID = "contoso"

MG_PREFIX = "/providers/Microsoft.Management/managementGroups"


def mg_id(name):
    return f"{MG_PREFIX}/{name}"


def sub_id(subscription):
    return f"/subscriptions/{subscription}"


def rg_id(subscription, name):
    return f"/subscriptions/{subscription}/resourceGroups/{name}"


def make_resource_group(subscription, name, managed_by=None):
    rg = {
        "id": rg_id(subscription, name),
        "name": name,
        "type": "Microsoft.Resources/resourceGroups",
        "location": "westeurope",
        "properties": {"provisioningState": "Succeeded"},
    }
    if managed_by is not None:
        rg["managedBy"] = managed_by
    return rg


def make_resource(subscription, rg, name, resource_type="Microsoft.Storage/storageAccounts"):
    return {
        "id": f"{rg_id(subscription, rg)}/providers/{resource_type}/{name}",
        "name": name,
        "type": resource_type,
        "location": "westeurope",
        "etag": "W/\"volatile\"",
    }


def make_policy(scope_id, collection, name):
    return {
        "id": f"{scope_id}/providers/Microsoft.Authorization/{collection}/{name}",
        "name": name,
        "type": f"Microsoft.Authorization/{collection}",
        "properties": {"displayName": name},
    }


def tree_raw():
    """Management group document as returned with $expand=children&$recurse=true."""
    return {
        "id": mg_id("contoso"),
        "type": "Microsoft.Management/managementGroups",
        "name": "contoso",
        "properties": {
            "tenantId": TENANT_ID,
            "displayName": "Tenant Root Group",
            "children": [
                {
                    "id": mg_id("platform"),
                    "type": "Microsoft.Management/managementGroups",
                    "name": "platform",
                    "displayName": "Platform",
                    "children": [
                        {
                            "id": sub_id(SUB_PLATFORM),
                            "type": "/subscriptions",
                            "name": SUB_PLATFORM,
                            "displayName": "platform-connectivity",
                        },
                    ],
                },
                {
                    "id": mg_id("landingzones"),
                    "type": "Microsoft.Management/managementGroups",
                    "name": "landingzones",
                    "displayName": "Landing Zones",
                    "children": [
                        {
                            "id": sub_id(SUB_CORP),
                            "type": "/subscriptions",
                            "name": SUB_CORP,
                            "displayName": "corp-prod",
                        },
                        {
                            "id": sub_id(SUB_DISABLED),
                            "type": "/subscriptions",
                            "name": SUB_DISABLED,
                            "displayName": "old-sandbox",
                        },
                    ],
                },
            ],
        },
    }


class FakeFetcher:
    """
    In-memory entity fetcher.

    ``failures`` maps (method, key) to the number of times the call raises a
    transient ArmClientError before succeeding; use a large number for a
    permanent failure.
    """

    def __init__(self):
        self.subscriptions = []
        self.tree = tree_raw()
        self.resource_groups = {}
        self.resources = {}
        self.single_resources = {}
        self.subscription_entities = {}
        self.policy_definitions = {}
        self.policy_set_definitions = {}
        self.policy_assignments = {}
        self.failures = {}
        self.calls = []
        self._lock = Lock()

    def _record(self, method, key):
        with self._lock:
            self.calls.append((method, key))
            remaining = self.failures.get((method, key), 0)
            if remaining:
                self.failures[(method, key)] = remaining - 1
                raise ArmClientError(f"{method} {key}: credential not ready", status_code=401)

    def calls_to(self, method):
        return [key for name, key in self.calls if name == method]

    def add_resource_group(self, subscription, name, managed_by=None, resources=()):
        rg = make_resource_group(subscription, name, managed_by)
        self.resource_groups.setdefault(subscription, []).append(rg)
        self.resources[(subscription, name.lower())] = [
            make_resource(subscription, name, r) for r in resources
        ]
        return rg

    def list_subscriptions(self):
        self._record("list_subscriptions", None)
        return copy.deepcopy(self.subscriptions)

    def get_management_group_tree_raw(self, name):
        self._record("get_management_group_tree_raw", name)
        return copy.deepcopy(self.tree)

    def list_resource_groups(self, subscription_id):
        self._record("list_resource_groups", subscription_id)
        return copy.deepcopy(self.resource_groups.get(subscription_id, []))

    def get_resource_group(self, subscription_id, name):
        self._record("get_resource_group", (subscription_id, name))
        for rg in self.resource_groups.get(subscription_id, []):
            if rg["name"].lower() == name.lower():
                return copy.deepcopy(rg)
        return None

    def list_resources(self, resource_group, subscription_id):
        self._record("list_resources", (subscription_id, resource_group.lower()))
        return copy.deepcopy(self.resources.get((subscription_id, resource_group.lower()), []))

    def get_resource(self, resource_id):
        self._record("get_resource", resource_id)
        resource = self.single_resources.get(resource_id.lower())
        return copy.deepcopy(resource) if resource else None

    def get_subscription(self, subscription_id):
        self._record("get_subscription", subscription_id)
        entity = self.subscription_entities.get(subscription_id)
        return copy.deepcopy(entity) if entity else None

    def list_policy_definitions(self, scope):
        self._record("list_policy_definitions", scope.id)
        return copy.deepcopy(self.policy_definitions.get(scope.id.lower(), []))

    def list_policy_set_definitions(self, scope):
        self._record("list_policy_set_definitions", scope.id)
        return copy.deepcopy(self.policy_set_definitions.get(scope.id.lower(), []))

    def list_policy_assignments(self, scope):
        self._record("list_policy_assignments", scope.id)
        return copy.deepcopy(self.policy_assignments.get(scope.id.lower(), []))


class RecordingWriter(StateWriter):
    """StateWriter that remembers the order of primary writes."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.order = []
        self._order_lock = Lock()

    def write(self, entity, path=None):
        written = super().write(entity, path)
        with self._order_lock:
            self.order.append(entity["id"].lower())
        return written


@pytest.fixture
def tree():
    return ManagementGroupTree.from_arm(tree_raw())


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "azops"


@pytest.fixture
def parser(tree, state_dir):
    return ScopeParser(tree, state_dir)


@pytest.fixture
def writer(parser):
    return RecordingWriter(parser, excluded_properties=("etag", "systemData"))


@pytest.fixture
def fetcher():
    return FakeFetcher()


def snapshot(directory):
    """Relative path -> bytes for every file under ``directory``."""
    return {
        str(path.relative_to(directory)): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }
