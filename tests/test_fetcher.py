"""
Tests for the ARM-backed entity fetcher.
"""

from unittest.mock import Mock

import pytest

from azops_discovery.arm_client import ArmClientError, NotFoundError
from azops_discovery.fetcher import (
    POLICY_ASSIGNMENTS_API_VERSION,
    POLICY_DEFINITIONS_API_VERSION,
    ArmEntityFetcher,
)

from conftest import SUB_CORP, make_policy, mg_id, rg_id, sub_id


@pytest.fixture
def client():
    return Mock()


@pytest.fixture
def arm_fetcher(client):
    return ArmEntityFetcher(client)


class TestPolicyQueries:
    """Policy collections are limited to custom artifacts defined at the scope."""

    def test_custom_definitions_at_subscription(self, arm_fetcher, client, parser):
        scope = parser.parse(sub_id(SUB_CORP))
        own = make_policy(scope.id, "policyDefinitions", "mine")
        inherited = make_policy(mg_id("contoso"), "policyDefinitions", "from-root")
        client.paginate.return_value = iter([own, inherited])

        assert arm_fetcher.list_policy_definitions(scope) == [own]

        args, kwargs = client.paginate.call_args
        assert args[0] == f"{scope.id}/providers/Microsoft.Authorization/policyDefinitions"
        assert args[1] == POLICY_DEFINITIONS_API_VERSION
        assert kwargs["params"] == {"$filter": "policyType eq 'Custom'"}

    def test_set_definitions_at_management_group(self, arm_fetcher, client, parser):
        scope = parser.parse(mg_id("platform"))
        own = make_policy(scope.id.lower(), "policySetDefinitions", "initiative")
        client.paginate.return_value = iter([own])

        assert arm_fetcher.list_policy_set_definitions(scope) == [own]
        assert client.paginate.call_args.args[0].endswith("/policySetDefinitions")

    def test_no_definitions_at_resource_group(self, arm_fetcher, client, parser):
        scope = parser.parse(rg_id(SUB_CORP, "rg-app"))

        assert arm_fetcher.list_policy_definitions(scope) == []
        assert arm_fetcher.list_policy_set_definitions(scope) == []
        client.paginate.assert_not_called()

    def test_assignments_at_exact_scope(self, arm_fetcher, client, parser):
        scope = parser.parse(rg_id(SUB_CORP, "rg-app"))
        own = make_policy(scope.id, "policyAssignments", "tags")
        inherited = make_policy(sub_id(SUB_CORP), "policyAssignments", "from-sub")
        client.paginate.return_value = iter([own, inherited])

        assert arm_fetcher.list_policy_assignments(scope) == [own]
        args, kwargs = client.paginate.call_args
        assert args[1] == POLICY_ASSIGNMENTS_API_VERSION
        assert kwargs["params"] == {"$filter": "atExactScope()"}


class TestEntityQueries:
    """Tests for hierarchy and resource reads."""

    def test_list_resource_groups(self, arm_fetcher, client):
        client.paginate.return_value = iter([{"id": "a"}, {"id": "b"}])
        assert arm_fetcher.list_resource_groups(SUB_CORP) == [{"id": "a"}, {"id": "b"}]
        assert client.paginate.call_args.args[0] == f"/subscriptions/{SUB_CORP}/resourcegroups"

    def test_get_resource_group_not_found(self, arm_fetcher, client):
        client.get_json.side_effect = NotFoundError("rg")
        assert arm_fetcher.get_resource_group(SUB_CORP, "rg-gone") is None

    def test_get_subscription_error_propagates(self, arm_fetcher, client):
        client.get_json.side_effect = ArmClientError("denied", status_code=403)
        with pytest.raises(ArmClientError):
            arm_fetcher.get_subscription(SUB_CORP)

    def test_tree_is_expanded(self, arm_fetcher, client):
        client.get_json.return_value = {"name": "contoso"}
        arm_fetcher.get_management_group_tree_raw("contoso")
        kwargs = client.get_json.call_args.kwargs
        assert kwargs["params"] == {"$expand": "children", "$recurse": "true"}


class TestGetResource:
    """Tests for api-version resolution."""

    RESOURCE_ID = f"{rg_id(SUB_CORP, 'rg-app')}/providers/Microsoft.Storage/storageAccounts/stapp"

    def provider(self):
        return {
            "namespace": "Microsoft.Storage",
            "resourceTypes": [
                {"resourceType": "operations", "apiVersions": ["2023-01-01"]},
                {"resourceType": "storageAccounts", "apiVersions": ["2024-01-01-preview", "2023-05-01", "2022-09-01"]},
            ],
        }

    def test_prefers_stable_version(self, arm_fetcher, client):
        client.get_json.side_effect = [self.provider(), {"id": self.RESOURCE_ID}]

        assert arm_fetcher.get_resource(self.RESOURCE_ID) == {"id": self.RESOURCE_ID}

        provider_call, resource_call = client.get_json.call_args_list
        assert provider_call.args[0] == f"/subscriptions/{SUB_CORP}/providers/Microsoft.Storage"
        assert resource_call.args == (self.RESOURCE_ID, "2023-05-01")

    def test_api_version_cached(self, arm_fetcher, client):
        client.get_json.side_effect = [self.provider(), {"id": "a"}, {"id": "b"}]

        arm_fetcher.get_resource(self.RESOURCE_ID)
        arm_fetcher.get_resource(self.RESOURCE_ID.replace("stapp", "stother"))

        assert client.get_json.call_count == 3

    def test_not_found(self, arm_fetcher, client):
        client.get_json.side_effect = [self.provider(), NotFoundError(self.RESOURCE_ID)]
        assert arm_fetcher.get_resource(self.RESOURCE_ID) is None

    def test_unknown_type(self, arm_fetcher, client):
        client.get_json.return_value = {"resourceTypes": []}
        with pytest.raises(ArmClientError) as exc_info:
            arm_fetcher.get_resource(self.RESOURCE_ID)
        assert exc_info.value.is_transient is False

    def test_not_a_resource_id(self, arm_fetcher):
        with pytest.raises(ArmClientError):
            arm_fetcher.get_resource(sub_id(SUB_CORP))
