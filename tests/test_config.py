"""
Tests for configuration loading and validation.
"""

from unittest.mock import patch

import pytest

from azops_discovery.config import (
    DEFAULT_EXCLUDED_SUB_STATES,
    DiscoveryConfig,
    ensure_state_dir,
)

ENV_VARS = (
    "AZURE_ACCESS_TOKEN",
    "AZURE_ARM_ENDPOINT",
    "AZOPS_STATE",
    "AZOPS_ROOT_MANAGEMENT_GROUP",
    "AZOPS_SKIP_POLICY",
    "AZOPS_SKIP_RESOURCE_GROUP",
    "AZOPS_THROTTLE_LIMIT",
    "AZOPS_MG_CONCURRENCY",
    "AZOPS_RETRY_ATTEMPTS",
    "AZOPS_EXCLUDED_SUB_STATES",
    "AZOPS_STATE_EXCLUDED_PROPERTIES",
    "AZOPS_FAIL_ON_ERROR",
    "LOG_FORMAT",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Environment without any discovery settings and no .env loading."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    with patch("azops_discovery.config.load_dotenv"):
        yield monkeypatch


class TestDiscoveryConfig:
    """Tests for defaults and validation."""

    def test_defaults(self):
        config = DiscoveryConfig(access_token="token")
        assert config.arm_endpoint == "https://management.azure.com"
        assert config.throttle_limit == 5
        assert config.management_group_concurrency == 1
        assert config.retry_attempts == 10
        assert config.fail_on_error is True
        assert config.state_excluded_properties == ("etag", "systemData")

    def test_missing_token(self):
        with pytest.raises(ValueError, match="access_token"):
            DiscoveryConfig(access_token="")

    def test_endpoint_normalized(self):
        config = DiscoveryConfig(access_token="token", arm_endpoint="https://management.usgovcloudapi.net/")
        assert config.arm_endpoint == "https://management.usgovcloudapi.net"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("throttle_limit", 0),
            ("management_group_concurrency", 0),
            ("retry_attempts", 0),
            ("retry_base_delay", -1.0),
            ("log_format", "xml"),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValueError):
            DiscoveryConfig(access_token="token", **{field: value})

    def test_default_scopes(self):
        assert DiscoveryConfig(access_token="token").default_scopes == []

        config = DiscoveryConfig(access_token="token", root_management_group="contoso")
        assert config.default_scopes == ["/providers/Microsoft.Management/managementGroups/contoso"]

        config = DiscoveryConfig(access_token="token", root_management_group="contoso", scopes=["/subscriptions/x"])
        assert config.default_scopes == ["/subscriptions/x"]


class TestFromEnv:
    """Tests for environment loading."""

    def test_reads_environment(self, clean_env):
        clean_env.setenv("AZURE_ACCESS_TOKEN", "env-token")
        clean_env.setenv("AZOPS_ROOT_MANAGEMENT_GROUP", "contoso")
        clean_env.setenv("AZOPS_SKIP_POLICY", "true")
        clean_env.setenv("AZOPS_THROTTLE_LIMIT", "8")
        clean_env.setenv("AZOPS_EXCLUDED_SUB_STATES", "Disabled, Deleted")
        clean_env.setenv("AZOPS_STATE_EXCLUDED_PROPERTIES", "etag")
        clean_env.setenv("AZOPS_FAIL_ON_ERROR", "false")

        config = DiscoveryConfig.from_env()

        assert config.access_token == "env-token"
        assert config.root_management_group == "contoso"
        assert config.skip_policy is True
        assert config.skip_resource_group is False
        assert config.throttle_limit == 8
        assert config.excluded_sub_states == ("Disabled", "Deleted")
        assert config.state_excluded_properties == ("etag",)
        assert config.fail_on_error is False

    def test_defaults_when_unset(self, clean_env):
        clean_env.setenv("AZURE_ACCESS_TOKEN", "env-token")

        config = DiscoveryConfig.from_env()

        assert config.root_management_group is None
        assert config.excluded_sub_states == DEFAULT_EXCLUDED_SUB_STATES
        assert config.fail_on_error is True

    def test_overrides_win(self, clean_env):
        clean_env.setenv("AZURE_ACCESS_TOKEN", "env-token")
        clean_env.setenv("AZOPS_THROTTLE_LIMIT", "8")

        config = DiscoveryConfig.from_env(throttle_limit=2, state_dir=None)

        assert config.throttle_limit == 2
        assert config.state_dir == "./azops"

    def test_missing_token(self, clean_env):
        with pytest.raises(ValueError):
            DiscoveryConfig.from_env()


def test_ensure_state_dir(tmp_path):
    config = DiscoveryConfig(access_token="token", state_dir=str(tmp_path / "nested" / "azops"))
    path = ensure_state_dir(config)
    assert path.is_dir()
