"""Configuration management for AzOps discovery."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_ARM_ENDPOINT = "https://management.azure.com"

DEFAULT_EXCLUDED_SUB_STATES = ("Disabled", "Deleted", "Warned", "Expired")
DEFAULT_EXCLUDED_SUB_OFFERS = (
    "AzurePass_2014-09-01",
    "FreeTrial_2014-09-01",
    "AAD_2015-09-01",
)
DEFAULT_STATE_EXCLUDED_PROPERTIES = ("etag", "systemData")


def _split_csv(value: str | None) -> tuple[str, ...] | None:
    """Split a comma-separated env value, returning None when unset."""
    if value is None:
        return None
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class DiscoveryConfig:
    """Configuration for an AzOps discovery run."""

    # Required settings
    access_token: str
    arm_endpoint: str = DEFAULT_ARM_ENDPOINT

    # Where state records are written
    state_dir: str = "./azops"

    # Default scope when none is given on the command line (tenant root group)
    root_management_group: Optional[str] = None

    # Traversal toggles
    skip_policy: bool = False
    skip_resource_group: bool = False
    rebuild: bool = False

    # Fan-out limits. Management group fan-out defaults to 1 to work around
    # a provider race during credential initialization.
    throttle_limit: int = 5
    management_group_concurrency: int = 1

    # Retry wrapper around the resource group / resource list calls
    retry_attempts: int = 10
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0

    # Subscription filtering
    excluded_sub_states: tuple[str, ...] = DEFAULT_EXCLUDED_SUB_STATES
    excluded_sub_offers: tuple[str, ...] = DEFAULT_EXCLUDED_SUB_OFFERS

    # Properties dropped from every state record
    state_excluded_properties: tuple[str, ...] = DEFAULT_STATE_EXCLUDED_PROPERTIES

    fail_on_error: bool = True
    timeout: int = 30
    verify_ssl: bool = True
    log_level: str = "INFO"
    log_format: str = "text"
    metrics_file: Optional[str] = None

    scopes: list[str] = field(default_factory=list)

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.access_token:
            raise ValueError("access_token is required")
        if not self.arm_endpoint:
            raise ValueError("arm_endpoint is required")

        # Normalize endpoint (remove trailing slash)
        self.arm_endpoint = self.arm_endpoint.rstrip("/")
        self.state_dir = os.path.expanduser(self.state_dir)

        if self.root_management_group == "":
            self.root_management_group = None

        if self.throttle_limit < 1:
            raise ValueError("throttle_limit must be at least 1")
        if self.management_group_concurrency < 1:
            raise ValueError("management_group_concurrency must be at least 1")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ValueError("retry delays must not be negative")
        if self.log_format not in ("text", "json"):
            raise ValueError(f"log_format must be 'text' or 'json', got {self.log_format!r}")

    @property
    def default_scopes(self) -> list[str]:
        """Scopes to discover when none were requested explicitly."""
        if self.scopes:
            return list(self.scopes)
        if self.root_management_group:
            return [f"/providers/Microsoft.Management/managementGroups/{self.root_management_group}"]
        return []

    @classmethod
    def from_env(cls, **overrides) -> "DiscoveryConfig":
        """Create configuration from environment variables with optional overrides."""
        load_dotenv()

        config_dict = {
            "access_token": os.getenv("AZURE_ACCESS_TOKEN", ""),
            "arm_endpoint": os.getenv("AZURE_ARM_ENDPOINT", DEFAULT_ARM_ENDPOINT),
            "state_dir": os.getenv("AZOPS_STATE", "./azops"),
            "root_management_group": os.getenv("AZOPS_ROOT_MANAGEMENT_GROUP") or None,
            "skip_policy": _env_bool("AZOPS_SKIP_POLICY"),
            "skip_resource_group": _env_bool("AZOPS_SKIP_RESOURCE_GROUP"),
            "rebuild": _env_bool("AZOPS_REBUILD"),
            "throttle_limit": int(os.getenv("AZOPS_THROTTLE_LIMIT", "5")),
            "management_group_concurrency": int(os.getenv("AZOPS_MG_CONCURRENCY", "1")),
            "retry_attempts": int(os.getenv("AZOPS_RETRY_ATTEMPTS", "10")),
            "retry_base_delay": float(os.getenv("AZOPS_RETRY_BASE_DELAY", "0.5")),
            "retry_max_delay": float(os.getenv("AZOPS_RETRY_MAX_DELAY", "8.0")),
            "excluded_sub_states": _split_csv(os.getenv("AZOPS_EXCLUDED_SUB_STATES"))
            or DEFAULT_EXCLUDED_SUB_STATES,
            "excluded_sub_offers": _split_csv(os.getenv("AZOPS_EXCLUDED_SUB_OFFERS"))
            or DEFAULT_EXCLUDED_SUB_OFFERS,
            "state_excluded_properties": _split_csv(os.getenv("AZOPS_STATE_EXCLUDED_PROPERTIES"))
            or DEFAULT_STATE_EXCLUDED_PROPERTIES,
            "fail_on_error": _env_bool("AZOPS_FAIL_ON_ERROR", "true"),
            "timeout": int(os.getenv("TIMEOUT", "30")),
            "verify_ssl": os.getenv("VERIFY_SSL", "true").lower() == "true",
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "log_format": os.getenv("LOG_FORMAT", "text"),
            "metrics_file": os.getenv("AZOPS_METRICS_FILE") or None,
        }

        # Apply overrides (filter out None values from CLI)
        for key, value in overrides.items():
            if value is not None:
                config_dict[key] = value

        return cls(**config_dict)


def ensure_state_dir(config: DiscoveryConfig) -> Path:
    """
    Ensure the state directory exists and return it as a Path.

    Args:
        config: Discovery configuration

    Returns:
        Path object for the state directory
    """
    state_path = Path(config.state_dir)
    state_path.mkdir(parents=True, exist_ok=True)
    return state_path
