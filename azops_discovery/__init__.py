"""
AzOps Discovery - exports an Azure hierarchy as file-based state.

Walks management groups, subscriptions, resource groups and resources and
writes one ARM parameters file per entity for GitOps-style tracking.
No write operations are performed against Azure.
"""

__version__ = "0.1.0"

from .discovery import DiscoveryEngine, DiscoveryReport
from .orchestrator import DiscoveryOrchestrator, run_discovery
from .scope import Scope, ScopeKind, ScopeParser, ScopeValidationError

__all__ = [
    "DiscoveryEngine",
    "DiscoveryOrchestrator",
    "DiscoveryReport",
    "Scope",
    "ScopeKind",
    "ScopeParser",
    "ScopeValidationError",
    "run_discovery",
    "__version__",
]
