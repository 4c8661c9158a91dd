"""
Orchestrator - runs one discovery pass end to end.

Bootstraps the client, the known subscriptions and the management group
tree (once, before any traversal), parses the requested scopes, then hands
each scope to the discovery engine.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from .arm_client import ArmClient
from .config import DiscoveryConfig, ensure_state_dir
from .discovery import DiscoveryEngine, DiscoveryReport
from .fetcher import ArmEntityFetcher
from .filters import is_eligible_subscription
from .metrics import DiscoveryMetrics
from .retry import with_retry
from .scope import Scope, ScopeParser
from .state import StateWriter
from .tree import ManagementGroupTree
from .utils import clear_state, now_iso

logger = logging.getLogger(__name__)


class DiscoveryOrchestrator:
    """
    Orchestrates a discovery run.

    Args:
        config: Discovery configuration
        fetcher: Entity fetcher (an ARM-backed one is created when omitted)
        cancel_event: Set from outside to stop the run
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        fetcher: Any = None,
        cancel_event: threading.Event | None = None,
    ):
        self.config = config
        self.client: ArmClient | None = None
        self.fetcher = fetcher
        self.cancel_event = cancel_event or threading.Event()
        self.metrics = DiscoveryMetrics()
        self.report = DiscoveryReport()
        self.tree: ManagementGroupTree | None = None
        self.subscriptions: frozenset[str] | None = None
        self._root_hint: str | None = None

        self.started_at: str = ""
        self.finished_at: str = ""

    def run(self, scope_ids: list[str] | None = None) -> DiscoveryReport:
        """
        Run discovery for ``scope_ids`` (or the configured default scopes).

        Raises:
            ScopeValidationError: If any requested scope is malformed;
                nothing is discovered in that case
            ArmClientError / RetryExhaustedError: If bootstrap fails
            DiscoveryCancelled: If the run was cancelled
        """
        self.started_at = now_iso()
        started = time.monotonic()
        try:
            self._initialize()
            self.subscriptions = self._load_subscriptions()
            self.tree = self._build_tree()

            state_dir = ensure_state_dir(self.config)
            parser = ScopeParser(self.tree, state_dir)
            scopes = self._resolve_scopes(parser, scope_ids)

            if self.config.rebuild:
                clear_state(state_dir)

            engine = self._create_engine(parser)
            self._run_engine(engine, scopes)
            return self.report

        finally:
            self.finished_at = now_iso()
            self._finalize(int((time.monotonic() - started) * 1000))
            self._cleanup()

    def _initialize(self) -> None:
        if self.fetcher is not None:
            return
        self.client = ArmClient(
            base_url=self.config.arm_endpoint,
            token=self.config.access_token,
            timeout=self.config.timeout,
            verify_ssl=self.config.verify_ssl,
        )
        self.fetcher = ArmEntityFetcher(self.client)

    def _retry(self, operation, description: str):
        return with_retry(
            operation,
            description=description,
            max_attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            cancel_event=self.cancel_event,
        )

    def _load_subscriptions(self) -> frozenset[str]:
        """Ids of the subscriptions the caller can see and that are not excluded."""
        subscriptions = self._retry(self.fetcher.list_subscriptions, "list_subscriptions")
        known = set()
        for subscription in subscriptions:
            if is_eligible_subscription(
                subscription,
                excluded_states=self.config.excluded_sub_states,
                excluded_offers=self.config.excluded_sub_offers,
            ):
                known.add(subscription["subscriptionId"].lower())
            else:
                logger.info(
                    f"Excluding subscription {subscription.get('displayName')} "
                    f"({subscription.get('subscriptionId')}): state={subscription.get('state')}"
                )

        self._root_hint = next(
            (s.get("tenantId") for s in subscriptions if s.get("tenantId")), None
        )
        logger.info(f"{len(known)} of {len(subscriptions)} subscriptions eligible for discovery")
        return frozenset(known)

    def _build_tree(self) -> ManagementGroupTree:
        # The tenant root group is named after the tenant id
        root = self.config.root_management_group or self._root_hint
        if not root:
            logger.warning("No root management group known; discovering without hierarchy")
            return ManagementGroupTree.empty()

        raw = self._retry(
            lambda: self.fetcher.get_management_group_tree_raw(root),
            f"get_management_group_tree {root}",
        )
        return ManagementGroupTree.from_arm(raw)

    def _resolve_scopes(self, parser: ScopeParser, scope_ids: list[str] | None) -> list[Scope]:
        requested = list(scope_ids or self.config.default_scopes)
        if not requested and self.tree is not None and self.tree.root_name:
            requested = [f"/providers/Microsoft.Management/managementGroups/{self.tree.root_name}"]
        if not requested:
            raise ValueError("No scope to discover: pass --scope or set AZOPS_ROOT_MANAGEMENT_GROUP")

        # Parse everything first so one bad scope aborts before any write
        return [parser.parse(scope_id) for scope_id in requested]

    def _create_engine(self, parser: ScopeParser) -> DiscoveryEngine:
        writer = StateWriter(parser, excluded_properties=self.config.state_excluded_properties)
        return DiscoveryEngine(
            self.fetcher,
            parser,
            writer,
            throttle_limit=self.config.throttle_limit,
            management_group_concurrency=self.config.management_group_concurrency,
            retry_attempts=self.config.retry_attempts,
            retry_base_delay=self.config.retry_base_delay,
            retry_max_delay=self.config.retry_max_delay,
            report=self.report,
            metrics=self.metrics,
            cancel_event=self.cancel_event,
        )

    def _run_engine(self, engine: DiscoveryEngine, scopes: list[Scope]) -> None:
        """Traverse on a worker thread so Ctrl+C reaches the main thread."""

        def discover_all() -> None:
            for scope in scopes:
                logger.info(f"Starting discovery at {scope.id}")
                engine.discover(
                    scope,
                    skip_policy=self.config.skip_policy,
                    skip_resource_group=self.config.skip_resource_group,
                    subscriptions=self.subscriptions,
                )

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="azops-run") as runner:
            future = runner.submit(discover_all)
            try:
                future.result()
            except KeyboardInterrupt:
                logger.warning("Interrupted, cancelling discovery")
                self.cancel_event.set()
                raise

    def _finalize(self, duration_ms: int) -> None:
        if self.client is not None:
            for outcome, value in self.client.stats.as_dict().items():
                self.metrics.api_calls.set(value, labels={"outcome": outcome})

        if self.config.metrics_file:
            path = self.metrics.write(Path(self.config.metrics_file))
            logger.info(f"Metrics written to {path}")

        summary = self.report.as_dict()
        logger.info(
            f"Discovery finished: {summary['scopes_discovered']} scopes, "
            f"{summary['records_written']} records, {len(summary['warnings'])} warnings, "
            f"{len(summary['errors'])} errors",
            extra={"duration_ms": duration_ms},
        )

    def _cleanup(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None


def run_discovery(
    config: DiscoveryConfig,
    scope_ids: list[str] | None = None,
    cancel_event: threading.Event | None = None,
) -> DiscoveryReport:
    """
    Convenience function to run discovery.

    Args:
        config: Discovery configuration
        scope_ids: Scopes to discover (defaults from the configuration)
        cancel_event: Optional external cancellation signal

    Returns:
        Report of the run
    """
    orchestrator = DiscoveryOrchestrator(config, cancel_event=cancel_event)
    return orchestrator.run(scope_ids)
