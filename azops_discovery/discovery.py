"""
Discovery engine - recursive traversal of the scope hierarchy.

For each scope the engine writes the scope's own state record and the
records of everything beneath it:

    managementGroup -> child management groups and subscriptions (fan-out)
    subscription    -> resource groups (fan-out), then its own record
    resourceGroup   -> its own record, then its resources
    resource        -> its own record

Children always finish before the parent's record is written and before
its policy artifacts are merged, so a composite record on disk means the
subtree under it is done. Failures are contained: a missing entity is a
warning, a failing branch is a reported error, and neither stops siblings.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Callable

from .arm_client import ArmClientError
from .fetcher import EntityFetcher
from .filters import is_eligible_resource_group
from .metrics import DiscoveryMetrics
from .policy import PolicyAggregator
from .retry import DiscoveryCancelled, RetryExhaustedError, RetryState, with_retry
from .scope import Scope, ScopeKind, ScopeParser, ScopeValidationError
from .state import StateRecordError, StateWriter
from .tree import ManagementGroupTree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveryContext:
    """
    Per-branch snapshot handed to every traversal task.

    ``subscriptions`` is the set of known, eligible subscription ids
    (lower-case); None disables subscription filtering.
    """
    tree: ManagementGroupTree
    subscriptions: frozenset[str] | None = None
    skip_policy: bool = False
    skip_resource_group: bool = False

    def for_child(self) -> "DiscoveryContext":
        """Independent copy for a spawned task."""
        return replace(
            self,
            subscriptions=frozenset(self.subscriptions) if self.subscriptions is not None else None,
        )


@dataclass
class DiscoveryIssue:
    """One warning or error reported during a run."""
    step: str
    scope: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"step": self.step, "scope": self.scope, "message": self.message}


@dataclass
class DiscoveryReport:
    """Thread-safe tally of what a run produced and what went wrong."""
    records_written: int = 0
    scopes_discovered: int = 0
    warnings: list[DiscoveryIssue] = field(default_factory=list)
    errors: list[DiscoveryIssue] = field(default_factory=list)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_written(self) -> None:
        with self._lock:
            self.records_written += 1

    def scope_discovered(self) -> None:
        with self._lock:
            self.scopes_discovered += 1

    def add_warning(self, step: str, scope: str, message: str) -> None:
        with self._lock:
            self.warnings.append(DiscoveryIssue(step, scope, message))

    def add_error(self, step: str, scope: str, message: str) -> None:
        with self._lock:
            self.errors.append(DiscoveryIssue(step, scope, message))

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def as_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "records_written": self.records_written,
                "scopes_discovered": self.scopes_discovered,
                "warnings": [w.as_dict() for w in self.warnings],
                "errors": [e.as_dict() for e in self.errors],
            }


class DiscoveryEngine:
    """
    Walks the hierarchy below a scope and writes state records.

    Args:
        fetcher: Entity fetcher
        parser: Scope parser (holds the management group tree)
        writer: State writer
        throttle_limit: Concurrent resource group tasks per subscription
        management_group_concurrency: Concurrent child tasks per management
            group. Defaults to 1 because concurrent credential
            initialization races in the provider SDK; raise it once that
            is fixed.
        retry_attempts: Attempt ceiling for the retried list calls
        retry_base_delay: Backoff base in seconds (0 retries immediately)
        retry_max_delay: Backoff cap in seconds
        report: Collects warnings and errors (created when omitted)
        metrics: Optional run metrics
        cancel_event: Set to abort the run at the next task or retry boundary
    """

    def __init__(
        self,
        fetcher: EntityFetcher,
        parser: ScopeParser,
        writer: StateWriter,
        *,
        throttle_limit: int = 5,
        management_group_concurrency: int = 1,
        retry_attempts: int = 10,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
        report: DiscoveryReport | None = None,
        metrics: DiscoveryMetrics | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.fetcher = fetcher
        self.parser = parser
        self.writer = writer
        self.throttle_limit = throttle_limit
        self.management_group_concurrency = management_group_concurrency
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.report = report or DiscoveryReport()
        self.metrics = metrics
        self.cancel_event = cancel_event or threading.Event()
        self.policy = PolicyAggregator(fetcher, writer, metrics=metrics, cancel_event=self.cancel_event)

    def discover(
        self,
        scope: Scope,
        skip_policy: bool = False,
        skip_resource_group: bool = False,
        subscriptions: frozenset[str] | None = None,
    ) -> DiscoveryReport:
        """
        Discover ``scope`` and everything beneath it.

        Args:
            scope: Starting scope
            skip_policy: Do not collect policy artifacts
            skip_resource_group: Do not descend below subscriptions
            subscriptions: Known eligible subscription ids (None = all)

        Returns:
            The run report (shared across calls on this engine)

        Raises:
            DiscoveryCancelled: When the cancel event is set
        """
        context = DiscoveryContext(
            tree=self.parser.tree,
            subscriptions=frozenset(s.lower() for s in subscriptions) if subscriptions is not None else None,
            skip_policy=skip_policy,
            skip_resource_group=skip_resource_group,
        )
        self._discover(scope, context)
        return self.report

    # Traversal

    def _discover(self, scope: Scope, context: DiscoveryContext, entity: dict[str, Any] | None = None) -> None:
        self._check_cancelled()
        logger.info(f"Discovering {scope.kind.value} {scope.id}")
        self.report.scope_discovered()

        if scope.kind == ScopeKind.RESOURCE:
            self._discover_resource(scope)
            return

        if scope.kind == ScopeKind.RESOURCE_GROUP:
            written = self._discover_resource_group(scope, entity)
        elif scope.kind == ScopeKind.SUBSCRIPTION:
            written = self._discover_subscription(scope, context)
        else:
            written = self._discover_management_group(scope, context)

        if not written:
            return

        self._discover_roles(scope)

        if scope.supports_policy and not context.skip_policy:
            self._aggregate_policies(scope)

    def _discover_resource(self, scope: Scope) -> None:
        try:
            entity = self.fetcher.get_resource(scope.id)
        except ArmClientError as e:
            self._error("get_resource", scope.id, e)
            return

        if entity is None:
            self._warn("get_resource", scope.id, "Resource not found")
            return
        self._write(entity, scope)

    def _discover_resource_group(self, scope: Scope, entity: dict[str, Any] | None) -> bool:
        if entity is None:
            try:
                entity = self.fetcher.get_resource_group(scope.subscription_id, scope.name)
            except ArmClientError as e:
                self._error("get_resource_group", scope.id, e)
                return False
            if entity is None:
                self._warn("get_resource_group", scope.id, "Resource group not found")
                return False

        if not is_eligible_resource_group(entity):
            logger.info(f"Skipping resource group {scope.name}: managed by {entity.get('managedBy')}")
            return False

        written = self._write(entity, scope)

        resources = self._list_with_retry(
            lambda: self.fetcher.list_resources(scope.name, scope.subscription_id),
            step="list_resources",
            scope=scope,
        )
        for resource in resources:
            self._check_cancelled()
            self._write(resource)

        return written

    def _discover_subscription(self, scope: Scope, context: DiscoveryContext) -> bool:
        if not context.skip_resource_group:
            resource_groups = self._list_with_retry(
                lambda: self.fetcher.list_resource_groups(scope.subscription_id),
                step="list_resource_groups",
                scope=scope,
            )

            tasks = []
            for resource_group in resource_groups:
                if not is_eligible_resource_group(resource_group):
                    logger.info(
                        f"Skipping resource group {resource_group.get('name')}: "
                        f"managed by {resource_group.get('managedBy')}"
                    )
                    continue
                child = self._parse(resource_group.get("id"), "list_resource_groups")
                if child is not None:
                    tasks.append((child, resource_group))

            self._fan_out(tasks, context, self.throttle_limit)

        entry = context.tree.subscription_entry(scope.subscription_id)
        if entry is not None:
            entity = entry.as_entity()
        else:
            try:
                entity = self.fetcher.get_subscription(scope.subscription_id)
            except ArmClientError as e:
                self._error("get_subscription", scope.id, e)
                return False
        if entity is None:
            self._warn("get_subscription", scope.id, "Subscription not found")
            return False

        return self._write(entity, scope)

    def _discover_management_group(self, scope: Scope, context: DiscoveryContext) -> bool:
        node = context.tree.get(scope.name)
        if node is None:
            self._warn("management_group", scope.id, "Management group not in the cached hierarchy")
            return False

        tasks = []
        for child in node.children:
            if child.is_subscription:
                if context.subscriptions is not None and child.name.lower() not in context.subscriptions:
                    logger.info(f"Skipping subscription {child.name} ({child.display_name}): excluded or not accessible")
                    continue
            elif not child.is_management_group:
                logger.debug(f"Ignoring child {child.id} of type {child.type}")
                continue
            child_scope = self._parse(child.id, "management_group")
            if child_scope is not None:
                tasks.append((child_scope, None))

        self._fan_out(tasks, context, self.management_group_concurrency)

        return self._write(node.as_entity(), scope)

    def _discover_roles(self, scope: Scope) -> None:
        """
        Role definitions and assignments are not discovered.

        Kept as the hook where role discovery would run; the composite
        records carry ``roleDefinitions``/``roleAssignments`` as null.
        """
        logger.debug(f"Role discovery disabled, skipping {scope.id}")

    def _aggregate_policies(self, scope: Scope) -> None:
        try:
            self.policy.aggregate(scope)
        except (ArmClientError, StateRecordError, ScopeValidationError) as e:
            self._error("policy", scope.id, e)

    # Fan-out

    def _fan_out(
        self,
        tasks: list[tuple[Scope, dict[str, Any] | None]],
        context: DiscoveryContext,
        max_workers: int,
    ) -> None:
        """Discover child scopes concurrently and wait for all of them."""
        if not tasks:
            return

        cancelled = False
        with ThreadPoolExecutor(max_workers=min(max_workers, len(tasks)), thread_name_prefix="azops") as executor:
            futures = {
                executor.submit(self._discover, child, context.for_child(), entity): child
                for child, entity in tasks
            }
            for future in as_completed(futures):
                child = futures[future]
                try:
                    future.result()
                except DiscoveryCancelled:
                    cancelled = True
                except Exception as e:
                    logger.exception(f"Discovery of {child.id} failed: {e}")
                    self.report.add_error("discover", child.id, str(e))
                    if self.metrics:
                        self.metrics.errors.inc(labels={"step": "discover"})

        if cancelled:
            raise DiscoveryCancelled("Discovery cancelled")

    # Helpers

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise DiscoveryCancelled("Discovery cancelled")

    def _list_with_retry(
        self,
        operation: Callable[[], list[dict[str, Any]]],
        step: str,
        scope: Scope,
    ) -> list[dict[str, Any]]:
        """Run a list call through the retry wrapper; failures yield an empty list."""

        def on_retry(state: RetryState) -> None:
            if self.metrics:
                self.metrics.retries.inc(labels={"operation": step})

        try:
            return with_retry(
                operation,
                description=f"{step} {scope.id}",
                max_attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                cancel_event=self.cancel_event,
                on_retry=on_retry,
            )
        except (RetryExhaustedError, ArmClientError) as e:
            self._error(step, scope.id, e)
            return []

    def _parse(self, identifier: str | None, step: str) -> Scope | None:
        try:
            return self.parser.parse(identifier or "")
        except ScopeValidationError as e:
            self._error(step, identifier or "(missing id)", e)
            return None

    def _write(self, entity: dict[str, Any], scope: Scope | None = None) -> bool:
        """Write one record; the scope's own path is used when given."""
        entity_id = entity.get("id") or (scope.id if scope else "(missing id)")
        try:
            self.writer.write(entity, scope.state_path if scope else None)
        except (StateRecordError, ScopeValidationError) as e:
            self._error("write", entity_id, e)
            return False

        self.report.record_written()
        if self.metrics:
            kind = scope.kind.value if scope else ScopeKind.RESOURCE.value
            self.metrics.records_written.inc(labels={"kind": kind})
        return True

    def _warn(self, step: str, scope_id: str, message: str) -> None:
        logger.warning(f"{message}: {scope_id}", extra={"step": step, "scope": scope_id})
        self.report.add_warning(step, scope_id, message)
        if self.metrics:
            self.metrics.warnings.inc()

    def _error(self, step: str, scope_id: str, error: BaseException) -> None:
        logger.error(f"{step} failed for {scope_id}: {error}", extra={"step": step, "scope": scope_id})
        self.report.add_error(step, scope_id, str(error))
        if self.metrics:
            self.metrics.errors.inc(labels={"step": step})
