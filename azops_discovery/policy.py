"""
Policy aggregation for one scope.

Policy definitions, set definitions and assignments are each written as
their own state record. For subscriptions and management groups the three
collections are also folded, unconverted, into the scope's own record as
one property bag, in a single rewrite.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterator

from .fetcher import EntityFetcher
from .metrics import DiscoveryMetrics
from .retry import DiscoveryCancelled
from .scope import Scope
from .state import StateRecordError, StateWriter

logger = logging.getLogger(__name__)


@dataclass
class PolicyArtifactBag:
    """Policy artifacts of one scope, in upstream fetch order."""
    policy_definitions: list[dict[str, Any]] = field(default_factory=list)
    policy_set_definitions: list[dict[str, Any]] = field(default_factory=list)
    policy_assignments: list[dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.policy_definitions) + len(self.policy_set_definitions) + len(self.policy_assignments)

    def items(self) -> Iterator[dict[str, Any]]:
        yield from self.policy_definitions
        yield from self.policy_set_definitions
        yield from self.policy_assignments

    def to_properties(self) -> dict[str, Any]:
        """The property bag merged into composite records."""
        # Role discovery is disabled; the keys stay so the record shape is stable
        return {
            "policyDefinitions": copy.deepcopy(self.policy_definitions),
            "policySetDefinitions": copy.deepcopy(self.policy_set_definitions),
            "policyAssignments": copy.deepcopy(self.policy_assignments),
            "roleDefinitions": None,
            "roleAssignments": None,
        }


class PolicyAggregator:
    """
    Collects policy artifacts at a scope and merges them into its record.

    Args:
        fetcher: Entity fetcher for the three policy collections
        writer: State writer shared with the discovery engine
        metrics: Optional run metrics
        cancel_event: Checked between per-artifact writes
    """

    def __init__(
        self,
        fetcher: EntityFetcher,
        writer: StateWriter,
        metrics: DiscoveryMetrics | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.fetcher = fetcher
        self.writer = writer
        self.metrics = metrics
        self.cancel_event = cancel_event

    def collect(self, scope: Scope) -> PolicyArtifactBag:
        """Fetch all three collections; any failure propagates before anything is written."""
        return PolicyArtifactBag(
            policy_definitions=list(self.fetcher.list_policy_definitions(scope)),
            policy_set_definitions=list(self.fetcher.list_policy_set_definitions(scope)),
            policy_assignments=list(self.fetcher.list_policy_assignments(scope)),
        )

    def aggregate(self, scope: Scope) -> PolicyArtifactBag:
        """
        Write per-artifact records and, where supported, the composite record.

        Args:
            scope: Resource group, subscription or management group scope
                whose primary record has already been written

        Returns:
            The collected artifacts

        Raises:
            ArmClientError: When a policy collection cannot be fetched
            StateRecordError: When the primary record is missing or malformed
        """
        bag = self.collect(scope)
        logger.info(
            f"Policy at {scope.id}: {len(bag.policy_definitions)} definitions, "
            f"{len(bag.policy_set_definitions)} set definitions, "
            f"{len(bag.policy_assignments)} assignments"
        )

        for item in bag.items():
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise DiscoveryCancelled(f"Policy aggregation at {scope.id} cancelled")
            self.writer.write(item)
            if self.metrics:
                self.metrics.records_written.inc(labels={"kind": "policy"})

        if scope.supports_policy_composite:
            self.merge(scope, bag)

        return bag

    def merge(self, scope: Scope, bag: PolicyArtifactBag) -> None:
        """Fold the bag into the scope's existing record and rewrite it once."""
        record = self.writer.read_existing(scope.state_path)
        try:
            value = record["parameters"]["input"]["value"]
        except (KeyError, TypeError) as e:
            raise StateRecordError(f"State record {scope.state_path} has no input value") from e

        properties = value.get("properties")
        if not isinstance(properties, dict):
            properties = {}
        properties.update(bag.to_properties())
        value["properties"] = properties

        self.writer.rewrite(record, scope.state_path, composite=True)
        logger.debug(f"Merged {len(bag)} policy artifacts into {scope.state_path}")
