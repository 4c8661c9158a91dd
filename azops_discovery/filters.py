"""Eligibility checks for discovered entities."""

from __future__ import annotations

from typing import Any, Iterable


def is_eligible_resource_group(resource_group: dict[str, Any]) -> bool:
    """
    A resource group is discovered only when nothing else manages it.

    Groups created by managed applications, AKS node pools and similar
    carry ``managedBy`` and belong to that owner, not to the state tree.
    """
    return resource_group.get("managedBy") is None


def is_eligible_subscription(
    subscription: dict[str, Any],
    excluded_states: Iterable[str] = (),
    excluded_offers: Iterable[str] = (),
) -> bool:
    """Check a subscription's state and offer (quota id) against the exclusions."""
    state = (subscription.get("state") or "").lower()
    if state in {s.lower() for s in excluded_states}:
        return False
    quota_id = ((subscription.get("subscriptionPolicies") or {}).get("quotaId") or "").lower()
    return quota_id not in {o.lower() for o in excluded_offers}
