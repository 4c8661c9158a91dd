"""
Management group hierarchy cache.

The tree is built once from a single recursive ARM expansion before any
traversal starts. It is immutable afterwards: every concurrent branch reads
the same snapshot and nothing rebuilds it mid-run.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterator, Mapping

logger = logging.getLogger(__name__)

MANAGEMENT_GROUP_TYPE = "Microsoft.Management/managementGroups"


@dataclass(frozen=True)
class ChildEntry:
    """A direct child of a management group (management group or subscription)."""
    id: str
    type: str
    name: str
    display_name: str
    raw: Mapping[str, Any]

    @property
    def is_subscription(self) -> bool:
        return self.type.lower().endswith("/subscriptions")

    @property
    def is_management_group(self) -> bool:
        return self.type.lower() == MANAGEMENT_GROUP_TYPE.lower()

    def as_entity(self) -> dict[str, Any]:
        """Return a private, mutable copy of the raw entry."""
        return copy.deepcopy(dict(self.raw))


@dataclass(frozen=True)
class ManagementGroupNode:
    """One management group with its direct children."""
    id: str
    name: str
    display_name: str
    parent_name: str | None
    children: tuple[ChildEntry, ...]
    raw: Mapping[str, Any]

    def as_entity(self) -> dict[str, Any]:
        """Return a private, mutable copy of the raw management group."""
        return copy.deepcopy(dict(self.raw))


def _strip_children(raw: dict[str, Any]) -> dict[str, Any]:
    """Copy an ARM entry without its nested children."""
    entity = copy.deepcopy(raw)
    entity.pop("children", None)
    if isinstance(entity.get("properties"), dict):
        entity["properties"].pop("children", None)
    return entity


def _management_group_entity(entry: dict[str, Any], parent_id: str | None, parent_name: str | None) -> dict[str, Any]:
    """
    Copy a management group entry in the shape of a single-group GET.

    Nested entries of the recursive expansion are flat (displayName at the
    top level); they are lifted under ``properties`` so every management
    group record looks the same.
    """
    entity = _strip_children(entry)
    if isinstance(entity.get("properties"), dict):
        return entity

    details = {"parent": {"id": parent_id, "name": parent_name}} if parent_name else {}
    return {
        "id": entity["id"],
        "type": entity.get("type") or MANAGEMENT_GROUP_TYPE,
        "name": entity["name"],
        "properties": {
            "displayName": entity.get("displayName") or entity["name"],
            "details": details,
        },
    }


class ManagementGroupTree:
    """
    Read-only management group hierarchy.

    Lookups are case-insensitive because ARM does not guarantee the casing
    of names between calls.
    """

    def __init__(
        self,
        nodes: Mapping[str, ManagementGroupNode],
        root_name: str | None = None,
    ):
        self._nodes = MappingProxyType({name.lower(): node for name, node in nodes.items()})
        self.root_name = root_name

        parents: dict[str, str] = {}
        subscriptions: dict[str, ChildEntry] = {}
        for node in self._nodes.values():
            for child in node.children:
                if child.is_subscription:
                    parents[child.name.lower()] = node.name
                    subscriptions[child.name.lower()] = child
        self._subscription_parents = MappingProxyType(parents)
        self._subscriptions = MappingProxyType(subscriptions)

    @classmethod
    def empty(cls) -> "ManagementGroupTree":
        return cls({})

    @classmethod
    def from_arm(cls, raw: dict[str, Any]) -> "ManagementGroupTree":
        """
        Build the tree from a ``$expand=children&$recurse=true`` response.

        Args:
            raw: Management group document returned by ARM

        Returns:
            Immutable tree rooted at ``raw``
        """
        nodes: dict[str, ManagementGroupNode] = {}
        root_props = raw.get("properties") or {}
        root_parent = ((root_props.get("details") or {}).get("parent") or {}).get("name")

        # (entry, parent id, parent name, children list) work items
        stack: list[tuple[dict[str, Any], str | None, str | None, list[dict[str, Any]]]] = [
            (raw, None, root_parent, root_props.get("children") or []),
        ]
        while stack:
            entry, parent_id, parent_name, raw_children = stack.pop()
            display_name = entry.get("displayName") or (entry.get("properties") or {}).get("displayName") or entry["name"]

            children = []
            for child in raw_children:
                child_entry = ChildEntry(
                    id=child["id"],
                    type=child.get("type", ""),
                    name=child["name"],
                    display_name=child.get("displayName") or child["name"],
                    raw=MappingProxyType(_strip_children(child)),
                )
                children.append(child_entry)
                if child_entry.is_management_group:
                    stack.append((child, entry["id"], entry["name"], child.get("children") or []))

            nodes[entry["name"]] = ManagementGroupNode(
                id=entry["id"],
                name=entry["name"],
                display_name=display_name,
                parent_name=parent_name,
                children=tuple(children),
                raw=MappingProxyType(_management_group_entity(entry, parent_id, parent_name)),
            )

        tree = cls(nodes, root_name=raw["name"])
        logger.info(
            f"Management group tree built: {len(tree)} management groups, "
            f"{len(tree._subscriptions)} subscriptions under {raw['name']}"
        )
        return tree

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._nodes

    def __iter__(self) -> Iterator[ManagementGroupNode]:
        return iter(self._nodes.values())

    def get(self, name: str) -> ManagementGroupNode | None:
        return self._nodes.get(name.lower())

    def children(self, name: str) -> tuple[ChildEntry, ...]:
        node = self.get(name)
        return node.children if node else ()

    def subscription_entry(self, subscription_id: str) -> ChildEntry | None:
        return self._subscriptions.get(subscription_id.lower())

    def parent_of_subscription(self, subscription_id: str) -> str | None:
        return self._subscription_parents.get(subscription_id.lower())

    def ancestry(self, name: str) -> list[str]:
        """
        Names from the top of the cached tree down to ``name`` inclusive.

        Unknown groups are returned on their own. Parents outside the cache
        (above the discovery root) are not included.
        """
        chain = [name]
        seen = {name.lower()}
        node = self.get(name)
        while node is not None and node.parent_name and node.parent_name.lower() in self._nodes:
            if node.parent_name.lower() in seen:
                logger.warning(f"Cycle in management group tree at {node.parent_name}")
                break
            parent = self._nodes[node.parent_name.lower()]
            chain.append(parent.name)
            seen.add(parent.name.lower())
            node = parent
        chain.reverse()
        return chain
