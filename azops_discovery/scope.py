"""
Scope model and parser.

A scope is a typed position in the resource hierarchy. The parser turns an
ARM resource id into a Scope and computes where its state record lives:

    <state_dir>/<mg>/<child mg>/<subscription>/<resource group>/.AzState/<file>

Path components are lower-cased so that the id -> path mapping stays
injective under ARM's case-insensitive ids.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .tree import ManagementGroupTree

STATE_DIR_NAME = ".AzState"
STATE_FILE_SUFFIX = ".parameters.json"

_MANAGEMENT_GROUP_RE = re.compile(
    r"^/providers/Microsoft\.Management/managementGroups/(?P<mg>[^/]+)$", re.IGNORECASE
)
_SUBSCRIPTION_RE = re.compile(r"^/subscriptions/(?P<sub>[^/]+)$", re.IGNORECASE)
_RESOURCE_GROUP_RE = re.compile(
    r"^/subscriptions/(?P<sub>[^/]+)/resourceGroups/(?P<rg>[^/]+)$", re.IGNORECASE
)
_GUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_PROVIDERS = "/providers/"
_UNSAFE_CHARS = re.compile(r"[^a-z0-9._\-() ]")


class ScopeValidationError(ValueError):
    """Raised when a scope identifier cannot be parsed."""


class ScopeKind(str, Enum):
    MANAGEMENT_GROUP = "managementGroup"
    SUBSCRIPTION = "subscription"
    RESOURCE_GROUP = "resourceGroup"
    RESOURCE = "resource"


@dataclass(frozen=True)
class Scope:
    """Immutable descriptor of one hierarchy position."""
    kind: ScopeKind
    id: str
    name: str
    state_path: Path
    subscription_id: str | None = None
    resource_group: str | None = None
    management_group: str | None = None
    resource_type: str | None = None

    @property
    def state_dir(self) -> Path:
        """Folder that holds this scope's children."""
        return self.state_path.parent.parent

    @property
    def supports_policy(self) -> bool:
        return self.kind in (ScopeKind.MANAGEMENT_GROUP, ScopeKind.SUBSCRIPTION, ScopeKind.RESOURCE_GROUP)

    @property
    def supports_policy_composite(self) -> bool:
        return self.kind in (ScopeKind.MANAGEMENT_GROUP, ScopeKind.SUBSCRIPTION)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


def _safe(component: str) -> str:
    """Make one path component filesystem-safe."""
    cleaned = _UNSAFE_CHARS.sub("_", component.lower())
    if cleaned in ("", ".", ".."):
        return "_"
    return cleaned


def _state_file(folder: Path, resource_type: str, name: str) -> Path:
    stem = f"{resource_type.replace('/', '_')}-{name.replace('/', '_')}"
    return folder / STATE_DIR_NAME / f"{_safe(stem)}{STATE_FILE_SUFFIX}"


class ScopeParser:
    """
    Parses ARM ids into scopes.

    The parser only reads the management group tree, so a single instance
    is shared by every discovery thread.
    """

    def __init__(self, tree: ManagementGroupTree, state_dir: str | Path):
        self.tree = tree
        self.state_dir = Path(state_dir)

    def parse(self, identifier: str) -> Scope:
        """
        Parse an ARM id.

        Args:
            identifier: Resource id such as ``/subscriptions/<guid>/resourceGroups/rg``

        Returns:
            Scope with its computed state path

        Raises:
            ScopeValidationError: If the id is malformed
        """
        if not isinstance(identifier, str) or not identifier.strip():
            raise ScopeValidationError("Scope identifier must be a non-empty string")

        scope_id = identifier.strip().rstrip("/")
        if not scope_id.startswith("/"):
            raise ScopeValidationError(f"Scope identifier must start with '/': {identifier!r}")
        if "//" in scope_id:
            raise ScopeValidationError(f"Scope identifier has an empty segment: {identifier!r}")

        match = _MANAGEMENT_GROUP_RE.match(scope_id)
        if match:
            name = match.group("mg")
            folder = self._management_group_folder(name)
            return Scope(
                kind=ScopeKind.MANAGEMENT_GROUP,
                id=scope_id,
                name=name,
                management_group=name,
                state_path=_state_file(folder, "Microsoft.Management/managementGroups", name),
            )

        match = _SUBSCRIPTION_RE.match(scope_id)
        if match:
            subscription_id = self._subscription_id(match.group("sub"), identifier)
            folder = self._subscription_folder(subscription_id)
            return Scope(
                kind=ScopeKind.SUBSCRIPTION,
                id=scope_id,
                name=subscription_id,
                subscription_id=subscription_id,
                management_group=self.tree.parent_of_subscription(subscription_id),
                state_path=_state_file(folder, "Microsoft.Subscription/subscriptions", subscription_id),
            )

        match = _RESOURCE_GROUP_RE.match(scope_id)
        if match:
            subscription_id = self._subscription_id(match.group("sub"), identifier)
            name = match.group("rg")
            folder = self._subscription_folder(subscription_id) / _safe(name)
            return Scope(
                kind=ScopeKind.RESOURCE_GROUP,
                id=scope_id,
                name=name,
                subscription_id=subscription_id,
                resource_group=name,
                state_path=_state_file(folder, "Microsoft.Resources/resourceGroups", name),
            )

        return self._parse_resource(scope_id, identifier)

    def _parse_resource(self, scope_id: str, identifier: str) -> Scope:
        index = scope_id.lower().rfind(_PROVIDERS)
        if index < 0:
            raise ScopeValidationError(f"Unrecognised scope identifier: {identifier!r}")

        prefix = scope_id[:index]
        segments = scope_id[index + len(_PROVIDERS):].split("/")
        # Namespace followed by one or more type/name pairs
        if len(segments) < 3 or len(segments) % 2 == 0:
            raise ScopeValidationError(f"Malformed resource identifier: {identifier!r}")

        namespace = segments[0]
        types = segments[1::2]
        names = segments[2::2]
        resource_type = "/".join([namespace, *types])
        name = "/".join(names)

        if prefix:
            parent = self.parse(prefix)
            # Extension resources of a resource share the resource's folder
            folder = parent.state_dir
        else:
            parent = None
            folder = self.state_dir

        return Scope(
            kind=ScopeKind.RESOURCE,
            id=scope_id,
            name=name,
            subscription_id=parent.subscription_id if parent else None,
            resource_group=parent.resource_group if parent else None,
            management_group=parent.management_group if parent else None,
            resource_type=resource_type,
            state_path=_state_file(folder, resource_type, name),
        )

    def _subscription_id(self, value: str, identifier: str) -> str:
        if not _GUID_RE.match(value):
            raise ScopeValidationError(f"Invalid subscription id {value!r} in {identifier!r}")
        return value.lower()

    def _management_group_folder(self, name: str) -> Path:
        folder = self.state_dir
        for component in self.tree.ancestry(name):
            folder = folder / _safe(component)
        return folder

    def _subscription_folder(self, subscription_id: str) -> Path:
        parent = self.tree.parent_of_subscription(subscription_id)
        base = self._management_group_folder(parent) if parent else self.state_dir
        return base / _safe(subscription_id)
