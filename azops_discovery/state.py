"""
State writer - converts entities into state records on disk.

Writers from several threads share one instance. Each scope owns a distinct
file, so only the path ledger needs a lock; it turns a violation of the
id -> path mapping into a StatePathConflictError instead of a silent
overwrite.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Iterable

from .schema import build_state_record, validate_state_record
from .scope import ScopeParser

logger = logging.getLogger(__name__)


class StateRecordError(Exception):
    """Raised when a state record is missing or malformed."""


class StatePathConflictError(StateRecordError):
    """Raised when two different entities resolve to the same state file."""
    def __init__(self, path: Path, owner: str, other: str):
        super().__init__(f"State path {path} claimed by {owner} and {other}")
        self.path = path
        self.owner = owner
        self.other = other


def serialize_record(record: dict[str, Any]) -> str:
    """Deterministic JSON text for a record."""
    return json.dumps(record, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


class StateWriter:
    """
    Persists state records.

    Args:
        parser: Scope parser used to derive a record's path from its id
        excluded_properties: Top-level entity keys dropped before writing
    """

    def __init__(self, parser: ScopeParser, excluded_properties: Iterable[str] = ()):
        self.parser = parser
        self.excluded_properties = frozenset(excluded_properties)
        self._owners: dict[str, str] = {}
        self._lock = Lock()
        self.records_written = 0

    def normalize(self, entity: dict[str, Any]) -> dict[str, Any]:
        """Copy an entity without the excluded (volatile) properties."""
        return {
            key: copy.deepcopy(value)
            for key, value in entity.items()
            if key not in self.excluded_properties
        }

    def _claim(self, path: Path, entity_id: str) -> None:
        key = str(path).lower()
        owner = entity_id.lower()
        with self._lock:
            existing = self._owners.setdefault(key, owner)
        if existing != owner:
            raise StatePathConflictError(path, existing, owner)

    def _dump(self, record: dict[str, Any], path: Path, composite: bool = False) -> None:
        is_valid, errors = validate_state_record(record, composite=composite)
        if not is_valid:
            raise StateRecordError(f"Invalid state record for {path}: {'; '.join(errors)}")

        path.parent.mkdir(parents=True, exist_ok=True)
        text = serialize_record(record)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(text)
        tmp_path.replace(path)

    def write(self, entity: dict[str, Any], path: Path | None = None) -> Path:
        """
        Convert an entity into a state record and persist it.

        Args:
            entity: Raw entity; must carry an ``id``
            path: Target path override (defaults to the path of ``entity['id']``)

        Returns:
            Path of the written record
        """
        entity_id = entity.get("id")
        if not entity_id:
            raise StateRecordError(f"Entity without id cannot be written: {sorted(entity)}")

        if path is None:
            path = self.parser.parse(entity_id).state_path

        self._claim(path, entity_id)
        self._dump(build_state_record(self.normalize(entity)), path)

        with self._lock:
            self.records_written += 1
        logger.debug(f"Wrote {entity_id} -> {path}")
        return path

    def read_existing(self, path: Path) -> dict[str, Any]:
        """Load a previously written record."""
        if not path.exists():
            raise StateRecordError(f"State record not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            try:
                return json.load(f)
            except json.JSONDecodeError as e:
                raise StateRecordError(f"State record {path} is not valid JSON: {e}") from e

    def rewrite(self, record: dict[str, Any], path: Path, composite: bool = False) -> None:
        """Replace an existing record in place; ``composite`` checks the merged policy bag."""
        self._dump(record, path, composite=composite)
        logger.debug(f"Rewrote {path}")
