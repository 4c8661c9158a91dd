"""
Utility functions for AzOps discovery.

Common helpers for time and state folder handling.
"""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

from .scope import STATE_DIR_NAME

logger = logging.getLogger(__name__)


def now_iso() -> str:
    """Get current time as ISO8601 string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def clear_state(state_dir: Path) -> int:
    """
    Remove every state folder below ``state_dir``.

    Only directories containing ``.AzState`` folders are touched, so
    templates or docs kept next to the state survive a rebuild.

    Returns:
        Number of ``.AzState`` folders removed
    """
    if not state_dir.exists():
        return 0

    removed = 0
    for folder in sorted(state_dir.rglob(STATE_DIR_NAME), reverse=True):
        if folder.is_dir():
            shutil.rmtree(folder)
            removed += 1

    # Drop directories left empty by the removal
    for folder in sorted((p for p in state_dir.rglob("*") if p.is_dir()), reverse=True):
        if not any(folder.iterdir()):
            folder.rmdir()

    logger.info(f"Cleared {removed} state folders under {state_dir}")
    return removed
