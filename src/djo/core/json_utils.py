"""JSON helpers for persisted columns and payload fingerprints."""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


def canonical_json(value: Any) -> str:
    """Serialize a value to a stable JSON string.

    Keys are sorted and whitespace is removed so that two structurally
    equal payloads always produce the same bytes.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def dumps_or_none(value: Any) -> str | None:
    """Serialize a value for a nullable TEXT column."""
    if value is None:
        return None
    return json.dumps(value, default=str)


def loads_or_none(raw: str | None, *, context: str = "") -> Any:
    """Parse a nullable JSON column.

    Corrupt values are logged and read back as None rather than failing
    the whole row.
    """
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in %s: %s", context or "column", e)
        return None
