"""Core utilities package.

Pure helpers with no dependencies on the rest of the package:
UTC timestamp handling and canonical JSON encoding.
"""

from djo.core.datetime_utils import (
    add_seconds,
    calculate_duration_seconds,
    parse_iso_timestamp,
    to_iso,
    utc_now,
    utc_now_iso,
)
from djo.core.json_utils import canonical_json, dumps_or_none, loads_or_none

__all__ = [
    "add_seconds",
    "calculate_duration_seconds",
    "canonical_json",
    "dumps_or_none",
    "loads_or_none",
    "parse_iso_timestamp",
    "to_iso",
    "utc_now",
    "utc_now_iso",
]
