"""Environment variable reader.

EnvReader parses DJO_* variables with type conversion. It accepts an
optional mapping in place of os.environ so configuration loading can be
tested without touching the process environment.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRUE_VALUES = ("true", "1", "yes", "on")


class EnvReader:
    """Typed access to environment variables.

    Example:
        reader = EnvReader(env={"DJO_SERVER_PORT": "9000"})
        reader.get_int("DJO_SERVER_PORT", 8320)  # 9000
    """

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env: Mapping[str, str] = env if env is not None else os.environ

    def _parse(
        self, var: str, default: T | None, convert: Callable[[str], T], kind: str
    ) -> T | None:
        value = self._env.get(var)
        if value is None or value == "":
            return default
        try:
            return convert(value)
        except ValueError:
            logger.warning("Invalid %s value for %s: %s", kind, var, value)
            return default

    def get_str(self, var: str, default: str | None = None) -> str | None:
        """Return the raw value, or ``default`` if unset."""
        return self._env.get(var, default)

    def get_int(self, var: str, default: int | None = None) -> int | None:
        """Return the value as an int; invalid values log and fall back."""
        return self._parse(var, default, int, "integer")

    def get_float(self, var: str, default: float | None = None) -> float | None:
        """Return the value as a float; invalid values log and fall back."""
        return self._parse(var, default, float, "float")

    def get_bool(self, var: str, default: bool | None = None) -> bool | None:
        """Return True for "true", "1", "yes" or "on" (any case)."""
        value = self._env.get(var)
        if value is None:
            return default
        return value.lower() in _TRUE_VALUES

    def get_path(self, var: str, default: Path | None = None) -> Path | None:
        """Return the value as an expanded Path, or ``default`` if unset."""
        value = self._env.get(var)
        if not value:
            return default
        return Path(value).expanduser()
