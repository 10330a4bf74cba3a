# Helpers for reading configuration from the environment.

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


_TRUE_VALUES = {"1", "true", "yes", "y", "on", "enable", "enabled", "t"}
_FALSE_VALUES = {"0", "false", "no", "n", "off", "disable", "disabled", "f"}


def parse_bool_env(name: str, default: bool = False) -> bool:
    """Return the boolean value for environment variable ``name``.

    Unknown spellings fall back to ``default``.
    """

    val = os.getenv(name)
    if val is None:
        return default
    norm = val.strip().lower()
    if norm in _TRUE_VALUES:
        return True
    if norm in _FALSE_VALUES:
        return False
    logger.debug("Ignoring unknown boolean env %s=%r; using default=%s", name, val, default)
    return default


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    """Read a float from ``name``; unparsable or missing values yield ``default``."""

    raw = os.getenv(name)
    try:
        value = float(raw) if raw not in {None, ""} else float(default)
    except (TypeError, ValueError):
        logger.debug("Ignoring invalid float env %s=%r", name, raw)
        value = float(default)
    if minimum is not None and value < minimum:
        return float(minimum)
    return value


def env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw not in {None, ""} else int(default)
    except (TypeError, ValueError):
        logger.debug("Ignoring invalid int env %s=%r", name, raw)
        value = int(default)
    if minimum is not None and value < minimum:
        return int(minimum)
    return value


def env_str(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


__all__ = ["parse_bool_env", "env_float", "env_int", "env_str"]
