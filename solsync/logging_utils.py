"""Logging helpers: rate-limited warnings and compact payload rendering."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

_warn_lock = threading.Lock()
_last_warned: dict[str, float] = {}


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
) -> bool:
    """Log *message* as a warning unless *key* already warned within *minutes*.

    Returns whether the warning was emitted.
    """

    interval = max(0.0, minutes) * 60.0
    now = time.monotonic()
    with _warn_lock:
        last = _last_warned.get(key)
        if last is not None and interval > 0 and now - last < interval:
            return False
        _last_warned[key] = now
    (logger or logging.getLogger(__name__)).warning(message, *args)
    return True


def reset_warn_once_cache() -> None:
    with _warn_lock:
        _last_warned.clear()


def _compact(value: Any, max_string: int) -> Any:
    if isinstance(value, dict):
        return {str(k): _compact(v, max_string) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_compact(v, max_string) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_compact(v, max_string) for v in value), key=str)
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, str):
        if len(value) <= max_string:
            return value
        return f"{value[:max_string]}...({len(value)} chars)"
    if value is None or isinstance(value, (int, float, bool)):
        return value
    # keys, hashes, signatures and other solders values
    return str(value)


def serialize_for_log(value: Any, *, max_string: int = 256) -> str:
    """Render *value* as sorted JSON with buffers summarised by length."""

    try:
        return json.dumps(_compact(value, max_string), ensure_ascii=True, sort_keys=True)
    except (TypeError, ValueError):
        return repr(value)
