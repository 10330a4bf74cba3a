"""Helpers for resolving environment-provided Solana endpoints."""

from __future__ import annotations

import os
from typing import Iterable
from urllib.parse import urlsplit, urlunsplit

_PLACEHOLDER_MARKERS = {"YOUR_KEY", "YOUR_HELIUS_KEY", "CHANGE_ME"}

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


def _is_placeholder(value: str) -> bool:
    lowered = value.lower()
    return any(marker.lower() in lowered for marker in _PLACEHOLDER_MARKERS)


def _resolve_env(names: Iterable[str]) -> str:
    for name in names:
        candidate = (os.environ.get(name) or "").strip()
        if not candidate or _is_placeholder(candidate):
            continue
        return candidate
    return ""


def optional_rpc_url(default: str | None = None) -> str:
    url = _resolve_env(("SOLANA_RPC_URL", "HELIUS_RPC_URL"))
    if url:
        return url
    return default or ""


def optional_ws_url(default: str | None = None) -> str:
    url = _resolve_env(("SOLANA_WS_URL", "HELIUS_WS_URL"))
    if url:
        return url
    return default or ""


def ws_url_from_rpc(rpc_url: str) -> str:
    """Derive the websocket endpoint that pairs with ``rpc_url``.

    ``https`` maps to ``wss`` and ``http`` to ``ws``; path and query (which
    often carry an API key) are preserved.
    """

    parts = urlsplit(rpc_url.strip())
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme.lower(), parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))
