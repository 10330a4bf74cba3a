"""Runtime settings for the cache, token pool and assembler.

Values come from environment variables so that deployments can tune
cadences without code changes.  Each component also accepts explicit
keyword arguments, which take precedence over :class:`Settings`.
"""

from __future__ import annotations

from dataclasses import dataclass

from .util import env_float, env_int, env_str, parse_bool_env
from .util.env import DEFAULT_RPC_URL, optional_rpc_url, optional_ws_url, ws_url_from_rpc

_COMMITMENTS = {"processed", "confirmed", "finalized"}


def _commitment_env(name: str, default: str) -> str:
    value = env_str(name, default).lower()
    return value if value in _COMMITMENTS else default


@dataclass(frozen=True)
class Settings:
    rpc_url: str = DEFAULT_RPC_URL
    ws_url: str = ""
    commitment: str = "processed"
    blockhash_commitment: str = "finalized"

    # account cache
    resolve_interval: float = 1.0
    subscribe_interval: float = 1.0
    resolve_batch_size: int = 100

    # validity token pool
    pool_size: int = 100
    pool_fast_delay: float = 2.0
    pool_slow_delay: float = 10.0
    pool_fast_threshold: int = 2
    pop_retry_delay: float = 0.2

    # assembler
    skip_preflight: bool = True
    send_max_retries: int = 3

    @property
    def resolved_ws_url(self) -> str:
        return self.ws_url or ws_url_from_rpc(self.rpc_url)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``SOLSYNC_*`` and endpoint environment variables."""

        rpc_url = optional_rpc_url(DEFAULT_RPC_URL)
        return cls(
            rpc_url=rpc_url,
            ws_url=optional_ws_url(""),
            commitment=_commitment_env("SOLSYNC_COMMITMENT", "processed"),
            blockhash_commitment=_commitment_env("SOLSYNC_BLOCKHASH_COMMITMENT", "finalized"),
            resolve_interval=env_float("SOLSYNC_RESOLVE_INTERVAL", 1.0, minimum=0.01),
            subscribe_interval=env_float("SOLSYNC_SUBSCRIBE_INTERVAL", 1.0, minimum=0.01),
            resolve_batch_size=env_int("SOLSYNC_RESOLVE_BATCH", 100, minimum=1),
            pool_size=env_int("SOLSYNC_POOL_SIZE", 100, minimum=1),
            pool_fast_delay=env_float("SOLSYNC_POOL_FAST_DELAY", 2.0, minimum=0.0),
            pool_slow_delay=env_float("SOLSYNC_POOL_SLOW_DELAY", 10.0, minimum=0.0),
            pool_fast_threshold=env_int("SOLSYNC_POOL_FAST_THRESHOLD", 2, minimum=0),
            pop_retry_delay=env_float("SOLSYNC_POP_RETRY_DELAY", 0.2, minimum=0.0),
            skip_preflight=parse_bool_env("SOLSYNC_SKIP_PREFLIGHT", True),
            send_max_retries=env_int("SOLSYNC_SEND_MAX_RETRIES", 3, minimum=0),
        )
