from __future__ import annotations

__all__ = [
    "AccountSnapshot",
    "AccountStateCache",
    "BalanceDelta",
    "CombinedLatest",
    "InvalidKeyError",
    "LedgerClient",
    "LogUpdate",
    "PackError",
    "ReplayLatest",
    "Settings",
    "SimulationResult",
    "SolanaLedgerClient",
    "SolsyncError",
    "TokenUnavailableError",
    "TransactionAssembler",
    "ValidityToken",
    "ValidityTokenPool",
    "to_key",
    "to_key_string",
]

from .account_cache import AccountStateCache
from .blockhash_pool import ValidityTokenPool
from .client import LedgerClient, SolanaLedgerClient
from .config import Settings
from .errors import InvalidKeyError, PackError, SolsyncError, TokenUnavailableError
from .keys import to_key, to_key_string
from .models import AccountSnapshot, BalanceDelta, LogUpdate, SimulationResult, ValidityToken
from .streams import CombinedLatest, ReplayLatest
from .tx_assembler import TransactionAssembler
