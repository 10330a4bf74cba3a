"""Value types passed between the cache, token pool, assembler and client."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from solders.pubkey import Pubkey

T = TypeVar("T")


@dataclass(frozen=True)
class AccountSnapshot:
    """Latest known state of one account as seen by one endpoint.

    ``data`` and ``owner`` are ``None`` when the account does not exist at
    ``slot``.  ``slot`` orders snapshots of the same key; zero means unknown.
    """

    key: Pubkey
    data: Optional[bytes]
    owner: Optional[Pubkey]
    slot: int
    endpoint: str = ""
    lamports: Optional[int] = None

    @property
    def key_string(self) -> str:
        return str(self.key)

    @property
    def exists(self) -> bool:
        return self.owner is not None

    @classmethod
    def absent(cls, key: Pubkey, slot: int, endpoint: str = "") -> "AccountSnapshot":
        return cls(key=key, data=None, owner=None, slot=slot, endpoint=endpoint)


@dataclass(frozen=True)
class ValidityToken:
    """A recent blockhash together with its expiry bound."""

    blockhash: str
    slot: int
    last_valid_block_height: int
    retrieved_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class LogUpdate:
    """Program logs of one transaction from a ``logsSubscribe`` feed.

    ``target`` is the mentioned key string, or ``"all"`` for the unfiltered
    feed.  ``err`` keeps the RPC error shape and is ``None`` on success.
    """

    target: str
    signature: str
    logs: List[str]
    slot: int
    err: Any = None
    endpoint: str = ""


@dataclass(frozen=True)
class TokenAccount:
    account: str
    mint: Pubkey
    owner: Pubkey
    amount: int
    delegate: Optional[Pubkey] = None
    state: int = 1
    is_native: Optional[int] = None
    delegated_amount: int = 0
    close_authority: Optional[Pubkey] = None


@dataclass(frozen=True)
class Decoded(Generic[T]):
    account: str
    value: T


@dataclass(frozen=True)
class Skipped:
    """An account left out of a decode pass, with the reason why."""

    account: str
    reason: str


DecodeResult = Union[Decoded[T], Skipped]


@dataclass(frozen=True)
class BalanceDelta:
    account: str
    mint: str
    owner: str
    pre: int
    post: int

    @property
    def diff(self) -> int:
        return self.post - self.pre


@dataclass
class SimulatedTransaction:
    """Raw simulation outcome as returned by a ledger client.

    ``err`` keeps the JSON-RPC shape, e.g.
    ``{"InstructionError": [0, {"Custom": 6001}]}``.  ``accounts`` lines up
    with the addresses requested for the simulation.
    """

    err: Any = None
    logs: List[str] = field(default_factory=list)
    accounts: List[Optional[bytes]] = field(default_factory=list)
    units_consumed: Optional[int] = None


@dataclass
class SimulationResult:
    err: Any = None
    error_code: Union[str, int, None] = None
    logs: List[str] = field(default_factory=list)
    units_consumed: Optional[int] = None
    changes: Dict[str, BalanceDelta] = field(default_factory=dict)
    skipped: List[Skipped] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.err is None
