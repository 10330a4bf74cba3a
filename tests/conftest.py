from __future__ import annotations

import asyncio
import struct
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest
from solders.hash import Hash
from solders.pubkey import Pubkey

from solsync.constants import TOKEN_PROGRAM_ID
from solsync.keys import to_key
from solsync.logging_utils import reset_warn_once_cache
from solsync.models import AccountSnapshot, LogUpdate, SimulatedTransaction, ValidityToken

_TOKEN_LAYOUT = struct.Struct("<32s32sQI32sBIQQI32s")


def token_account_bytes(
    mint: Pubkey,
    owner: Pubkey,
    amount: int,
    *,
    state: int = 1,
    delegate: Optional[Pubkey] = None,
) -> bytes:
    return _TOKEN_LAYOUT.pack(
        bytes(mint),
        bytes(owner),
        amount,
        1 if delegate is not None else 0,
        bytes(delegate) if delegate is not None else bytes(32),
        state,
        0,
        0,
        0,
        0,
        bytes(32),
    )


def make_token(height: int, slot: int = 1) -> ValidityToken:
    return ValidityToken(
        blockhash=str(Hash.new_unique()),
        slot=slot,
        last_valid_block_height=height,
    )


class FakeLedgerClient:
    """In-memory ledger client with scripted responses."""

    def __init__(self, endpoint: str = "http://fake-rpc") -> None:
        self.endpoint = endpoint
        self.slot = 10
        self.accounts: Dict[str, AccountSnapshot] = {}
        self.omit: Set[str] = set()
        self.batch_calls: List[List[str]] = []
        self.fail_batches = 0
        self.batch_gate: Optional[asyncio.Event] = None

        self.subscriptions: List[Tuple[str, Callable[[AccountSnapshot], Any]]] = []
        self.fail_subscriptions = 0
        self.log_subscriptions: List[Tuple[Optional[str], Callable[[LogUpdate], Any]]] = []
        self.unsubscribed: List[int] = []

        self.blockhashes: List[Any] = []
        self.blockhash_calls = 0
        self.blockhash_gate: Optional[asyncio.Event] = None

        self.sim_err: Any = None
        self.sim_logs: List[str] = []
        self.post_state: Dict[str, Optional[bytes]] = {}
        self.simulated: List[Tuple[Any, List[str]]] = []
        self.sent: List[Tuple[bytes, bool, int]] = []
        self.closed = False

    def set_account(
        self,
        key: Any,
        data: Optional[bytes],
        *,
        owner: Optional[Pubkey] = TOKEN_PROGRAM_ID,
        slot: Optional[int] = None,
    ) -> AccountSnapshot:
        snapshot = AccountSnapshot(
            key=to_key(key),
            data=data,
            owner=owner if data is not None else None,
            slot=self.slot if slot is None else slot,
            endpoint=self.endpoint,
        )
        self.accounts[snapshot.key_string] = snapshot
        return snapshot

    def push(self, snapshot: AccountSnapshot) -> None:
        for ks, callback in list(self.subscriptions):
            if ks == snapshot.key_string:
                callback(snapshot)

    def push_logs(self, update: LogUpdate) -> None:
        for target, callback in list(self.log_subscriptions):
            if (target or "all") == update.target:
                callback(update)

    async def get_account(self, key: Any) -> Optional[AccountSnapshot]:
        return self.accounts.get(str(to_key(key)))

    async def get_multiple_accounts(self, keys: Any) -> Dict[str, AccountSnapshot]:
        keys = [to_key(k) for k in keys]
        self.batch_calls.append([str(k) for k in keys])
        if self.batch_gate is not None:
            await self.batch_gate.wait()
        if self.fail_batches:
            self.fail_batches -= 1
            raise ConnectionError("batch lookup failed")
        result: Dict[str, AccountSnapshot] = {}
        for key in keys:
            ks = str(key)
            if ks in self.omit:
                continue
            result[ks] = self.accounts.get(ks) or AccountSnapshot.absent(key, self.slot, self.endpoint)
        return result

    async def subscribe_account_change(self, key: Pubkey, callback: Callable) -> int:
        if self.fail_subscriptions:
            self.fail_subscriptions -= 1
            raise ConnectionError("subscribe failed")
        self.subscriptions.append((str(key), callback))
        return len(self.subscriptions)

    async def subscribe_logs(self, mentions: Optional[Pubkey], callback: Callable) -> int:
        if self.fail_subscriptions:
            self.fail_subscriptions -= 1
            raise ConnectionError("subscribe failed")
        self.log_subscriptions.append((None if mentions is None else str(mentions), callback))
        return 1000 + len(self.log_subscriptions)

    async def unsubscribe(self, handle: int) -> bool:
        self.unsubscribed.append(handle)
        return True

    async def get_latest_blockhash(self, commitment: Optional[str] = None) -> Optional[ValidityToken]:
        self.blockhash_calls += 1
        if self.blockhash_gate is not None:
            await self.blockhash_gate.wait()
        if not self.blockhashes:
            return None
        item = self.blockhashes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def simulate_transaction(self, tx: Any, addresses: Any) -> SimulatedTransaction:
        keys = [str(a) for a in addresses]
        self.simulated.append((tx, keys))
        return SimulatedTransaction(
            err=self.sim_err,
            logs=list(self.sim_logs),
            accounts=[self.post_state.get(k) for k in keys],
            units_consumed=1200,
        )

    async def send_raw_transaction(
        self, raw: bytes, *, skip_preflight: bool = True, max_retries: int = 3
    ) -> str:
        self.sent.append((raw, skip_preflight, max_retries))
        return "5igSignature"

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def client() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture(autouse=True)
def _reset_warn_once():
    reset_warn_once_cache()
    yield
    reset_warn_once_cache()
