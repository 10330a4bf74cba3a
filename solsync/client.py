"""Remote ledger client used by the cache, token pool and assembler.

:class:`LedgerClient` is the capability surface the rest of the package
consumes.  :class:`SolanaLedgerClient` implements it on top of
``solana-py``: JSON-RPC calls go through :class:`AsyncClient` and account and
log subscriptions share one websocket per client.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Protocol, Sequence, Tuple

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solana.rpc.websocket_api import SubscriptionError, connect
from solders.account_decoder import UiAccountEncoding
from solders.commitment_config import CommitmentLevel
from solders.pubkey import Pubkey
from solders.rpc.config import (
    RpcAccountInfoConfig,
    RpcSimulateTransactionAccountsConfig,
    RpcSimulateTransactionConfig,
    RpcTransactionLogsConfig,
    RpcTransactionLogsFilter,
    RpcTransactionLogsFilterMentions,
)
from solders.rpc.requests import (
    AccountSubscribe,
    AccountUnsubscribe,
    LogsSubscribe,
    LogsUnsubscribe,
    SimulateVersionedTransaction,
)
from solders.rpc.responses import (
    AccountNotification,
    LogsNotification,
    SimulateTransactionResp,
    SubscriptionResult,
)
from solders.transaction import VersionedTransaction

from .config import Settings
from .constants import LOGS_ALL, MULTIPLE_ACCOUNTS_CHUNK
from .keys import short_key, to_key
from .models import AccountSnapshot, LogUpdate, SimulatedTransaction, ValidityToken
from .rpc_helpers import (
    log_update_from_notification,
    response_slot,
    simulation_from_response,
    snapshot_from_account,
    token_from_blockhash_response,
)
from .util.env import ws_url_from_rpc

logger = logging.getLogger(__name__)

AccountCallback = Callable[[AccountSnapshot], None]
LogCallback = Callable[[LogUpdate], None]

ACK_TIMEOUT = 10.0
RECONNECT_BASE = 1.0
RECONNECT_MAX = 10.0

_COMMITMENT_LEVELS = {
    "processed": CommitmentLevel.Processed,
    "confirmed": CommitmentLevel.Confirmed,
    "finalized": CommitmentLevel.Finalized,
}


class LedgerClient(Protocol):
    """Capabilities consumed from a remote ledger endpoint."""

    endpoint: str

    async def get_account(self, key: Pubkey) -> Optional[AccountSnapshot]: ...

    async def get_multiple_accounts(self, keys: Sequence[Pubkey]) -> Dict[str, AccountSnapshot]: ...

    async def subscribe_account_change(self, key: Pubkey, callback: AccountCallback) -> int: ...

    async def subscribe_logs(self, mentions: Optional[Pubkey], callback: LogCallback) -> int: ...

    async def unsubscribe(self, handle: int) -> bool: ...

    async def get_latest_blockhash(self, commitment: Optional[str] = None) -> Optional[ValidityToken]: ...

    async def simulate_transaction(
        self, tx: VersionedTransaction, addresses: Sequence[Pubkey]
    ) -> SimulatedTransaction: ...

    async def send_raw_transaction(
        self, raw: bytes, *, skip_preflight: bool = True, max_retries: int = 3
    ) -> str: ...

    async def close(self) -> None: ...


def _chunks(items: Sequence[Pubkey], size: int) -> List[Sequence[Pubkey]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class Feed(NamedTuple):
    """One websocket subscription: how to open it, close it and deliver to it."""

    label: str
    request: Callable[[int], Any]
    cancel: Callable[[int, int], Any]
    deliver: Callable[[Any], None]


class SubscriptionListener:
    """One websocket connection multiplexing account and log subscriptions.

    Each subscription is acknowledged before :meth:`subscribe` returns and is
    identified by a local handle that stays valid across reconnects.  When
    the connection drops the listener reconnects with exponential backoff and
    re-registers every subscription it knows about.
    """

    def __init__(
        self,
        ws_url: str,
        *,
        endpoint: str,
        commitment: str = "processed",
        ack_timeout: float = ACK_TIMEOUT,
    ) -> None:
        self.ws_url = ws_url
        self.endpoint = endpoint
        self.ack_timeout = ack_timeout
        self._commitment = _COMMITMENT_LEVELS.get(commitment, CommitmentLevel.Processed)
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._handles = itertools.count(1)
        # request id -> (handle, feed, ack future)
        self._pending: Dict[int, Tuple[int, Feed, Optional[asyncio.Future]]] = {}
        self._feeds: Dict[int, Feed] = {}
        self._server_ids: Dict[int, int] = {}
        # server subscription id -> handle
        self._handlers: Dict[int, int] = {}
        self._closed = False

    @property
    def subscription_count(self) -> int:
        return len(self._handlers)

    def account_feed(self, key: Pubkey, callback: AccountCallback) -> Feed:
        config = RpcAccountInfoConfig(encoding=UiAccountEncoding.Base64, commitment=self._commitment)

        def deliver(result: Any) -> None:
            callback(snapshot_from_account(key, result.value, result.context.slot, self.endpoint))

        return Feed(
            f"account {short_key(key)}",
            lambda req_id: AccountSubscribe(key, config, req_id),
            AccountUnsubscribe,
            deliver,
        )

    def logs_feed(self, mentions: Optional[Pubkey], callback: LogCallback) -> Feed:
        if mentions is None:
            target = LOGS_ALL
            filter_: Any = RpcTransactionLogsFilter.All
        else:
            target = str(mentions)
            filter_ = RpcTransactionLogsFilterMentions(mentions)
        config = RpcTransactionLogsConfig(self._commitment)

        def deliver(result: Any) -> None:
            callback(log_update_from_notification(target, result, self.endpoint))

        return Feed(
            f"logs {short_key(target) if mentions is not None else target}",
            lambda req_id: LogsSubscribe(filter_, config, req_id),
            LogsUnsubscribe,
            deliver,
        )

    async def _ensure_connected(self) -> Any:
        async with self._lock:
            if self._ws is not None:
                return self._ws
            if self._task is not None and not self._task.done():
                raise ConnectionError(f"websocket {self.ws_url} is reconnecting")
            self._ws = await connect(self.ws_url)
            logger.info("WS connected: %s", self.ws_url)
            self._task = asyncio.create_task(self._run(), name="solsync-ws")
            return self._ws

    async def _send_subscribe(
        self, handle: int, feed: Feed, *, wait: bool = True
    ) -> Tuple[int, Optional[asyncio.Future]]:
        req_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future() if wait else None
        self._pending[req_id] = (handle, feed, fut)
        try:
            await self._ws.send_data(feed.request(req_id))
        except Exception:
            self._pending.pop(req_id, None)
            raise
        return req_id, fut

    async def subscribe(self, feed: Feed) -> int:
        """Open ``feed`` and wait for its acknowledgement; returns its handle."""

        if self._closed:
            raise ConnectionError("listener closed")
        await self._ensure_connected()
        handle = next(self._handles)
        self._feeds[handle] = feed
        req_id: Optional[int] = None
        try:
            req_id, fut = await self._send_subscribe(handle, feed)
            sub_id = await asyncio.wait_for(fut, timeout=self.ack_timeout)
        except BaseException:
            self._feeds.pop(handle, None)
            raise
        finally:
            if req_id is not None:
                self._pending.pop(req_id, None)
        logger.debug("Subscribed %s as #%s on %s", feed.label, sub_id, self.ws_url)
        return handle

    async def unsubscribe(self, handle: int) -> bool:
        """Close the subscription behind ``handle``; unknown handles return False."""

        feed = self._feeds.pop(handle, None)
        if feed is None:
            return False
        sub_id = self._server_ids.pop(handle, None)
        if sub_id is None:
            return True
        self._handlers.pop(sub_id, None)
        if self._ws is not None:
            try:
                await self._ws.send_data(feed.cancel(sub_id, next(self._ids)))
            except Exception as exc:
                logger.warning("Unsubscribe %s on %s failed: %s", feed.label, self.ws_url, exc)
        logger.debug("Unsubscribed %s (#%s) on %s", feed.label, sub_id, self.ws_url)
        return True

    def _dispatch(self, msg: Any) -> None:
        if isinstance(msg, SubscriptionResult):
            entry = self._pending.pop(msg.id, None)
            if entry is None:
                return
            handle, feed, fut = entry
            if handle not in self._feeds:
                logger.debug("Ack for dropped subscription %s ignored", feed.label)
                return
            self._handlers[msg.result] = handle
            self._server_ids[handle] = msg.result
            if fut is not None and not fut.done():
                fut.set_result(msg.result)
            return
        if isinstance(msg, (AccountNotification, LogsNotification)):
            handle = self._handlers.get(msg.subscription)
            feed = self._feeds.get(handle) if handle is not None else None
            if feed is None:
                logger.debug("Notification for unknown subscription #%s", msg.subscription)
                return
            try:
                feed.deliver(msg.result)
            except Exception:
                logger.exception("Callback for %s failed", feed.label)
            return
        logger.debug("WS unhandled message type: %s", type(msg).__name__)

    def _fail_pending(self, exc: BaseException) -> None:
        for _, _, fut in self._pending.values():
            if fut is not None and not fut.done():
                fut.set_exception(exc)
        self._pending.clear()

    async def _drop_ws(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as exc:
            logger.debug("WS close on %s failed: %s", self.ws_url, exc)

    async def _receive(self) -> None:
        while True:
            try:
                msgs = await self._ws.recv()
            except SubscriptionError as exc:
                req = getattr(exc, "subscription", None)
                entry = self._pending.pop(getattr(req, "id", -1), None)
                logger.warning("WS subscription rejected on %s: %s", self.ws_url, exc)
                if entry is not None and entry[2] is not None and not entry[2].done():
                    entry[2].set_exception(exc)
                continue
            for msg in msgs:
                self._dispatch(msg)

    async def _reconnect(self) -> None:
        self._handlers.clear()
        self._server_ids.clear()
        backoff = RECONNECT_BASE
        while not self._closed:
            logger.info("WS reconnecting to %s in %.1fs", self.ws_url, backoff)
            await asyncio.sleep(backoff)
            self._pending.clear()
            known = list(self._feeds.items())
            try:
                self._ws = await connect(self.ws_url)
                for handle, feed in known:
                    await self._send_subscribe(handle, feed, wait=False)
            except Exception as exc:
                logger.warning("WS reconnect to %s failed: %s", self.ws_url, exc)
                await self._drop_ws()
                backoff = min(backoff * 2, RECONNECT_MAX)
                continue
            logger.info("WS reconnected: %s, re-registered %d subscriptions", self.ws_url, len(known))
            return

    async def _run(self) -> None:
        while not self._closed:
            try:
                await self._receive()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("WS connection error on %s: %s", self.ws_url, exc)
                self._fail_pending(ConnectionError(str(exc)))
                await self._drop_ws()
            if self._closed:
                break
            await self._reconnect()

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._drop_ws()
        self._fail_pending(ConnectionError("listener closed"))
        self._feeds.clear()
        self._server_ids.clear()
        self._handlers.clear()


class SolanaLedgerClient:
    """:class:`LedgerClient` backed by a Solana JSON-RPC and websocket endpoint."""

    def __init__(
        self,
        rpc_url: str,
        ws_url: Optional[str] = None,
        *,
        commitment: str = "processed",
        chunk_size: int = MULTIPLE_ACCOUNTS_CHUNK,
        client: Optional[AsyncClient] = None,
    ) -> None:
        self.endpoint = rpc_url
        self.ws_url = ws_url or ws_url_from_rpc(rpc_url)
        self.commitment = commitment
        self.chunk_size = max(1, chunk_size)
        self._client = client or AsyncClient(rpc_url, commitment=Commitment(commitment))
        self._listener = SubscriptionListener(self.ws_url, endpoint=rpc_url, commitment=commitment)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SolanaLedgerClient":
        return cls(
            settings.rpc_url,
            settings.resolved_ws_url,
            commitment=settings.commitment,
        )

    def __repr__(self) -> str:
        return f"SolanaLedgerClient({self.endpoint!r})"

    async def get_account(self, key: Pubkey) -> Optional[AccountSnapshot]:
        key = to_key(key)
        try:
            resp = await self._client.get_account_info(
                key, commitment=Commitment(self.commitment), encoding="base64"
            )
        except Exception as exc:
            logger.warning("get_account %s failed on %s: %s", short_key(key), self.endpoint, exc)
            return None
        if getattr(resp, "value", None) is None:
            return None
        return snapshot_from_account(key, resp.value, response_slot(resp), self.endpoint)

    async def _get_multiple_chunk(self, keys: Sequence[Pubkey]) -> Dict[str, AccountSnapshot]:
        resp = await self._client.get_multiple_accounts(
            list(keys), commitment=Commitment(self.commitment), encoding="base64"
        )
        slot = response_slot(resp)
        values = list(getattr(resp, "value", None) or [])
        if len(values) != len(keys):
            raise RuntimeError(
                f"getMultipleAccounts returned {len(values)} values for {len(keys)} keys"
            )
        return {
            str(key): snapshot_from_account(key, account, slot, self.endpoint)
            for key, account in zip(keys, values)
        }

    async def get_multiple_accounts(self, keys: Iterable[Any]) -> Dict[str, AccountSnapshot]:
        """Fetch ``keys`` in chunks of :attr:`chunk_size`, requested concurrently.

        Every requested key appears in the result; missing accounts come back
        as absent snapshots.  Errors propagate to the caller.
        """

        unique: Dict[str, Pubkey] = {}
        for k in keys:
            key = to_key(k)
            unique.setdefault(str(key), key)
        ordered = list(unique.values())
        if not ordered:
            return {}
        parts = await asyncio.gather(
            *(self._get_multiple_chunk(chunk) for chunk in _chunks(ordered, self.chunk_size))
        )
        results: Dict[str, AccountSnapshot] = {}
        for part in parts:
            results.update(part)
        return results

    async def subscribe_account_change(self, key: Pubkey, callback: AccountCallback) -> int:
        return await self._listener.subscribe(self._listener.account_feed(to_key(key), callback))

    async def subscribe_logs(self, mentions: Optional[Pubkey], callback: LogCallback) -> int:
        """Subscribe to transaction logs mentioning ``mentions``, or to all logs when ``None``."""

        key = None if mentions is None else to_key(mentions)
        return await self._listener.subscribe(self._listener.logs_feed(key, callback))

    async def unsubscribe(self, handle: int) -> bool:
        return await self._listener.unsubscribe(handle)

    async def get_latest_blockhash(self, commitment: Optional[str] = None) -> Optional[ValidityToken]:
        resp = await self._client.get_latest_blockhash(Commitment(commitment or "finalized"))
        return token_from_blockhash_response(resp)

    async def simulate_transaction(
        self,
        tx: VersionedTransaction,
        addresses: Sequence[Pubkey],
        *,
        replace_recent_blockhash: bool = False,
    ) -> SimulatedTransaction:
        accounts = None
        if addresses:
            accounts = RpcSimulateTransactionAccountsConfig(
                [to_key(a) for a in addresses], UiAccountEncoding.Base64
            )
        config = RpcSimulateTransactionConfig(
            sig_verify=False,
            replace_recent_blockhash=replace_recent_blockhash,
            commitment=_COMMITMENT_LEVELS.get(self.commitment),
            accounts=accounts,
        )
        logger.debug("Simulating on %s with %d tracked accounts", self.endpoint, len(addresses))
        body = SimulateVersionedTransaction(tx, config)
        resp = await self._client._provider.make_request(body, SimulateTransactionResp)  # type: ignore[attr-defined]
        return simulation_from_response(resp)

    async def send_raw_transaction(
        self, raw: bytes, *, skip_preflight: bool = True, max_retries: int = 3
    ) -> str:
        opts = TxOpts(
            skip_preflight=skip_preflight,
            preflight_commitment=Commitment(self.commitment),
            max_retries=max_retries,
        )
        resp = await self._client.send_raw_transaction(bytes(raw), opts=opts)
        return str(resp.value)

    async def close(self) -> None:
        await self._listener.close()
        await self._client.close()
