"""Per-key account state with live subscriptions and batched resolution.

Three producers feed :meth:`AccountStateCache.ingest`: websocket callbacks,
the resolve loop and optional poll tasks.  ``ingest`` is the only writer of
the per-key store; it drops anything that does not advance the key's slot
and publishes accepted snapshots to the key's :class:`ReplayLatest`.

Transaction log feeds (``logsSubscribe``) go through the same subscription
queue and are published to per-target streams by :meth:`ingest_logs`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from solders.pubkey import Pubkey

from .client import LedgerClient
from .constants import LOGS_ALL
from .config import Settings
from .keys import short_key, to_key
from .models import AccountSnapshot, LogUpdate
from .streams import CombinedLatest, ReplayLatest

logger = logging.getLogger(__name__)

ACCOUNT_FEED = "account"
LOGS_FEED = "logs"

# (feed, key string or "all", endpoint)
SubscriptionPair = Tuple[str, str, str]


class AccountStateCache:
    """Latest-known account snapshots, fanned out to replaying streams.

    Parameters
    ----------
    client:
        Default :class:`LedgerClient`, used for batch resolution and for
        subscriptions when ``stream_for`` is not given an endpoint.
    resolve_interval, subscribe_interval:
        Tick of the two background loops in seconds.
    batch_size:
        Maximum number of keys per ``get_multiple_accounts`` call.
    """

    def __init__(
        self,
        client: LedgerClient,
        *,
        resolve_interval: float = 1.0,
        subscribe_interval: float = 1.0,
        batch_size: int = 100,
    ) -> None:
        self.client = client
        self.resolve_interval = resolve_interval
        self.subscribe_interval = subscribe_interval
        self.batch_size = max(1, batch_size)

        self._keys: Dict[str, Pubkey] = {}
        self._streams: Dict[str, ReplayLatest[AccountSnapshot]] = {}
        self._snapshots: Dict[str, AccountSnapshot] = {}

        self._resolved: Set[str] = set()
        self._in_flight: Set[str] = set()
        # key -> force flag, in arrival order
        self._resolve_queue: "OrderedDict[str, bool]" = OrderedDict()

        self._log_streams: Dict[str, ReplayLatest[LogUpdate]] = {}

        # pair -> handle returned by the endpoint
        self._subscribed: Dict[SubscriptionPair, int] = {}
        self._subscribe_queue: "OrderedDict[SubscriptionPair, Tuple[Optional[Pubkey], LedgerClient]]" = OrderedDict()

        self._polls: Dict[Tuple[str, float], Optional[asyncio.Task]] = {}
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @classmethod
    def from_settings(cls, client: LedgerClient, settings: Settings) -> "AccountStateCache":
        return cls(
            client,
            resolve_interval=settings.resolve_interval,
            subscribe_interval=settings.subscribe_interval,
            batch_size=settings.resolve_batch_size,
        )

    # ------------------------------------------------------------------
    # read side
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._running

    @property
    def known_keys(self) -> List[str]:
        return list(self._streams)

    @property
    def pending_resolves(self) -> List[str]:
        return list(self._resolve_queue)

    @property
    def pending_subscriptions(self) -> List[SubscriptionPair]:
        return list(self._subscribe_queue)

    def is_resolved(self, key: Any) -> bool:
        return str(to_key(key)) in self._resolved

    def is_subscribed(self, key: Any, endpoint: Optional[LedgerClient] = None) -> bool:
        return (ACCOUNT_FEED, str(to_key(key)), (endpoint or self.client).endpoint) in self._subscribed

    def get(self, key: Any) -> Optional[AccountSnapshot]:
        return self._snapshots.get(str(to_key(key)))

    def _ensure_stream(self, key: Pubkey) -> ReplayLatest[AccountSnapshot]:
        ks = str(key)
        stream = self._streams.get(ks)
        if stream is None:
            stream = ReplayLatest(name=f"account:{short_key(ks)}")
            self._streams[ks] = stream
            self._keys[ks] = key
        return stream

    def stream_for(
        self,
        key: Any,
        endpoint: Optional[LedgerClient] = None,
        *,
        auto_subscribe: bool = True,
        fetch_initial: bool = True,
        poll_interval: float = 0.0,
    ) -> ReplayLatest[AccountSnapshot]:
        """Return the update stream for ``key``, registering interest in it.

        The stream replays the latest accepted snapshot to new subscribers.
        ``auto_subscribe`` queues one live subscription per (key, endpoint);
        ``fetch_initial`` queues a one-shot resolution if the key has never
        been resolved; a positive ``poll_interval`` forces re-resolution
        every ``poll_interval`` seconds.
        """

        account = to_key(key)
        stream = self._ensure_stream(account)
        if auto_subscribe:
            self._enqueue_subscription(ACCOUNT_FEED, str(account), account, endpoint or self.client)
        if fetch_initial:
            self._enqueue_resolve(str(account))
        if poll_interval > 0:
            self._register_poll(str(account), float(poll_interval))
        return stream

    def stream_for_many(
        self,
        keys: Iterable[Any],
        endpoint: Optional[LedgerClient] = None,
        *,
        auto_subscribe: bool = True,
        fetch_initial: bool = True,
        poll_interval: float = 0.0,
    ) -> CombinedLatest[AccountSnapshot]:
        sources: Dict[str, ReplayLatest[AccountSnapshot]] = {}
        for key in keys:
            account = to_key(key)
            sources[str(account)] = self.stream_for(
                account,
                endpoint,
                auto_subscribe=auto_subscribe,
                fetch_initial=fetch_initial,
                poll_interval=poll_interval,
            )
        return CombinedLatest(sources, name=f"accounts[{len(sources)}]")

    # ------------------------------------------------------------------
    # write side
    # ------------------------------------------------------------------
    def ingest(self, snapshot: AccountSnapshot) -> bool:
        """Accept ``snapshot`` if it is newer than the stored one for its key.

        Snapshots with an unknown slot, or a slot not above the last accepted
        one, are dropped without notification.
        """

        slot = snapshot.slot or 0
        if slot <= 0:
            logger.debug("Dropping %s update without slot", short_key(snapshot.key))
            return False
        ks = snapshot.key_string
        current = self._snapshots.get(ks)
        if current is not None and current.slot >= slot:
            return False
        stream = self._ensure_stream(snapshot.key)
        self._snapshots[ks] = snapshot
        self._resolved.add(ks)
        stream.publish(snapshot)
        return True

    # ------------------------------------------------------------------
    # queues
    # ------------------------------------------------------------------
    def _enqueue_resolve(self, ks: str, force: bool = False) -> bool:
        if ks in self._resolve_queue:
            if force:
                self._resolve_queue[ks] = True
            return False
        if not force and (ks in self._resolved or ks in self._in_flight):
            return False
        self._resolve_queue[ks] = force
        return True

    def request_resolve(self, keys: Iterable[Any], *, force: bool = False) -> int:
        """Queue ``keys`` for the next resolve tick; returns how many were added."""

        added = 0
        for key in keys:
            account = to_key(key)
            self._ensure_stream(account)
            added += self._enqueue_resolve(str(account), force)
        return added

    def _enqueue_subscription(
        self, feed: str, ks: str, key: Optional[Pubkey], endpoint: LedgerClient
    ) -> bool:
        pair = (feed, ks, endpoint.endpoint)
        if pair in self._subscribed or pair in self._subscribe_queue:
            return False
        self._subscribe_queue[pair] = (key, endpoint)
        return True

    def resubscribe_all(self, endpoint: Optional[LedgerClient] = None) -> int:
        """Queue a subscription for every known key without a live one on ``endpoint``.

        Keys whose registration failed earlier are picked up again; keys that
        are already subscribed are left alone.
        """

        target = endpoint or self.client
        count = 0
        for ks, key in self._keys.items():
            count += self._enqueue_subscription(ACCOUNT_FEED, ks, key, target)
        if count:
            logger.info("Resubscribing %d accounts on %s", count, target.endpoint)
        return count

    # ------------------------------------------------------------------
    # log feeds
    # ------------------------------------------------------------------
    @staticmethod
    def _log_target(target: Any) -> Tuple[str, Optional[Pubkey]]:
        if target is None or target == LOGS_ALL:
            return LOGS_ALL, None
        key = to_key(target)
        return str(key), key

    def _ensure_log_stream(self, ts: str) -> ReplayLatest[LogUpdate]:
        stream = self._log_streams.get(ts)
        if stream is None:
            label = ts if ts == LOGS_ALL else short_key(ts)
            stream = ReplayLatest(name=f"logs:{label}")
            self._log_streams[ts] = stream
        return stream

    def log_stream_for(
        self, target: Any = None, endpoint: Optional[LedgerClient] = None
    ) -> ReplayLatest[LogUpdate]:
        """Return the transaction log stream for ``target``.

        ``target`` is a key whose mentioning transactions are reported, or
        ``None``/``"all"`` for every transaction.  One ``logsSubscribe`` per
        (target, endpoint) is queued; the stream replays the latest update.
        """

        ts, key = self._log_target(target)
        stream = self._ensure_log_stream(ts)
        self._enqueue_subscription(LOGS_FEED, ts, key, endpoint or self.client)
        return stream

    def ingest_logs(self, update: LogUpdate) -> None:
        self._ensure_log_stream(update.target).publish(update)

    def is_log_subscribed(self, target: Any = None, endpoint: Optional[LedgerClient] = None) -> bool:
        ts, _ = self._log_target(target)
        return (LOGS_FEED, ts, (endpoint or self.client).endpoint) in self._subscribed

    async def drop_log_stream(self, target: Any = None, endpoint: Optional[LedgerClient] = None) -> bool:
        """Stop the log subscription for ``target`` on ``endpoint``.

        The stream itself is kept and still replays its latest update.
        Returns whether a queued or live subscription was removed.
        """

        client = endpoint or self.client
        ts, _ = self._log_target(target)
        pair = (LOGS_FEED, ts, client.endpoint)
        queued = self._subscribe_queue.pop(pair, None) is not None
        handle = self._subscribed.pop(pair, None)
        if handle is None:
            return queued
        try:
            await client.unsubscribe(handle)
        except Exception as exc:
            logger.warning("Unsubscribe logs %s on %s failed: %s", ts, client.endpoint, exc)
        return True

    # ------------------------------------------------------------------
    # background work
    # ------------------------------------------------------------------
    def _next_batch(self) -> List[str]:
        batch: List[str] = []
        while self._resolve_queue and len(batch) < self.batch_size:
            ks, force = self._resolve_queue.popitem(last=False)
            if not force and ks in self._resolved:
                continue
            batch.append(ks)
        return batch

    async def run_resolve_once(self) -> int:
        """Resolve one batch from the queue; returns the number of keys requested."""

        batch = self._next_batch()
        if not batch:
            return 0
        self._in_flight.update(batch)
        try:
            results = await self.client.get_multiple_accounts([self._keys[ks] for ks in batch])
        except Exception as exc:
            logger.warning("Resolve of %d accounts failed: %s", len(batch), exc)
            return 0
        finally:
            self._in_flight.difference_update(batch)

        accepted = 0
        for ks in batch:
            snapshot = results.get(ks)
            if snapshot is not None and self.ingest(snapshot):
                accepted += 1
            self._resolved.add(ks)
        logger.debug(
            "Resolved %d accounts (%d accepted), %d remaining",
            len(batch),
            accepted,
            len(self._resolve_queue),
        )
        return len(batch)

    async def run_subscribe_once(self) -> bool:
        """Register at most one pending subscription."""

        while self._subscribe_queue:
            pair, (key, endpoint) = self._subscribe_queue.popitem(last=False)
            if pair in self._subscribed:
                continue
            feed, ks, url = pair
            try:
                if feed == LOGS_FEED:
                    handle = await endpoint.subscribe_logs(key, self.ingest_logs)
                else:
                    handle = await endpoint.subscribe_account_change(key, self.ingest)
            except Exception as exc:
                label = ks if ks == LOGS_ALL else short_key(ks)
                logger.warning("Subscribe %s %s on %s failed: %s", feed, label, url, exc)
                return False
            self._subscribed[pair] = handle
            if not self._subscribe_queue:
                logger.debug("Subscription queue clean, %d subscribed", len(self._subscribed))
            return True
        return False

    async def _resolve_loop(self) -> None:
        while True:
            try:
                await self.run_resolve_once()
            except Exception:
                logger.exception("Resolve tick failed")
            await asyncio.sleep(self.resolve_interval)

    async def _subscribe_loop(self) -> None:
        while True:
            try:
                await self.run_subscribe_once()
            except Exception:
                logger.exception("Subscribe tick failed")
            await asyncio.sleep(self.subscribe_interval)

    async def _poll_loop(self, ks: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            logger.debug("Adding %s for polling", short_key(ks))
            self._enqueue_resolve(ks, force=True)

    def _register_poll(self, ks: str, interval: float) -> None:
        poll_key = (ks, interval)
        if poll_key in self._polls:
            return
        self._polls[poll_key] = None
        if self._running:
            self._start_poll(poll_key)

    def _start_poll(self, poll_key: Tuple[str, float]) -> None:
        ks, interval = poll_key
        self._polls[poll_key] = asyncio.create_task(
            self._poll_loop(ks, interval), name=f"solsync-poll-{short_key(ks)}"
        )

    def start(self) -> None:
        """Start the resolve, subscribe and poll tasks on the running loop."""

        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._resolve_loop(), name="solsync-resolve"),
            asyncio.create_task(self._subscribe_loop(), name="solsync-subscribe"),
        ]
        for poll_key, task in list(self._polls.items()):
            if task is None:
                self._start_poll(poll_key)
        logger.info(
            "Account cache started: resolve every %.2fs, subscribe every %.2fs, %d polls",
            self.resolve_interval,
            self.subscribe_interval,
            len(self._polls),
        )

    async def stop(self) -> None:
        """Cancel background tasks; cached snapshots and registrations are kept."""

        if not self._running:
            return
        self._running = False
        tasks = list(self._tasks)
        for poll_key, task in self._polls.items():
            if task is not None:
                tasks.append(task)
            self._polls[poll_key] = None
        self._tasks = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Account cache stopped")

    async def __aenter__(self) -> "AccountStateCache":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
