"""Rolling pool of recent blockhashes (validity tokens).

A background loop keeps a small window of tokens, oldest first, so that
callers rarely wait on the network.  Every token is handed out at most once:
consumed blockhashes are remembered and never pooled again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

from cachetools import LRUCache

from .client import LedgerClient
from .config import Settings
from .logging_utils import warn_once_per
from .models import ValidityToken

logger = logging.getLogger(__name__)

HISTORY_SIZE = 1024


def _stamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")


class ValidityTokenPool:
    def __init__(
        self,
        client: LedgerClient,
        *,
        commitment: str = "finalized",
        max_size: int = 100,
        fast_delay: float = 2.0,
        slow_delay: float = 10.0,
        fast_threshold: int = 2,
        pop_retry_delay: float = 0.2,
        history_size: int = HISTORY_SIZE,
    ) -> None:
        self.client = client
        self.commitment = commitment
        self.max_size = max(1, max_size)
        self.fast_delay = fast_delay
        self.slow_delay = slow_delay
        self.fast_threshold = fast_threshold
        self.pop_retry_delay = pop_retry_delay

        self._tokens: Deque[ValidityToken] = deque()
        self.history: LRUCache = LRUCache(maxsize=history_size)
        self._consumed: LRUCache = LRUCache(maxsize=history_size)
        self._inflight: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self._active = False
        self._stopped = False

    @classmethod
    def from_settings(cls, client: LedgerClient, settings: Settings) -> "ValidityTokenPool":
        return cls(
            client,
            commitment=settings.blockhash_commitment,
            max_size=settings.pool_size,
            fast_delay=settings.pool_fast_delay,
            slow_delay=settings.pool_slow_delay,
            fast_threshold=settings.pool_fast_threshold,
            pop_retry_delay=settings.pop_retry_delay,
        )

    def __len__(self) -> int:
        return len(self._tokens)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def tokens(self) -> list[ValidityToken]:
        """Pooled tokens, oldest first."""
        return list(self._tokens)

    def describe(self) -> Dict[str, Any]:
        count = len(self._tokens)
        summary: Dict[str, Any] = {"count": count, "active": self._active}
        if count:
            summary["oldest"] = _stamp(self._tokens[0].retrieved_at)
            summary["newest"] = _stamp(self._tokens[-1].retrieved_at)
        logger.info(
            "Token pool: %d tokens, from %s to %s",
            count,
            summary.get("oldest", "-"),
            summary.get("newest", "-"),
        )
        return summary

    # ------------------------------------------------------------------
    # fetching
    # ------------------------------------------------------------------
    async def _fetch_once(self) -> Optional[ValidityToken]:
        try:
            token = await self.client.get_latest_blockhash(self.commitment)
        except Exception as exc:
            logger.warning("Blockhash fetch from %s failed: %s", self.client.endpoint, exc)
            return None
        if token is not None and token.blockhash not in self.history:
            self.history[token.blockhash] = token
        return token

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def fetch(self) -> Optional[ValidityToken]:
        """Fetch a fresh token, sharing one outstanding request between callers."""

        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._fetch_once())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            logger.debug("Shared blockhash fetch was cancelled")
            return None

    def add(self, token: ValidityToken) -> bool:
        """Append ``token`` unless it repeats the newest entry or was consumed."""

        if token.blockhash in self._consumed:
            return False
        if self._tokens and self._tokens[-1].blockhash == token.blockhash:
            logger.debug("Got the same blockhash as the last one: %s", token.blockhash)
            return False
        self._tokens.append(token)
        while len(self._tokens) > self.max_size:
            evicted = self._tokens.popleft()
            logger.debug("Max size reached, evicting oldest blockhash %s", evicted.blockhash)
        return True

    async def refill_once(self) -> Optional[ValidityToken]:
        token = await self.fetch()
        if token is not None:
            self.add(token)
        return token

    def next_delay(self) -> float:
        return self.slow_delay if len(self._tokens) >= self.fast_threshold else self.fast_delay

    async def _loop(self) -> None:
        while self._active:
            token = await self.refill_once()
            await asyncio.sleep(self.fast_delay if token is None else self.next_delay())

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        self._active = True
        self._stopped = False
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="solsync-blockhash-pool")
            logger.info("Token pool started (commitment=%s)", self.commitment)

    def set_active(self, flag: bool) -> None:
        """Pause or resume the refill loop; pooled tokens are kept."""

        if flag:
            self.start()
        else:
            self._active = False

    async def stop(self) -> None:
        self._active = False
        self._stopped = True
        tasks = [t for t in (self._task, self._inflight) if t is not None]
        self._task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # consumption
    # ------------------------------------------------------------------
    def _consume(self, token: ValidityToken) -> ValidityToken:
        self._consumed[token.blockhash] = True
        return token

    async def peek(self) -> Optional[ValidityToken]:
        """Newest pooled token without removing it; fetches when the pool is empty."""

        if self._tokens:
            return self._tokens[-1]
        return await self.fetch()

    async def pop(self, retries: int = 4) -> Optional[ValidityToken]:
        """Remove and return the newest token, fetching up to ``retries`` times if empty."""

        if self._tokens:
            return self._consume(self._tokens.pop())

        warn_once_per(
            1.0,
            "solsync.blockhash_pool.empty",
            "Token pool empty (active=%s), fetching a fresh blockhash",
            self._active,
            logger=logger,
        )
        for attempt in range(retries):
            token = await self.fetch()
            if token is not None and token.blockhash not in self._consumed:
                return self._consume(token)
            if self._stopped:
                break
            if attempt < retries - 1:
                await asyncio.sleep(self.pop_retry_delay)
        return None

    def pop_at_least_valid_for(self, min_height: int) -> Optional[ValidityToken]:
        """Oldest token whose ``last_valid_block_height`` is at least ``min_height``.

        Tokens scanned before it are discarded, so a bound above every pooled
        token empties the pool.
        """

        while self._tokens:
            current = self._tokens.popleft()
            if current.last_valid_block_height >= min_height:
                logger.debug(
                    "Found blockhash valid until %d >= %d", current.last_valid_block_height, min_height
                )
                return self._consume(current)
            self._consume(current)
        logger.debug("No blockhash valid for height %d", min_height)
        return None

    def pop_at_least_valid_for_slot(self, min_slot: int) -> Optional[ValidityToken]:
        """Like :meth:`pop_at_least_valid_for` but compares the issuing slot."""

        while self._tokens:
            current = self._tokens.popleft()
            if current.slot >= min_slot:
                logger.debug("Found blockhash from slot %d >= %d", current.slot, min_slot)
                return self._consume(current)
            self._consume(current)
        logger.debug("No blockhash for slot %d", min_slot)
        return None
