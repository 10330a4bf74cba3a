"""Multi-subscriber update channels with replay of the latest value."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager, suppress
from functools import partial
from typing import Any, AsyncIterator, Callable, Dict, Generator, Generic, List, Mapping, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING: Any = object()
_CLOSED: Any = object()


class ReplayLatest(Generic[T]):
    """Broadcast channel that remembers its most recent value.

    ``publish`` delivers synchronously to every subscriber in registration
    order.  A new subscriber immediately receives the latest value if one
    exists, so there is no gap waiting for the next update.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._latest: Any = _MISSING
        self._callbacks: List[Callable[[T], None]] = []

    @property
    def has_value(self) -> bool:
        return self._latest is not _MISSING

    @property
    def latest(self) -> Optional[T]:
        return None if self._latest is _MISSING else self._latest

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def _deliver(self, callback: Callable[[T], None], value: T) -> None:
        try:
            callback(value)
        except Exception:
            logger.exception("Stream %s: subscriber %r failed", self.name, callback)

    def publish(self, value: T) -> None:
        self._latest = value
        for callback in list(self._callbacks):
            self._deliver(callback, value)

    def subscribe(self, callback: Callable[[T], None], *, replay: bool = True) -> Callable[[], None]:
        """Register ``callback``; returns a function that removes it again."""

        self._callbacks.append(callback)
        if replay and self.has_value:
            self._deliver(callback, self._latest)

        def _unsub() -> None:
            with suppress(ValueError):
                self._callbacks.remove(callback)

        return _unsub

    @contextmanager
    def subscription(self, callback: Callable[[T], None]) -> Generator[Callable[[T], None], None, None]:
        """Context manager that registers ``callback`` and automatically unsubscribes."""
        unsub = self.subscribe(callback)
        try:
            yield callback
        finally:
            unsub()

    def listen(self) -> "StreamListener[T]":
        return StreamListener(self)

    async def __aiter__(self) -> AsyncIterator[T]:
        listener = self.listen()
        try:
            async for item in listener:
                yield item
        finally:
            listener.close()


class StreamListener(Generic[T]):
    """Queue-backed async iterator over a :class:`ReplayLatest`."""

    def __init__(self, stream: ReplayLatest[T]) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._unsub = stream.subscribe(self._queue.put_nowait)

    def __aiter__(self) -> "StreamListener[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def get_nowait(self) -> T:
        item = self._queue.get_nowait()
        if item is _CLOSED:
            raise asyncio.QueueEmpty
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsub()
        self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> "StreamListener[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class CombinedLatest(ReplayLatest[Dict[str, T]]):
    """Latest value of every named source, re-emitted whenever any updates.

    Nothing is emitted until each source has produced at least one value.
    The sources are only watched while the combined stream has subscribers:
    the first subscriber attaches to them and the last one to leave detaches.
    """

    def __init__(self, sources: Mapping[str, ReplayLatest[T]], name: str = "") -> None:
        super().__init__(name)
        self._sources: Dict[str, ReplayLatest[T]] = dict(sources)
        self._values: Dict[str, T] = {}
        self._unsubs: List[Callable[[], None]] = []

    @property
    def keys(self) -> List[str]:
        return list(self._sources)

    @property
    def attached(self) -> bool:
        return bool(self._unsubs)

    def _snapshot(self) -> Optional[Dict[str, T]]:
        if not all(source.has_value for source in self._sources.values()):
            return None
        return {key: source.latest for key, source in self._sources.items()}

    @property
    def has_value(self) -> bool:
        if self.attached:
            return super().has_value
        return self._snapshot() is not None

    @property
    def latest(self) -> Optional[Dict[str, T]]:
        if self.attached:
            return super().latest
        return self._snapshot()

    def _on_update(self, key: str, value: T) -> None:
        self._values[key] = value
        if len(self._values) < len(self._sources):
            return
        self.publish({k: self._values[k] for k in self._sources})

    def _attach(self) -> None:
        for key, source in self._sources.items():
            self._unsubs.append(source.subscribe(partial(self._on_update, key)))

    def _detach(self) -> None:
        for unsub in self._unsubs:
            unsub()
        self._unsubs.clear()
        self._values.clear()
        self._latest = _MISSING

    def subscribe(self, callback: Callable[[Dict[str, T]], None], *, replay: bool = True) -> Callable[[], None]:
        if self.attached:
            unsub = super().subscribe(callback, replay=replay)
        else:
            # attaching replays each source, which emits the current combination
            unsub = super().subscribe(callback, replay=False)
            self._attach()

        def _unsub() -> None:
            unsub()
            if not self._callbacks:
                self._detach()

        return _unsub

    def close(self) -> None:
        self._callbacks.clear()
        self._detach()
