"""Cell-keyed change notifications from the stores to live watchers."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Iterable

logger = logging.getLogger(__name__)


class ChangeSubscription:
    """Wake-up handle for one watcher interested in a set of cells."""

    def __init__(self, feed: "ChangeFeed", cell_ids: frozenset[str]) -> None:
        self._feed = feed
        self.cell_ids = cell_ids
        self._loop = asyncio.get_running_loop()
        self._event = asyncio.Event()
        self.closed = False

    def _signal(self) -> None:
        try:
            self._loop.call_soon_threadsafe(self._event.set)
        except RuntimeError:
            # Event loop already closed; nobody is listening any more.
            self.closed = True

    def poke(self) -> None:
        """Wake the waiter from inside the owning event loop."""
        self._event.set()

    async def wait(self, timeout: float | None) -> bool:
        """Wait for a change or the timeout. Returns True if a change arrived."""

        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._event.clear()
        return True

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._unsubscribe(self)


class ChangeFeed:
    """Fan-out of "these cells changed" events.

    Stores call :meth:`publish` after every mutation. Publishing is
    thread-safe and never blocks on subscribers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_cell: dict[str, set[ChangeSubscription]] = {}

    def subscribe(self, cell_ids: Iterable[str]) -> ChangeSubscription:
        subscription = ChangeSubscription(self, frozenset(cell_ids))
        with self._lock:
            for cell in subscription.cell_ids:
                self._by_cell.setdefault(cell, set()).add(subscription)
        return subscription

    def _unsubscribe(self, subscription: ChangeSubscription) -> None:
        with self._lock:
            for cell in subscription.cell_ids:
                members = self._by_cell.get(cell)
                if members is None:
                    continue
                members.discard(subscription)
                if not members:
                    del self._by_cell[cell]

    def publish(self, cell_ids: Iterable[str]) -> None:
        targets: set[ChangeSubscription] = set()
        with self._lock:
            for cell in cell_ids:
                if cell:
                    targets.update(self._by_cell.get(cell, ()))
        for subscription in targets:
            subscription._signal()
            if subscription.closed:
                self._unsubscribe(subscription)

    def subscriber_count(self) -> int:
        with self._lock:
            return len({sub for members in self._by_cell.values() for sub in members})
