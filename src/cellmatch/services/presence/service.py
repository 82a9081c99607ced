"""Driver heartbeats and live nearby-driver counts."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from ...config import Settings, settings as default_settings
from ...errors import CellMatchError, StaleHeartbeat
from ...models.domain import DriverPresence, LocationPoint, PresenceRole
from ...persistence.base import PresenceStore
from .. import geocell

logger = logging.getLogger(__name__)

LocationLike = Union[LocationPoint, tuple[float, float]]
LocationProvider = Callable[[], Union[LocationLike, Awaitable[LocationLike]]]
RideIdProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


async def _call(provider: Callable[[], Any]) -> Any:
    result = provider()
    if inspect.isawaitable(result):
        result = await result
    return result


def _coordinates(location: LocationLike) -> tuple[float, float]:
    if isinstance(location, LocationPoint):
        return location.lat, location.lng
    lat, lng = location
    return lat, lng


class CountFeed:
    """Single evaluator for one set of cells, shared by every watcher of that set."""

    def __init__(self, store: PresenceStore, cell_ids: frozenset[str], refresh_seconds: float) -> None:
        self.store = store
        self.cell_ids = cell_ids
        self.refresh_seconds = refresh_seconds
        self.value: int | None = None
        self.evaluations = 0
        self._listeners: set[asyncio.Event] = set()
        self._task: asyncio.Task | None = None

    def add_listener(self, event: asyncio.Event) -> None:
        self._listeners.add(event)
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def remove_listener(self, event: asyncio.Event) -> bool:
        """Returns True when the feed has no listeners left and was stopped."""

        self._listeners.discard(event)
        if self._listeners:
            return False
        self.stop()
        return True

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        subscription = self.store.changes.subscribe(self.cell_ids)
        try:
            while True:
                try:
                    count = await asyncio.to_thread(self.store.count_in_cells, self.cell_ids)
                    self.evaluations += 1
                    if count != self.value:
                        self.value = count
                        for event in list(self._listeners):
                            event.set()
                except CellMatchError as exc:
                    logger.warning("Driver count evaluation failed: %s", exc)
                except Exception:
                    logger.exception("Driver count evaluation failed for %d cells", len(self.cell_ids))
                await subscription.wait(self.refresh_seconds)
        finally:
            subscription.close()


class CountHub:
    def __init__(self, store: PresenceStore, refresh_seconds: float) -> None:
        self.store = store
        self.refresh_seconds = refresh_seconds
        self._feeds: dict[frozenset[str], CountFeed] = {}

    def join(self, cell_ids: frozenset[str], event: asyncio.Event) -> CountFeed:
        feed = self._feeds.get(cell_ids)
        if feed is None:
            feed = CountFeed(self.store, cell_ids, self.refresh_seconds)
            self._feeds[cell_ids] = feed
        feed.add_listener(event)
        return feed

    def leave(self, feed: CountFeed, event: asyncio.Event) -> None:
        if feed.remove_listener(event) and self._feeds.get(feed.cell_ids) is feed:
            del self._feeds[feed.cell_ids]

    @property
    def active_feeds(self) -> int:
        return len(self._feeds)

    def shutdown(self) -> None:
        for feed in self._feeds.values():
            feed.stop()
        self._feeds.clear()


class DriverCountWatch:
    """Async iterator of nearby driver counts around a reference point.

    Yields the current count right away and afterwards only when it changes.
    """

    def __init__(self, service: "PresenceService", lat: float, lng: float) -> None:
        self._service = service
        self._wake = asyncio.Event()
        self._last: int | None = None
        self._closed = False
        self._feed: CountFeed | None = None
        self.lat = lat
        self.lng = lng
        self.cell_ids = geocell.search_cells(lat, lng, step_seconds=service.settings.cell_step_seconds)
        self._subscribe()

    def _subscribe(self) -> None:
        self._feed = self._service.hub.join(frozenset(self.cell_ids), self._wake)

    def relocate(self, lat: float, lng: float) -> bool:
        """Move the reference point; re-subscribes only past the movement threshold."""

        if self._closed:
            return False
        threshold = self._service.settings.relocate_threshold_degrees
        if not geocell.moved_beyond(self.lat, self.lng, lat, lng, threshold):
            return False
        cell_ids = geocell.search_cells(lat, lng, step_seconds=self._service.settings.cell_step_seconds)
        self.lat, self.lng = lat, lng
        if cell_ids == self.cell_ids:
            return False
        self._service.hub.leave(self._feed, self._wake)
        self.cell_ids = cell_ids
        self._subscribe()
        self._wake.set()
        logger.debug("Driver count watch moved to %s", self.cell_ids[0])
        return True

    def __aiter__(self) -> "DriverCountWatch":
        return self

    async def __anext__(self) -> int:
        while True:
            if self._closed:
                raise StopAsyncIteration
            self._wake.clear()
            value = self._feed.value
            if value is not None and value != self._last:
                self._last = value
                return value
            await self._wake.wait()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._service.hub.leave(self._feed, self._wake)
        self._wake.set()

    async def __aenter__(self) -> "DriverCountWatch":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class PresenceService:
    """Publishes driver heartbeats and serves nearby-driver counts to riders."""

    def __init__(self, store: PresenceStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or default_settings
        self.hub = CountHub(store, self.settings.count_refresh_seconds)
        self._loops: dict[str, asyncio.Task] = {}
        self._ticks: dict[str, asyncio.Task] = {}

    def heartbeat(
        self,
        driver_id: str,
        lat: float,
        lng: float,
        active_ride_id: str | None = None,
        sequence: int | None = None,
        *,
        role: PresenceRole = PresenceRole.DRIVER,
        platform: str | None = None,
        app: str | None = None,
    ) -> DriverPresence:
        """Record one heartbeat; the latest one per driver replaces the previous."""

        now = self.store.clock()
        cell = geocell.cell_id(lat, lng, step_seconds=self.settings.cell_step_seconds)
        if sequence is None:
            sequence = int(now.timestamp() * 1_000_000)
        presence = DriverPresence(
            driver_id=driver_id,
            lat=float(lat),
            lng=float(lng),
            cell_id=cell,
            last_heartbeat_at=now,
            sequence=sequence,
            active_ride_id=active_ride_id,
            role=role,
            platform=platform,
            app=app,
        )
        if not self.store.upsert(presence):
            stored = self.store.get(driver_id)
            raise StaleHeartbeat(driver_id, sequence, stored.sequence if stored else sequence)
        logger.debug("Heartbeat from %s in cell %s", driver_id, cell)
        return presence

    def start_heartbeat(
        self,
        driver_id: str,
        location_provider: LocationProvider,
        active_ride_id_provider: RideIdProvider | None = None,
        interval: float | None = None,
    ) -> asyncio.Task:
        """Start publishing heartbeats for ``driver_id`` until stopped.

        The first heartbeat is sent immediately. Starting again for the same
        driver replaces the running loop.
        """

        self.stop_heartbeat(driver_id)
        period = interval if interval is not None else self.settings.heartbeat_interval_seconds
        task = asyncio.create_task(
            self._heartbeat_loop(driver_id, location_provider, active_ride_id_provider, period),
            name=f"heartbeat:{driver_id}",
        )
        self._loops[driver_id] = task
        logger.info("Heartbeat started for %s (interval %.1fs)", driver_id, period)
        return task

    async def _heartbeat_loop(
        self,
        driver_id: str,
        location_provider: LocationProvider,
        active_ride_id_provider: RideIdProvider | None,
        period: float,
    ) -> None:
        while True:
            tick = asyncio.create_task(self._heartbeat_tick(driver_id, location_provider, active_ride_id_provider))
            self._ticks[driver_id] = tick
            # Cancelling the loop must not abandon a write already running in a worker thread.
            await asyncio.shield(tick)
            if self._ticks.get(driver_id) is tick:
                del self._ticks[driver_id]
            await asyncio.sleep(period)

    async def _heartbeat_tick(
        self,
        driver_id: str,
        location_provider: LocationProvider,
        active_ride_id_provider: RideIdProvider | None,
    ) -> None:
        try:
            lat, lng = _coordinates(await _call(location_provider))
            ride_id = await _call(active_ride_id_provider) if active_ride_id_provider else None
            await asyncio.to_thread(self.heartbeat, driver_id, lat, lng, ride_id)
        except CellMatchError as exc:
            logger.warning("Heartbeat for %s rejected: %s", driver_id, exc)
        except Exception:
            logger.exception("Heartbeat tick failed for %s", driver_id)

    def stop_heartbeat(self, driver_id: str) -> bool:
        task = self._loops.pop(driver_id, None)
        if task is None:
            return False
        task.cancel()
        logger.info("Heartbeat stopped for %s", driver_id)
        return True

    def is_heartbeating(self, driver_id: str) -> bool:
        task = self._loops.get(driver_id)
        return task is not None and not task.done()

    async def go_offline(self, driver_id: str) -> None:
        """Stop the heartbeat loop and remove the driver's presence.

        A heartbeat already in flight is allowed to land first so it cannot
        re-create the record after the removal.
        """

        self.stop_heartbeat(driver_id)
        tick = self._ticks.pop(driver_id, None)
        if tick is not None:
            await asyncio.gather(tick, return_exceptions=True)
        await asyncio.to_thread(self.store.remove, driver_id)
        logger.info("Driver %s went offline", driver_id)

    def count_nearby(self, lat: float, lng: float) -> int:
        return self.store.count_in_cells(self._cells(lat, lng))

    def nearby_drivers(self, lat: float, lng: float, *, include_busy: bool = True) -> list[DriverPresence]:
        return self.store.list_in_cells(self._cells(lat, lng), include_busy=include_busy)

    def _cells(self, lat: float, lng: float) -> list[str]:
        return geocell.search_cells(lat, lng, step_seconds=self.settings.cell_step_seconds)

    def watch_driver_count(self, lat: float, lng: float) -> DriverCountWatch:
        return DriverCountWatch(self, lat, lng)

    def shutdown(self) -> None:
        for driver_id in list(self._loops):
            self.stop_heartbeat(driver_id)
        for tick in self._ticks.values():
            tick.cancel()
        self._ticks.clear()
        self.hub.shutdown()
