import asyncio
import time
from datetime import timedelta

import pytest

from src.cellmatch.errors import StaleHeartbeat
from src.cellmatch.models.domain import LocationPoint
from src.cellmatch.persistence.memory import InMemoryPresenceStore
from src.cellmatch.services.presence.service import PresenceService

SUBA = (4.7410, -74.0721)
SUBA_NORTH = (4.7420, -74.0721)
BOGOTA_CENTRO = (4.5981, -74.0760)


def _store(settings, store_class=InMemoryPresenceStore, **kwargs):
    return store_class(
        stale_after=timedelta(seconds=settings.presence_stale_seconds),
        step_seconds=settings.cell_step_seconds,
        **kwargs,
    )


def _service(settings, **kwargs) -> PresenceService:
    return PresenceService(_store(settings, **kwargs), settings)


class SlowPresenceStore(InMemoryPresenceStore):
    """Upserts take long enough for go_offline to overlap them."""

    def upsert(self, presence):
        time.sleep(0.3)
        return super().upsert(presence)


class FlakyPresenceStore(InMemoryPresenceStore):
    """Fails the first count with an error that is not a CellMatchError."""

    failures = 1

    def count_in_cells(self, cell_ids, *, now=None):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("postgrest returned 500")
        return super().count_in_cells(cell_ids, now=now)


async def _next(watch, timeout: float = 2.0):
    return await asyncio.wait_for(anext(watch), timeout)


def test_heartbeat_records_cell_and_rejects_older_sequence(fast_settings):
    service = _service(fast_settings)

    presence = service.heartbeat("d1", *SUBA, sequence=10)
    assert presence.cell_id == service.store.get("d1").cell_id

    with pytest.raises(StaleHeartbeat):
        service.heartbeat("d1", *SUBA_NORTH, sequence=9)
    assert service.count_nearby(*SUBA) == 1


def test_nearby_drivers_excludes_busy_when_asked(fast_settings):
    service = _service(fast_settings)
    service.heartbeat("d1", *SUBA)
    service.heartbeat("d2", *SUBA_NORTH, active_ride_id="ride-9")

    assert [d.driver_id for d in service.nearby_drivers(*SUBA)] == ["d1", "d2"]
    assert [d.driver_id for d in service.nearby_drivers(*SUBA, include_busy=False)] == ["d1"]


@pytest.mark.anyio
async def test_driver_count_watch_follows_heartbeats(fast_settings):
    service = _service(fast_settings)
    async with service.watch_driver_count(*SUBA) as watch:
        assert await _next(watch) == 0

        service.heartbeat("d1", *SUBA_NORTH)
        assert await _next(watch) == 1

        await service.go_offline("d1")
        assert await _next(watch) == 0
    service.shutdown()


@pytest.mark.anyio
async def test_watchers_of_the_same_cells_share_one_feed(fast_settings):
    service = _service(fast_settings)
    first = service.watch_driver_count(*SUBA)
    second = service.watch_driver_count(*SUBA)

    assert service.hub.active_feeds == 1
    assert await _next(first) == 0
    assert await _next(second) == 0

    first.close()
    assert service.hub.active_feeds == 1
    second.close()
    assert service.hub.active_feeds == 0


@pytest.mark.anyio
async def test_relocate_moves_watch_only_past_threshold(fast_settings):
    service = _service(fast_settings)
    service.heartbeat("far", *BOGOTA_CENTRO)
    watch = service.watch_driver_count(*SUBA)
    try:
        assert await _next(watch) == 0
        original = list(watch.cell_ids)

        assert watch.relocate(SUBA[0] + 0.0005, SUBA[1]) is False
        assert watch.cell_ids == original

        assert watch.relocate(*BOGOTA_CENTRO) is True
        assert watch.cell_ids != original
        assert await _next(watch) == 1
    finally:
        watch.close()
        service.shutdown()


@pytest.mark.anyio
async def test_heartbeat_loop_publishes_until_stopped(fast_settings):
    service = _service(fast_settings)
    positions = iter([SUBA, SUBA, SUBA_NORTH] + [SUBA_NORTH] * 100)

    async def location():
        point = next(positions)
        return LocationPoint(lat=point[0], lng=point[1])

    service.start_heartbeat("d1", location, interval=0.02)
    assert service.is_heartbeating("d1")
    await asyncio.sleep(0.2)

    stored = service.store.get("d1")
    assert stored is not None
    assert stored.lat == SUBA_NORTH[0]

    assert service.stop_heartbeat("d1") is True
    assert not service.is_heartbeating("d1")
    assert service.stop_heartbeat("d1") is False


@pytest.mark.anyio
async def test_heartbeat_loop_survives_bad_locations(fast_settings):
    service = _service(fast_settings)
    calls = []

    def location():
        calls.append(1)
        return (999.0, 0.0) if len(calls) == 1 else SUBA

    service.start_heartbeat("d1", location, interval=0.02)
    await asyncio.sleep(0.15)

    assert len(calls) > 1
    assert service.store.get("d1") is not None
    await service.go_offline("d1")
    assert service.store.get("d1") is None
    assert not service.is_heartbeating("d1")


@pytest.mark.anyio
async def test_go_offline_waits_for_heartbeat_in_flight(fast_settings):
    service = _service(fast_settings, store_class=SlowPresenceStore)

    service.start_heartbeat("d1", lambda: SUBA, interval=10)
    await asyncio.sleep(0.05)
    await service.go_offline("d1")

    assert service.store.get("d1") is None
    await asyncio.sleep(0.4)
    assert service.store.get("d1") is None
    service.shutdown()


@pytest.mark.anyio
async def test_count_watch_survives_unexpected_store_errors(fast_settings):
    service = _service(fast_settings, store_class=FlakyPresenceStore)
    try:
        async with service.watch_driver_count(*SUBA) as watch:
            assert await _next(watch) == 0
            assert service.store.failures == 0

            service.heartbeat("d1", *SUBA)
            assert await _next(watch) == 1
    finally:
        service.shutdown()


@pytest.mark.anyio
async def test_count_watch_drops_stale_driver_without_new_writes(fast_settings, clock):
    service = _service(fast_settings, clock=clock)
    service.heartbeat("d1", *SUBA)
    try:
        async with service.watch_driver_count(*SUBA) as watch:
            assert await _next(watch) == 1

            clock.advance(fast_settings.presence_stale_seconds + 1)
            assert await _next(watch) == 0
    finally:
        service.shutdown()


def test_implicit_sequence_follows_explicit_one(fast_settings):
    service = _service(fast_settings)
    service.heartbeat("d1", *SUBA, sequence=10)

    implicit = service.heartbeat("d1", *SUBA_NORTH)

    assert implicit.sequence > 10
    assert service.store.get("d1").lat == SUBA_NORTH[0]
    with pytest.raises(StaleHeartbeat):
        service.heartbeat("d1", *SUBA, sequence=11)
