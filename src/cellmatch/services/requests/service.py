"""Ride request submission, driver matching views and acceptance."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional, Sequence, Union

from ...config import Settings, settings as default_settings
from ...errors import RequestNotFound
from ...models.domain import LocationPoint, RequestStatus, RideRequest
from ...persistence.base import RequestStore
from ...persistence.changes import ChangeSubscription
from .. import geocell

logger = logging.getLogger(__name__)

PointLike = Union[LocationPoint, tuple[float, float]]

ACTIVE_STATUSES = (RequestStatus.OPEN, RequestStatus.CLAIMED)


def _as_point(value: PointLike) -> LocationPoint:
    if isinstance(value, LocationPoint):
        return value
    lat, lng = value
    return LocationPoint(lat=lat, lng=lng)


def _visible_signature(requests: Sequence[RideRequest]) -> tuple:
    return tuple((item.request_id, item.status.value, item.last_heartbeat_at) for item in requests)


class OpenRequestsWatch:
    """Live list of fresh open requests around a driver.

    Starts on the driver's own cell. Once that cell has shown nothing for
    ``expansion_wait_seconds`` the watch widens to the cell and its eight
    neighbors and stays widened until closed or relocated.
    """

    def __init__(self, service: "RequestService", lat: float, lng: float) -> None:
        self._service = service
        self._step = service.settings.cell_step_seconds
        self._subscription: ChangeSubscription | None = None
        self._signature: tuple | None = None
        self._closed = False
        self._set_origin(lat, lng)

    def _set_origin(self, lat: float, lng: float) -> None:
        self.lat = lat
        self.lng = lng
        self.own_cell = geocell.cell_id(lat, lng, step_seconds=self._step)
        self.expanded = False
        self._empty_since: float | None = None
        self._signature = None
        self._resubscribe()

    @property
    def cell_ids(self) -> list[str]:
        if self.expanded:
            return geocell.search_cells(self.lat, self.lng, step_seconds=self._step)
        return [self.own_cell]

    def _resubscribe(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription.poke()
        self._subscription = None

    def relocate(self, lat: float, lng: float) -> bool:
        """Restart in single-cell mode when the driver moved past the threshold."""

        if self._closed:
            return False
        threshold = self._service.settings.relocate_threshold_degrees
        if not geocell.moved_beyond(self.lat, self.lng, lat, lng, threshold):
            return False
        self._set_origin(lat, lng)
        return True

    def _expand(self) -> None:
        self.expanded = True
        self._resubscribe()
        logger.info("Request watch around %s expanded to %d cells", self.own_cell, len(self.cell_ids))

    def __aiter__(self) -> "OpenRequestsWatch":
        return self

    async def __anext__(self) -> list[RideRequest]:
        loop = asyncio.get_running_loop()
        refresh = self._service.settings.requests_refresh_seconds
        wait_window = self._service.settings.expansion_wait_seconds
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._subscription is None:
                self._subscription = self._service.store.changes.subscribe(self.cell_ids)
            subscription = self._subscription

            visible = await asyncio.to_thread(self._service.list_fresh_open, self.cell_ids)
            if self._closed:
                raise StopAsyncIteration
            if subscription is not self._subscription:
                # Relocated while the store was being read.
                continue

            timeout = refresh
            if not self.expanded:
                now = loop.time()
                if visible:
                    self._empty_since = None
                elif self._empty_since is None:
                    self._empty_since = now
                if self._empty_since is not None:
                    remaining = wait_window - (now - self._empty_since)
                    if remaining <= 0:
                        self._expand()
                        continue
                    timeout = min(refresh, remaining)

            signature = (self.expanded, _visible_signature(visible))
            if signature != self._signature:
                self._signature = signature
                return visible
            await subscription.wait(timeout)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._subscription is not None:
            self._subscription.close()
            self._subscription.poke()

    async def __aenter__(self) -> "OpenRequestsWatch":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class RequestWatch:
    """Follows one request, yielding each new version until it is terminal."""

    def __init__(self, service: "RequestService", request_id: str) -> None:
        self._service = service
        self.request_id = request_id
        self._subscription: ChangeSubscription | None = None
        self._last: RideRequest | None = None
        self._done = False

    def __aiter__(self) -> "RequestWatch":
        return self

    async def __anext__(self) -> RideRequest:
        refresh = self._service.settings.requests_refresh_seconds
        while True:
            if self._done:
                self.close()
                raise StopAsyncIteration
            current = await asyncio.to_thread(self._service.get_request, self.request_id)
            if self._subscription is None:
                self._subscription = self._service.store.changes.subscribe([current.cell_id])
            if current != self._last:
                self._last = current
                self._done = current.status.is_terminal
                return current
            await self._subscription.wait(refresh)

    def close(self) -> None:
        self._done = True
        if self._subscription is not None:
            self._subscription.close()
            self._subscription.poke()
            self._subscription = None


class RequestService:
    """Entry point for riders and drivers acting on ride requests."""

    def __init__(self, store: RequestStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or default_settings

    @property
    def fresh_window(self) -> timedelta:
        return timedelta(seconds=self.settings.request_fresh_seconds)

    def submit(
        self,
        client_id: str,
        pickup: PointLike,
        dropoff: Optional[PointLike] = None,
        client_name: str | None = None,
    ) -> RideRequest:
        pickup_point = _as_point(pickup)
        dropoff_point = _as_point(dropoff) if dropoff is not None else None
        geocell.validate_coordinate(pickup_point.lat, pickup_point.lng)
        if dropoff_point is not None:
            geocell.validate_coordinate(dropoff_point.lat, dropoff_point.lng)
        created = self.store.create(
            RideRequest(client_id=client_id, pickup=pickup_point, dropoff=dropoff_point, client_name=client_name)
        )
        logger.info("Request %s created by %s in cell %s", created.request_id, client_id, created.cell_id)
        return created

    def get_request(self, request_id: str) -> RideRequest:
        request = self.store.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def list_client_requests(self, client_id: str, *, active_only: bool = True) -> list[RideRequest]:
        return self.store.list_for_client(client_id, ACTIVE_STATUSES if active_only else None)

    def list_fresh_open(self, cell_ids: Sequence[str]) -> list[RideRequest]:
        now = self.store.clock()
        window = self.fresh_window
        return [item for item in self.store.list_open_in_cells(cell_ids) if item.is_fresh(now, window)]

    def open_requests_near(self, lat: float, lng: float, *, expanded: bool = False) -> list[RideRequest]:
        step = self.settings.cell_step_seconds
        cells = geocell.search_cells(lat, lng, step_seconds=step) if expanded else [geocell.cell_id(lat, lng, step_seconds=step)]
        return self.list_fresh_open(cells)

    def watch_open_requests(self, driver_lat: float, driver_lng: float) -> OpenRequestsWatch:
        return OpenRequestsWatch(self, driver_lat, driver_lng)

    def watch_request(self, request_id: str) -> RequestWatch:
        self.get_request(request_id)
        return RequestWatch(self, request_id)

    def accept_request(self, request_id: str, driver_id: str, driver_name: str | None = None) -> RideRequest:
        claimed = self.store.claim(request_id, driver_id, driver_name)
        logger.info("Request %s claimed by %s", request_id, driver_id)
        return claimed

    def complete_request(self, request_id: str) -> RideRequest:
        completed = self.store.complete(request_id)
        logger.info("Request %s completed", request_id)
        return completed

    def cancel_request(self, request_id: str, reason: str | None = None) -> RideRequest:
        cancelled = self.store.cancel(request_id, reason)
        logger.info("Request %s cancelled (%s)", request_id, reason or "unspecified")
        return cancelled

    def touch_request(self, request_id: str) -> RideRequest:
        return self.store.touch(request_id)

    def update_driver_location(self, request_id: str, driver_id: str, lat: float, lng: float) -> RideRequest:
        return self.store.update_driver_location(request_id, driver_id, lat, lng)
