"""Store contracts shared by the in-memory and Supabase backends."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Sequence

from ..errors import InvalidTransition
from ..models.domain import DriverPresence, RequestStatus, RideRequest, can_transition
from .changes import ChangeFeed

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PresenceStore(ABC):
    """Driver presence keyed by driver id with a cell-id secondary index."""

    def __init__(
        self,
        *,
        stale_after: timedelta,
        clock: Clock = utc_now,
        changes: ChangeFeed | None = None,
        step_seconds: int | None = None,
    ) -> None:
        self.stale_after = stale_after
        self.clock = clock
        self.changes = changes or ChangeFeed()
        self.step_seconds = step_seconds

    @abstractmethod
    def upsert(self, presence: DriverPresence) -> bool:
        """Insert or replace the driver's record.

        Returns False, without writing, when ``presence.sequence`` is older
        than the stored one.
        """

    @abstractmethod
    def remove(self, driver_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, driver_id: str) -> Optional[DriverPresence]:
        raise NotImplementedError

    @abstractmethod
    def list_in_cells(
        self,
        cell_ids: Iterable[str],
        *,
        now: datetime | None = None,
        include_busy: bool = True,
    ) -> list[DriverPresence]:
        """Non-stale driver records whose cell is in ``cell_ids``."""

    def count_in_cells(self, cell_ids: Iterable[str], *, now: datetime | None = None) -> int:
        return len(self.list_in_cells(cell_ids, now=now))

    @abstractmethod
    def purge_older_than(self, cutoff: datetime) -> int:
        """Physically delete records whose last heartbeat is before ``cutoff``."""


class RequestStore(ABC):
    """Ride requests keyed by id with a cell-id secondary index on the pickup."""

    def __init__(
        self,
        *,
        clock: Clock = utc_now,
        changes: ChangeFeed | None = None,
        step_seconds: int | None = None,
    ) -> None:
        self.clock = clock
        self.changes = changes or ChangeFeed()
        self.step_seconds = step_seconds

    @abstractmethod
    def create(self, request: RideRequest) -> RideRequest:
        raise NotImplementedError

    @abstractmethod
    def get(self, request_id: str) -> Optional[RideRequest]:
        raise NotImplementedError

    @abstractmethod
    def claim(self, request_id: str, driver_id: str, driver_name: str | None = None) -> RideRequest:
        """Atomically move an open, unclaimed request to ``claimed``."""

    @abstractmethod
    def complete(self, request_id: str) -> RideRequest:
        raise NotImplementedError

    @abstractmethod
    def cancel(self, request_id: str, reason: str | None = None) -> RideRequest:
        raise NotImplementedError

    @abstractmethod
    def touch(self, request_id: str) -> RideRequest:
        """Refresh the rider heartbeat of an open request."""

    @abstractmethod
    def update_driver_location(self, request_id: str, driver_id: str, lat: float, lng: float) -> RideRequest:
        raise NotImplementedError

    @abstractmethod
    def list_open_in_cells(self, cell_ids: Iterable[str]) -> list[RideRequest]:
        """Open requests in the given cells, oldest first."""

    @abstractmethod
    def list_for_client(
        self, client_id: str, statuses: Sequence[RequestStatus] | None = None
    ) -> list[RideRequest]:
        raise NotImplementedError

    @abstractmethod
    def list_open_stale(self, cutoff: datetime) -> list[RideRequest]:
        """Open requests whose rider heartbeat is older than ``cutoff``."""


def ensure_transition(request: RideRequest, target: RequestStatus) -> None:
    if not can_transition(request.status, target):
        raise InvalidTransition(request.request_id or "", request.status.value, target.value)


def prepare_new_request(request: RideRequest, cell: str, now: datetime) -> RideRequest:
    """Copy of ``request`` stamped as a freshly opened record."""

    return replace(
        request,
        request_id=request.request_id or uuid.uuid4().hex,
        cell_id=cell,
        status=RequestStatus.OPEN,
        claimed_by=None,
        created_at=now,
        updated_at=now,
        last_heartbeat_at=now,
        driver_name=None,
        driver_lat=None,
        driver_lng=None,
        driver_location_updated_at=None,
        cancel_reason=None,
    )
