"""Domain models for driver presence and ride requests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class RequestStatus(str, Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.CANCELLED)


class PresenceRole(str, Enum):
    DRIVER = "driver"
    CLIENT = "client"


# Allowed moves of the request state machine.
TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.OPEN: frozenset({RequestStatus.CLAIMED, RequestStatus.CANCELLED}),
    RequestStatus.CLAIMED: frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass(slots=True)
class LocationPoint:
    """A pickup or dropoff point with an optional geocoded address."""

    lat: float
    lng: float
    address: Optional[str] = None


@dataclass(slots=True)
class DriverPresence:
    """Latest heartbeat of an online driver."""

    driver_id: str
    lat: float
    lng: float
    cell_id: str
    last_heartbeat_at: datetime
    sequence: int = 0
    active_ride_id: Optional[str] = None
    role: PresenceRole = PresenceRole.DRIVER
    platform: Optional[str] = None
    app: Optional[str] = None

    def is_stale(self, now: datetime, threshold: timedelta) -> bool:
        return now - self.last_heartbeat_at > threshold

    @property
    def is_busy(self) -> bool:
        return self.active_ride_id is not None


@dataclass(slots=True)
class RideRequest:
    """A rider's request for a pickup, from creation until a terminal state."""

    client_id: str
    pickup: LocationPoint
    dropoff: Optional[LocationPoint] = None
    request_id: Optional[str] = None
    cell_id: Optional[str] = None
    status: RequestStatus = RequestStatus.OPEN
    claimed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    client_name: Optional[str] = None
    driver_name: Optional[str] = None
    driver_lat: Optional[float] = None
    driver_lng: Optional[float] = None
    driver_location_updated_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    def is_fresh(self, now: datetime, window: timedelta) -> bool:
        """Open requests are fresh while the rider's last sign of life is inside the window."""
        if self.status is not RequestStatus.OPEN:
            return False
        reference = self.last_heartbeat_at or self.created_at
        if reference is None:
            return False
        return now - reference < window


def age_label(created_at: datetime, now: datetime) -> str:
    """Short relative age used by client request lists."""

    age = now - created_at
    minutes = int(age.total_seconds() // 60)
    if minutes < 1:
        return "now"
    if minutes < 60:
        return f"{minutes} min ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} h ago"
    return f"{hours // 24} d ago"
