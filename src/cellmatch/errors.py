"""Domain exceptions raised by the indexer, stores and services."""

from __future__ import annotations


class CellMatchError(Exception):
    """Base class for all service errors."""


class InvalidCoordinate(CellMatchError, ValueError):
    """Latitude or longitude outside the valid range (or not a finite number)."""

    def __init__(self, lat: float, lng: float) -> None:
        super().__init__(f"Invalid coordinate lat={lat!r}, lng={lng!r}")
        self.lat = lat
        self.lng = lng


class RequestNotFound(CellMatchError, LookupError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"Ride request '{request_id}' not found")
        self.request_id = request_id


class RequestAlreadyTaken(CellMatchError):
    """Lost the race to claim a request, or the request is no longer open."""

    def __init__(self, request_id: str, status: str | None = None) -> None:
        detail = f" (status={status})" if status else ""
        super().__init__(f"Ride request '{request_id}' is no longer available{detail}")
        self.request_id = request_id
        self.status = status


class InvalidTransition(CellMatchError):
    def __init__(self, request_id: str, current: str, target: str) -> None:
        super().__init__(f"Ride request '{request_id}' cannot move from {current} to {target}")
        self.request_id = request_id
        self.current = current
        self.target = target


class StaleHeartbeat(CellMatchError):
    """A heartbeat arrived after a newer one for the same driver was stored."""

    def __init__(self, driver_id: str, sequence: int, stored_sequence: int) -> None:
        super().__init__(
            f"Heartbeat {sequence} for driver '{driver_id}' is older than stored heartbeat {stored_sequence}"
        )
        self.driver_id = driver_id
        self.sequence = sequence
        self.stored_sequence = stored_sequence


class StorageUnavailable(CellMatchError, ConnectionError):
    """The configured backing store could not be reached."""
