"""Process-local stores guarded by a lock; the default backend."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..errors import RequestAlreadyTaken, RequestNotFound
from ..models.domain import DriverPresence, PresenceRole, RequestStatus, RideRequest
from ..services import geocell
from .base import PresenceStore, RequestStore, ensure_transition, prepare_new_request

logger = logging.getLogger(__name__)


class InMemoryPresenceStore(PresenceStore):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self._records: dict[str, DriverPresence] = {}
        self._cells: dict[str, set[str]] = {}

    def _unindex(self, driver_id: str, cell: str) -> None:
        members = self._cells.get(cell)
        if members is None:
            return
        members.discard(driver_id)
        if not members:
            del self._cells[cell]

    def upsert(self, presence: DriverPresence) -> bool:
        cell = geocell.cell_id(presence.lat, presence.lng, step_seconds=self.step_seconds)
        record = replace(presence, cell_id=cell)
        with self._lock:
            current = self._records.get(record.driver_id)
            if current is not None and record.sequence < current.sequence:
                logger.debug(
                    "Ignoring out-of-order heartbeat %s < %s for driver %s",
                    record.sequence,
                    current.sequence,
                    record.driver_id,
                )
                return False
            touched = {cell}
            if current is not None and current.cell_id != cell:
                self._unindex(record.driver_id, current.cell_id)
                touched.add(current.cell_id)
            self._records[record.driver_id] = record
            self._cells.setdefault(cell, set()).add(record.driver_id)
        self.changes.publish(touched)
        return True

    def remove(self, driver_id: str) -> None:
        with self._lock:
            current = self._records.pop(driver_id, None)
            if current is None:
                return
            self._unindex(driver_id, current.cell_id)
        self.changes.publish({current.cell_id})

    def get(self, driver_id: str) -> Optional[DriverPresence]:
        with self._lock:
            record = self._records.get(driver_id)
            return replace(record) if record is not None else None

    def list_in_cells(
        self,
        cell_ids: Iterable[str],
        *,
        now: datetime | None = None,
        include_busy: bool = True,
    ) -> list[DriverPresence]:
        now = now or self.clock()
        found: list[DriverPresence] = []
        with self._lock:
            for cell in set(cell_ids):
                for driver_id in self._cells.get(cell, ()):
                    record = self._records[driver_id]
                    if record.role is not PresenceRole.DRIVER:
                        continue
                    if record.is_stale(now, self.stale_after):
                        continue
                    if not include_busy and record.is_busy:
                        continue
                    found.append(replace(record))
        found.sort(key=lambda item: item.driver_id)
        return found

    def purge_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            expired = [record for record in self._records.values() if record.last_heartbeat_at < cutoff]
            for record in expired:
                del self._records[record.driver_id]
                self._unindex(record.driver_id, record.cell_id)
        if expired:
            self.changes.publish({record.cell_id for record in expired})
        return len(expired)


class InMemoryRequestStore(RequestStore):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self._records: dict[str, RideRequest] = {}
        self._cells: dict[str, set[str]] = {}

    def create(self, request: RideRequest) -> RideRequest:
        cell = geocell.cell_id(request.pickup.lat, request.pickup.lng, step_seconds=self.step_seconds)
        if request.dropoff is not None:
            geocell.validate_coordinate(request.dropoff.lat, request.dropoff.lng)
        record = prepare_new_request(request, cell, self.clock())
        with self._lock:
            self._records[record.request_id] = record
            self._cells.setdefault(cell, set()).add(record.request_id)
        self.changes.publish({cell})
        return replace(record)

    def get(self, request_id: str) -> Optional[RideRequest]:
        with self._lock:
            record = self._records.get(request_id)
            return replace(record) if record is not None else None

    def _require(self, request_id: str) -> RideRequest:
        record = self._records.get(request_id)
        if record is None:
            raise RequestNotFound(request_id)
        return record

    def claim(self, request_id: str, driver_id: str, driver_name: str | None = None) -> RideRequest:
        with self._lock:
            record = self._require(request_id)
            if record.status is not RequestStatus.OPEN or record.claimed_by is not None:
                raise RequestAlreadyTaken(request_id, record.status.value)
            record.status = RequestStatus.CLAIMED
            record.claimed_by = driver_id
            record.driver_name = driver_name
            record.updated_at = self.clock()
            claimed = replace(record)
        self.changes.publish({claimed.cell_id})
        return claimed

    def _transition(self, request_id: str, target: RequestStatus, reason: str | None = None) -> RideRequest:
        with self._lock:
            record = self._require(request_id)
            ensure_transition(record, target)
            record.status = target
            record.updated_at = self.clock()
            if target is RequestStatus.CANCELLED:
                record.cancel_reason = reason
            updated = replace(record)
        self.changes.publish({updated.cell_id})
        return updated

    def complete(self, request_id: str) -> RideRequest:
        return self._transition(request_id, RequestStatus.COMPLETED)

    def cancel(self, request_id: str, reason: str | None = None) -> RideRequest:
        return self._transition(request_id, RequestStatus.CANCELLED, reason)

    def touch(self, request_id: str) -> RideRequest:
        with self._lock:
            record = self._require(request_id)
            if record.status is not RequestStatus.OPEN:
                ensure_transition(record, RequestStatus.OPEN)
            record.last_heartbeat_at = self.clock()
            updated = replace(record)
        self.changes.publish({updated.cell_id})
        return updated

    def update_driver_location(self, request_id: str, driver_id: str, lat: float, lng: float) -> RideRequest:
        geocell.validate_coordinate(lat, lng)
        with self._lock:
            record = self._require(request_id)
            if record.status is not RequestStatus.CLAIMED or record.claimed_by != driver_id:
                raise RequestAlreadyTaken(request_id, record.status.value)
            now = self.clock()
            record.driver_lat = lat
            record.driver_lng = lng
            record.driver_location_updated_at = now
            record.updated_at = now
            updated = replace(record)
        self.changes.publish({updated.cell_id})
        return updated

    def list_open_in_cells(self, cell_ids: Iterable[str]) -> list[RideRequest]:
        with self._lock:
            found = [
                replace(self._records[request_id])
                for cell in set(cell_ids)
                for request_id in self._cells.get(cell, ())
                if self._records[request_id].status is RequestStatus.OPEN
            ]
        found.sort(key=lambda item: (item.created_at, item.request_id))
        return found

    def list_for_client(
        self, client_id: str, statuses: Sequence[RequestStatus] | None = None
    ) -> list[RideRequest]:
        wanted = set(statuses) if statuses else None
        with self._lock:
            found = [
                replace(record)
                for record in self._records.values()
                if record.client_id == client_id and (wanted is None or record.status in wanted)
            ]
        found.sort(key=lambda item: (item.created_at, item.request_id))
        return found

    def list_open_stale(self, cutoff: datetime) -> list[RideRequest]:
        with self._lock:
            found = [
                replace(record)
                for record in self._records.values()
                if record.status is RequestStatus.OPEN and (record.last_heartbeat_at or record.created_at) < cutoff
            ]
        found.sort(key=lambda item: (item.created_at, item.request_id))
        return found
