"""Supabase (PostgREST) backed presence and request stores.

Expected tables::

    driver_presence(driver_id text primary key, cell_id text, lat float8,
                    lng float8, last_heartbeat_at timestamptz, sequence int8,
                    active_ride_id text, role text, platform text, app text)
    ride_requests(request_id text primary key, client_id text, cell_id text,
                  status text, claimed_by text, pickup jsonb, dropoff jsonb,
                  created_at timestamptz, updated_at timestamptz,
                  last_heartbeat_at timestamptz, client_name text,
                  driver_name text, driver_lat float8, driver_lng float8,
                  driver_location_updated_at timestamptz, cancel_reason text)

with indexes on ``driver_presence(cell_id)`` and
``ride_requests(cell_id, status, created_at)``. Every state change is a single
conditional UPDATE, so concurrent writers from several service processes still
get exactly one winner.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

import httpx
from postgrest.exceptions import APIError

from ..errors import InvalidTransition, RequestAlreadyTaken, RequestNotFound, StorageUnavailable
from ..models.domain import (
    TRANSITIONS,
    DriverPresence,
    LocationPoint,
    PresenceRole,
    RequestStatus,
    RideRequest,
)
from ..services import geocell
from .base import PresenceStore, RequestStore, prepare_new_request

logger = logging.getLogger(__name__)

PRESENCE_TABLE = "driver_presence"
REQUESTS_TABLE = "ride_requests"


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _execute(query: Any) -> list[dict]:
    try:
        response = query.execute()
    except (httpx.HTTPError, ConnectionError, OSError) as exc:
        raise StorageUnavailable(f"Supabase request failed: {exc}") from exc
    except APIError as exc:
        logger.error("Supabase rejected query: %s", exc)
        raise
    return list(response.data or [])


def presence_to_row(presence: DriverPresence) -> dict[str, Any]:
    return {
        "driver_id": presence.driver_id,
        "cell_id": presence.cell_id,
        "lat": presence.lat,
        "lng": presence.lng,
        "last_heartbeat_at": _ts(presence.last_heartbeat_at),
        "sequence": presence.sequence,
        "active_ride_id": presence.active_ride_id,
        "role": presence.role.value,
        "platform": presence.platform,
        "app": presence.app,
    }


def presence_from_row(row: dict[str, Any]) -> DriverPresence:
    return DriverPresence(
        driver_id=str(row["driver_id"]),
        lat=float(row["lat"]),
        lng=float(row["lng"]),
        cell_id=str(row["cell_id"]),
        last_heartbeat_at=_parse_ts(row["last_heartbeat_at"]),
        sequence=int(row.get("sequence") or 0),
        active_ride_id=row.get("active_ride_id"),
        role=PresenceRole(row.get("role") or PresenceRole.DRIVER.value),
        platform=row.get("platform"),
        app=row.get("app"),
    )


def _point_to_json(point: LocationPoint | None) -> dict[str, Any] | None:
    if point is None:
        return None
    payload: dict[str, Any] = {"lat": point.lat, "lng": point.lng}
    if point.address is not None:
        payload["address"] = point.address
    return payload


def _point_from_json(payload: dict[str, Any] | None) -> LocationPoint | None:
    if not payload:
        return None
    return LocationPoint(lat=float(payload["lat"]), lng=float(payload["lng"]), address=payload.get("address"))


def request_to_row(request: RideRequest) -> dict[str, Any]:
    return {
        "request_id": request.request_id,
        "client_id": request.client_id,
        "cell_id": request.cell_id,
        "status": request.status.value,
        "claimed_by": request.claimed_by,
        "pickup": _point_to_json(request.pickup),
        "dropoff": _point_to_json(request.dropoff),
        "created_at": _ts(request.created_at),
        "updated_at": _ts(request.updated_at),
        "last_heartbeat_at": _ts(request.last_heartbeat_at),
        "client_name": request.client_name,
        "driver_name": request.driver_name,
        "driver_lat": request.driver_lat,
        "driver_lng": request.driver_lng,
        "driver_location_updated_at": _ts(request.driver_location_updated_at),
        "cancel_reason": request.cancel_reason,
    }


def request_from_row(row: dict[str, Any]) -> RideRequest:
    return RideRequest(
        request_id=str(row["request_id"]),
        client_id=str(row["client_id"]),
        pickup=_point_from_json(row["pickup"]),
        dropoff=_point_from_json(row.get("dropoff")),
        cell_id=row.get("cell_id"),
        status=RequestStatus(row["status"]),
        claimed_by=row.get("claimed_by"),
        created_at=_parse_ts(row.get("created_at")),
        updated_at=_parse_ts(row.get("updated_at")),
        last_heartbeat_at=_parse_ts(row.get("last_heartbeat_at")),
        client_name=row.get("client_name"),
        driver_name=row.get("driver_name"),
        driver_lat=row.get("driver_lat"),
        driver_lng=row.get("driver_lng"),
        driver_location_updated_at=_parse_ts(row.get("driver_location_updated_at")),
        cancel_reason=row.get("cancel_reason"),
    )


class SupabasePresenceStore(PresenceStore):
    def __init__(self, client: Any, **kwargs) -> None:
        super().__init__(**kwargs)
        self.client = client

    def _table(self):
        return self.client.table(PRESENCE_TABLE)

    def upsert(self, presence: DriverPresence) -> bool:
        cell = geocell.cell_id(presence.lat, presence.lng, step_seconds=self.step_seconds)
        row = presence_to_row(presence)
        row["cell_id"] = cell
        previous = _execute(self._table().select("cell_id, sequence").eq("driver_id", presence.driver_id))
        if previous:
            # Conditional on the stored sequence so a delayed heartbeat cannot win.
            updated = _execute(
                self._table().update(row).eq("driver_id", presence.driver_id).lte("sequence", presence.sequence)
            )
            if not updated:
                logger.debug(
                    "Ignoring out-of-order heartbeat %s for driver %s", presence.sequence, presence.driver_id
                )
                return False
            touched = {cell, str(previous[0]["cell_id"])}
        else:
            _execute(self._table().upsert(row, on_conflict="driver_id"))
            touched = {cell}
        self.changes.publish(touched)
        return True

    def remove(self, driver_id: str) -> None:
        deleted = _execute(self._table().delete().eq("driver_id", driver_id))
        if deleted:
            self.changes.publish({str(row["cell_id"]) for row in deleted})

    def get(self, driver_id: str) -> Optional[DriverPresence]:
        rows = _execute(self._table().select("*").eq("driver_id", driver_id).limit(1))
        return presence_from_row(rows[0]) if rows else None

    def list_in_cells(
        self,
        cell_ids: Iterable[str],
        *,
        now: datetime | None = None,
        include_busy: bool = True,
    ) -> list[DriverPresence]:
        cells = sorted(set(cell_ids))
        if not cells:
            return []
        cutoff = (now or self.clock()) - self.stale_after
        query = (
            self._table()
            .select("*")
            .in_("cell_id", cells)
            .eq("role", PresenceRole.DRIVER.value)
            .gte("last_heartbeat_at", _ts(cutoff))
        )
        if not include_busy:
            query = query.is_("active_ride_id", "null")
        records = [presence_from_row(row) for row in _execute(query)]
        records.sort(key=lambda item: item.driver_id)
        return records

    def purge_older_than(self, cutoff: datetime) -> int:
        deleted = _execute(self._table().delete().lt("last_heartbeat_at", _ts(cutoff)))
        if deleted:
            self.changes.publish({str(row["cell_id"]) for row in deleted})
        return len(deleted)


class SupabaseRequestStore(RequestStore):
    def __init__(self, client: Any, **kwargs) -> None:
        super().__init__(**kwargs)
        self.client = client

    def _table(self):
        return self.client.table(REQUESTS_TABLE)

    def _fetch(self, request_id: str) -> RideRequest:
        rows = _execute(self._table().select("*").eq("request_id", request_id).limit(1))
        if not rows:
            raise RequestNotFound(request_id)
        return request_from_row(rows[0])

    def _single(self, rows: list[dict]) -> RideRequest:
        record = request_from_row(rows[0])
        self.changes.publish({record.cell_id})
        return record

    def create(self, request: RideRequest) -> RideRequest:
        cell = geocell.cell_id(request.pickup.lat, request.pickup.lng, step_seconds=self.step_seconds)
        if request.dropoff is not None:
            geocell.validate_coordinate(request.dropoff.lat, request.dropoff.lng)
        record = prepare_new_request(request, cell, self.clock())
        rows = _execute(self._table().insert(request_to_row(record)))
        return self._single(rows) if rows else record

    def get(self, request_id: str) -> Optional[RideRequest]:
        rows = _execute(self._table().select("*").eq("request_id", request_id).limit(1))
        return request_from_row(rows[0]) if rows else None

    def claim(self, request_id: str, driver_id: str, driver_name: str | None = None) -> RideRequest:
        rows = _execute(
            self._table()
            .update(
                {
                    "status": RequestStatus.CLAIMED.value,
                    "claimed_by": driver_id,
                    "driver_name": driver_name,
                    "updated_at": _ts(self.clock()),
                }
            )
            .eq("request_id", request_id)
            .eq("status", RequestStatus.OPEN.value)
            .is_("claimed_by", "null")
        )
        if rows:
            return self._single(rows)
        current = self._fetch(request_id)
        raise RequestAlreadyTaken(request_id, current.status.value)

    def _transition(self, request_id: str, target: RequestStatus, extra: dict[str, Any] | None = None) -> RideRequest:
        sources = [status.value for status, targets in TRANSITIONS.items() if target in targets]
        payload = {"status": target.value, "updated_at": _ts(self.clock()), **(extra or {})}
        rows = _execute(self._table().update(payload).eq("request_id", request_id).in_("status", sources))
        if rows:
            return self._single(rows)
        current = self._fetch(request_id)
        raise InvalidTransition(request_id, current.status.value, target.value)

    def complete(self, request_id: str) -> RideRequest:
        return self._transition(request_id, RequestStatus.COMPLETED)

    def cancel(self, request_id: str, reason: str | None = None) -> RideRequest:
        return self._transition(request_id, RequestStatus.CANCELLED, {"cancel_reason": reason})

    def touch(self, request_id: str) -> RideRequest:
        rows = _execute(
            self._table()
            .update({"last_heartbeat_at": _ts(self.clock())})
            .eq("request_id", request_id)
            .eq("status", RequestStatus.OPEN.value)
        )
        if rows:
            return self._single(rows)
        current = self._fetch(request_id)
        raise InvalidTransition(request_id, current.status.value, RequestStatus.OPEN.value)

    def update_driver_location(self, request_id: str, driver_id: str, lat: float, lng: float) -> RideRequest:
        geocell.validate_coordinate(lat, lng)
        now = _ts(self.clock())
        rows = _execute(
            self._table()
            .update({"driver_lat": lat, "driver_lng": lng, "driver_location_updated_at": now, "updated_at": now})
            .eq("request_id", request_id)
            .eq("status", RequestStatus.CLAIMED.value)
            .eq("claimed_by", driver_id)
        )
        if rows:
            return self._single(rows)
        current = self._fetch(request_id)
        raise RequestAlreadyTaken(request_id, current.status.value)

    def list_open_in_cells(self, cell_ids: Iterable[str]) -> list[RideRequest]:
        cells = sorted(set(cell_ids))
        if not cells:
            return []
        rows = _execute(
            self._table()
            .select("*")
            .in_("cell_id", cells)
            .eq("status", RequestStatus.OPEN.value)
            .order("created_at")
        )
        return [request_from_row(row) for row in rows]

    def list_for_client(
        self, client_id: str, statuses: Sequence[RequestStatus] | None = None
    ) -> list[RideRequest]:
        query = self._table().select("*").eq("client_id", client_id)
        if statuses:
            query = query.in_("status", [status.value for status in statuses])
        rows = _execute(query.order("created_at"))
        return [request_from_row(row) for row in rows]

    def list_open_stale(self, cutoff: datetime) -> list[RideRequest]:
        rows = _execute(
            self._table()
            .select("*")
            .eq("status", RequestStatus.OPEN.value)
            .lt("last_heartbeat_at", _ts(cutoff))
            .order("created_at")
        )
        return [request_from_row(row) for row in rows]
