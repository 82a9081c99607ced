"""Pydantic request/response models for presence endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.domain import DriverPresence, PresenceRole


class HeartbeatRequest(BaseModel):
    driver_id: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    active_ride_id: Optional[str] = None
    sequence: Optional[int] = Field(
        default=None,
        ge=0,
        description=(
            "Monotonic per-driver counter; a lower value than the stored one is rejected with 409. "
            "When omitted the server uses the heartbeat time in microseconds, so a driver must either "
            "always send it or never send it: small explicit values after an omitted one are stale."
        ),
    )
    role: PresenceRole = PresenceRole.DRIVER
    platform: Optional[str] = None
    app: Optional[str] = None


class OfflineRequest(BaseModel):
    driver_id: str = Field(..., min_length=1)


class PresenceModel(BaseModel):
    driver_id: str
    lat: float
    lng: float
    cell_id: str
    last_heartbeat_at: datetime
    sequence: int
    active_ride_id: Optional[str] = None
    role: PresenceRole

    @classmethod
    def from_domain(cls, presence: DriverPresence) -> "PresenceModel":
        return cls(
            driver_id=presence.driver_id,
            lat=presence.lat,
            lng=presence.lng,
            cell_id=presence.cell_id,
            last_heartbeat_at=presence.last_heartbeat_at,
            sequence=presence.sequence,
            active_ride_id=presence.active_ride_id,
            role=presence.role,
        )


class DriverCountResponse(BaseModel):
    count: int
    cell_ids: List[str]


class NearbyDriversResponse(BaseModel):
    drivers: List[PresenceModel]
