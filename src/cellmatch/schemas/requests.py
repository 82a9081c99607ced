"""Pydantic request/response models for ride request endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.domain import LocationPoint, RequestStatus, RideRequest, age_label
from ..services.geocell import haversine_km


class LocationPointModel(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    address: Optional[str] = None

    def to_domain(self) -> LocationPoint:
        return LocationPoint(lat=self.lat, lng=self.lng, address=self.address)


class SubmitRequest(BaseModel):
    client_id: str = Field(..., min_length=1)
    pickup: LocationPointModel
    dropoff: Optional[LocationPointModel] = None
    client_name: Optional[str] = None


class AcceptRequest(BaseModel):
    driver_id: str = Field(..., min_length=1)
    driver_name: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Who or what cancelled: client, driver, ...")


class DriverLocationUpdate(BaseModel):
    driver_id: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)


class RideRequestModel(BaseModel):
    request_id: str
    client_id: str
    pickup: LocationPointModel
    dropoff: Optional[LocationPointModel] = None
    cell_id: str
    status: RequestStatus
    claimed_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_heartbeat_at: Optional[datetime] = None
    client_name: Optional[str] = None
    driver_name: Optional[str] = None
    driver_lat: Optional[float] = None
    driver_lng: Optional[float] = None
    driver_location_updated_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    age: Optional[str] = None
    distance_km: Optional[float] = None

    @classmethod
    def from_domain(
        cls,
        request: RideRequest,
        *,
        now: datetime | None = None,
        origin: tuple[float, float] | None = None,
    ) -> "RideRequestModel":
        distance = None
        if origin is not None:
            distance = round(haversine_km(origin[0], origin[1], request.pickup.lat, request.pickup.lng), 3)
        return cls(
            request_id=request.request_id,
            client_id=request.client_id,
            pickup=LocationPointModel(**_point(request.pickup)),
            dropoff=LocationPointModel(**_point(request.dropoff)) if request.dropoff else None,
            cell_id=request.cell_id,
            status=request.status,
            claimed_by=request.claimed_by,
            created_at=request.created_at,
            updated_at=request.updated_at,
            last_heartbeat_at=request.last_heartbeat_at,
            client_name=request.client_name,
            driver_name=request.driver_name,
            driver_lat=request.driver_lat,
            driver_lng=request.driver_lng,
            driver_location_updated_at=request.driver_location_updated_at,
            cancel_reason=request.cancel_reason,
            age=age_label(request.created_at, now) if now is not None else None,
            distance_km=distance,
        )


def _point(point: LocationPoint) -> dict:
    return {"lat": point.lat, "lng": point.lng, "address": point.address}


class OpenRequestsResponse(BaseModel):
    expanded: bool
    cell_ids: List[str]
    requests: List[RideRequestModel]
