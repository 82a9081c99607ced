"""Driver presence endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, WebSocket, status

from ...errors import CellMatchError, InvalidCoordinate
from ...schemas.presence import (
    DriverCountResponse,
    HeartbeatRequest,
    NearbyDriversResponse,
    OfflineRequest,
    PresenceModel,
)
from ...services import geocell
from ...services.container import ServiceContainer
from ..deps import get_container
from ..errors import http_error
from ..streaming import serve_subscription

router = APIRouter(prefix="/presence", tags=["presence"])


@router.post("/heartbeat", response_model=PresenceModel, status_code=status.HTTP_200_OK)
def post_heartbeat(
    payload: HeartbeatRequest,
    container: ServiceContainer = Depends(get_container),
) -> PresenceModel:
    """Record the driver's current position. Later heartbeats replace earlier ones."""
    try:
        presence = container.presence.heartbeat(
            payload.driver_id,
            payload.lat,
            payload.lng,
            payload.active_ride_id,
            payload.sequence,
            role=payload.role,
            platform=payload.platform,
            app=payload.app,
        )
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return PresenceModel.from_domain(presence)


@router.post("/offline", status_code=status.HTTP_200_OK)
async def post_offline(
    payload: OfflineRequest,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    await container.presence.go_offline(payload.driver_id)
    return {"status": "offline", "driver_id": payload.driver_id}


@router.get("/count", response_model=DriverCountResponse, status_code=status.HTTP_200_OK)
def get_driver_count(
    lat: float = Query(..., description="Latitude of the rider"),
    lng: float = Query(..., description="Longitude of the rider"),
    container: ServiceContainer = Depends(get_container),
) -> DriverCountResponse:
    try:
        cells = geocell.search_cells(lat, lng, step_seconds=container.settings.cell_step_seconds)
        count = container.presence.count_nearby(lat, lng)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return DriverCountResponse(count=count, cell_ids=cells)


@router.get("/nearby", response_model=NearbyDriversResponse, status_code=status.HTTP_200_OK)
def get_nearby_drivers(
    lat: float = Query(...),
    lng: float = Query(...),
    include_busy: bool = Query(default=True, description="Include drivers currently on a ride"),
    container: ServiceContainer = Depends(get_container),
) -> NearbyDriversResponse:
    try:
        drivers = container.presence.nearby_drivers(lat, lng, include_busy=include_busy)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return NearbyDriversResponse(drivers=[PresenceModel.from_domain(driver) for driver in drivers])


@router.websocket("/count/ws")
async def watch_driver_count(
    websocket: WebSocket,
    lat: float = Query(...),
    lng: float = Query(...),
    container: ServiceContainer = Depends(get_container),
) -> None:
    """Push ``{"count": n}`` whenever the nearby driver count changes.

    Send ``{"lat": .., "lng": ..}`` to move the reference point.
    """
    try:
        watch = container.presence.watch_driver_count(lat, lng)
    except InvalidCoordinate as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
        return
    await websocket.accept()
    await serve_subscription(
        websocket,
        watch,
        lambda count: {"count": count, "cell_ids": watch.cell_ids},
        relocate=watch.relocate,
        on_close=watch.close,
    )
