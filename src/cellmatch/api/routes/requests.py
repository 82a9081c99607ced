"""Ride request endpoints for riders and drivers."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, WebSocket, status

from ...errors import CellMatchError
from ...models.domain import RideRequest
from ...schemas.requests import (
    AcceptRequest,
    CancelRequest,
    DriverLocationUpdate,
    OpenRequestsResponse,
    RideRequestModel,
    SubmitRequest,
)
from ...services import geocell
from ...services.container import ServiceContainer
from ..deps import get_container
from ..errors import http_error
from ..streaming import serve_subscription

router = APIRouter(prefix="/requests", tags=["requests"])


def _render(container: ServiceContainer, request: RideRequest, origin: tuple[float, float] | None = None) -> RideRequestModel:
    now = container.request_store.clock()
    return RideRequestModel.from_domain(request, now=now, origin=origin)


@router.post("", response_model=RideRequestModel, status_code=status.HTTP_201_CREATED)
def submit_request(
    payload: SubmitRequest,
    container: ServiceContainer = Depends(get_container),
) -> RideRequestModel:
    """Publish a new open request in the pickup's cell."""
    try:
        created = container.requests.submit(
            payload.client_id,
            payload.pickup.to_domain(),
            payload.dropoff.to_domain() if payload.dropoff else None,
            client_name=payload.client_name,
        )
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return _render(container, created)


@router.get("", response_model=List[RideRequestModel], status_code=status.HTTP_200_OK)
def list_client_requests(
    client_id: str = Query(..., min_length=1),
    active_only: bool = Query(default=True, description="Only open and claimed requests"),
    container: ServiceContainer = Depends(get_container),
) -> List[RideRequestModel]:
    try:
        requests = container.requests.list_client_requests(client_id, active_only=active_only)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return [_render(container, item) for item in requests]


@router.get("/open", response_model=OpenRequestsResponse, status_code=status.HTTP_200_OK)
def list_open_requests(
    lat: float = Query(..., description="Latitude of the driver"),
    lng: float = Query(..., description="Longitude of the driver"),
    expanded: bool = Query(default=False, description="Search the 3x3 block instead of the driver's cell"),
    container: ServiceContainer = Depends(get_container),
) -> OpenRequestsResponse:
    step = container.settings.cell_step_seconds
    try:
        cells = (
            geocell.search_cells(lat, lng, step_seconds=step)
            if expanded
            else [geocell.cell_id(lat, lng, step_seconds=step)]
        )
        visible = container.requests.open_requests_near(lat, lng, expanded=expanded)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return OpenRequestsResponse(
        expanded=expanded,
        cell_ids=cells,
        requests=[_render(container, item, (lat, lng)) for item in visible],
    )


@router.websocket("/open/ws")
async def watch_open_requests(
    websocket: WebSocket,
    lat: float = Query(...),
    lng: float = Query(...),
    container: ServiceContainer = Depends(get_container),
) -> None:
    """Push the visible open requests each time the list changes."""
    try:
        watch = container.requests.watch_open_requests(lat, lng)
    except CellMatchError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
        return

    def render(visible: list[RideRequest]) -> dict:
        origin = (watch.lat, watch.lng)
        return {
            "expanded": watch.expanded,
            "cell_ids": watch.cell_ids,
            "requests": [_render(container, item, origin).model_dump(mode="json") for item in visible],
        }

    await websocket.accept()
    await serve_subscription(websocket, watch, render, relocate=watch.relocate, on_close=watch.close)


@router.get("/{request_id}", response_model=RideRequestModel, status_code=status.HTTP_200_OK)
def get_request(request_id: str, container: ServiceContainer = Depends(get_container)) -> RideRequestModel:
    try:
        request = container.requests.get_request(request_id)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return _render(container, request)


@router.post("/{request_id}/accept", response_model=RideRequestModel, status_code=status.HTTP_200_OK)
def accept_request(
    request_id: str,
    payload: AcceptRequest,
    container: ServiceContainer = Depends(get_container),
) -> RideRequestModel:
    """Claim an open request. Exactly one concurrent caller wins; the rest get 409."""
    try:
        claimed = container.requests.accept_request(request_id, payload.driver_id, payload.driver_name)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return _render(container, claimed)


@router.post("/{request_id}/complete", response_model=RideRequestModel, status_code=status.HTTP_200_OK)
def complete_request(request_id: str, container: ServiceContainer = Depends(get_container)) -> RideRequestModel:
    try:
        completed = container.requests.complete_request(request_id)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return _render(container, completed)


@router.post("/{request_id}/cancel", response_model=RideRequestModel, status_code=status.HTTP_200_OK)
def cancel_request(
    request_id: str,
    payload: CancelRequest | None = None,
    container: ServiceContainer = Depends(get_container),
) -> RideRequestModel:
    reason = payload.reason if payload else None
    try:
        cancelled = container.requests.cancel_request(request_id, reason)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return _render(container, cancelled)


@router.post("/{request_id}/heartbeat", response_model=RideRequestModel, status_code=status.HTTP_200_OK)
def touch_request(request_id: str, container: ServiceContainer = Depends(get_container)) -> RideRequestModel:
    """Rider keep-alive; keeps an open request visible to drivers."""
    try:
        touched = container.requests.touch_request(request_id)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return _render(container, touched)


@router.post("/{request_id}/driver-location", response_model=RideRequestModel, status_code=status.HTTP_200_OK)
def update_driver_location(
    request_id: str,
    payload: DriverLocationUpdate,
    container: ServiceContainer = Depends(get_container),
) -> RideRequestModel:
    try:
        updated = container.requests.update_driver_location(request_id, payload.driver_id, payload.lat, payload.lng)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    return _render(container, updated)


@router.websocket("/{request_id}/ws")
async def watch_request(
    websocket: WebSocket,
    request_id: str,
    container: ServiceContainer = Depends(get_container),
) -> None:
    """Push every new version of one request; closes once it is completed or cancelled."""
    try:
        watch = container.requests.watch_request(request_id)
    except CellMatchError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
        return
    await websocket.accept()
    await serve_subscription(
        websocket,
        watch,
        lambda request: _render(container, request).model_dump(mode="json"),
        on_close=watch.close,
    )
