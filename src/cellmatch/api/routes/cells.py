"""Geo-cell lookup used by client developers to check their own cell math."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from ...errors import CellMatchError
from ...schemas.cells import CellDescriptionResponse, NeighborModel
from ...services import geocell
from ...services.container import ServiceContainer
from ..deps import get_container
from ..errors import http_error

router = APIRouter(prefix="/cells", tags=["cells"])


@router.get("", response_model=CellDescriptionResponse, status_code=status.HTTP_200_OK)
def describe_cell(
    lat: float = Query(...),
    lng: float = Query(...),
    container: ServiceContainer = Depends(get_container),
) -> CellDescriptionResponse:
    step = container.settings.cell_step_seconds
    try:
        cell = geocell.locate(lat, lng, step_seconds=step)
    except CellMatchError as exc:
        raise http_error(exc) from exc
    neighbors = geocell.neighbor_geo_cells(cell)
    return CellDescriptionResponse(
        lat=lat,
        lng=lng,
        step_seconds=step,
        canonical=cell.canonical,
        cell_id=cell.cell_id,
        neighbors=[
            NeighborModel(direction=direction, cell_id=neighbor.cell_id, canonical=neighbor.canonical)
            for direction, neighbor in zip(geocell.NEIGHBOR_DIRECTIONS, neighbors)
        ],
        geojson=geocell.cell_geojson([cell, *neighbors]),
    )
