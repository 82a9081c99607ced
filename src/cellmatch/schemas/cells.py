"""Geo-cell debug response."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel


class NeighborModel(BaseModel):
    direction: str
    cell_id: str
    canonical: str


class CellDescriptionResponse(BaseModel):
    lat: float
    lng: float
    step_seconds: int
    canonical: str
    cell_id: str
    neighbors: List[NeighborModel]
    geojson: dict
