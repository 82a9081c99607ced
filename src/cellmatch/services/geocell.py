"""Deterministic geo-cell indexing.

The plane is cut into square cells of ``step`` arc-seconds. A point's cell is
``floor(lat * 3600 / step)`` by ``floor(lng * 3600 / step)``; everything after
the first multiplication is integer arithmetic so every client and server
implementation lands on the same bucket.

A cell is labelled by the corner nearest the equator and prime meridian,
written as hemisphere plus absolute degrees, minutes and seconds::

    N04_44_00_W074_04_00_s30

so row ``-1`` is ``S00_00_00`` and column ``-1`` is ``W000_00_00``. The id is
the URL-safe base64 of that label without ``=`` padding. The mobile apps build
labels from ``floor(abs(coordinate))`` in the same format, so ids agree with
theirs for every point that is not exactly on a southern or western cell edge.
"""

from __future__ import annotations

import base64
import math
import re
from dataclasses import dataclass
from typing import Sequence

from shapely.geometry import Polygon, box

from ..config import settings
from ..errors import InvalidCoordinate

EARTH_RADIUS_KM = 6371.0
SECONDS_PER_DEGREE = 3600

# (lat offset, lng offset) in cell units, clockwise from north.
NEIGHBOR_OFFSETS: tuple[tuple[str, int, int], ...] = (
    ("N", 1, 0),
    ("NE", 1, 1),
    ("E", 0, 1),
    ("SE", -1, 1),
    ("S", -1, 0),
    ("SW", -1, -1),
    ("W", 0, -1),
    ("NW", 1, -1),
)
NEIGHBOR_DIRECTIONS: tuple[str, ...] = tuple(name for name, _, _ in NEIGHBOR_OFFSETS)
OPPOSITE_DIRECTION = {"N": "S", "NE": "SW", "E": "W", "SE": "NW", "S": "N", "SW": "NE", "W": "E", "NW": "SE"}
CANONICAL_PATTERN = re.compile(r"[NS]\d{2}_\d{2}_\d{2}_[EW]\d{3}_\d{2}_\d{2}_s\d{2,4}")


@dataclass(frozen=True, slots=True)
class GeoCell:
    """A grid cell identified by its integer row/column at a given step."""

    lat_index: int
    lng_index: int
    step_seconds: int

    @property
    def south(self) -> float:
        return self.lat_index * self.step_seconds / SECONDS_PER_DEGREE

    @property
    def west(self) -> float:
        return self.lng_index * self.step_seconds / SECONDS_PER_DEGREE

    @property
    def north(self) -> float:
        return (self.lat_index + 1) * self.step_seconds / SECONDS_PER_DEGREE

    @property
    def east(self) -> float:
        return (self.lng_index + 1) * self.step_seconds / SECONDS_PER_DEGREE

    @property
    def canonical(self) -> str:
        return _format_canonical(self.lat_index, self.lng_index, self.step_seconds)

    @property
    def cell_id(self) -> str:
        return encode_cell_id(self.canonical)


def _step(step_seconds: int | None) -> int:
    step = settings.cell_step_seconds if step_seconds is None else step_seconds
    if step <= 0 or SECONDS_PER_DEGREE % step != 0:
        raise ValueError(f"Cell step must divide {SECONDS_PER_DEGREE} seconds, got {step}")
    return step


def validate_coordinate(lat: float, lng: float) -> None:
    if isinstance(lat, bool) or isinstance(lng, bool):
        raise InvalidCoordinate(lat, lng)
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError) as exc:
        raise InvalidCoordinate(lat, lng) from exc
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidCoordinate(lat, lng)
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
        raise InvalidCoordinate(lat, lng)


def _row_bounds(step: int) -> tuple[int, int]:
    rows = 90 * SECONDS_PER_DEGREE // step
    return -rows, rows - 1


def _column_count(step: int) -> int:
    return 360 * SECONDS_PER_DEGREE // step


def _clamp_row(index: int, step: int) -> int:
    low, high = _row_bounds(step)
    return max(low, min(high, index))


def _wrap_column(index: int, step: int) -> int:
    columns = _column_count(step)
    half = columns // 2
    return (index + half) % columns - half


def locate(lat: float, lng: float, *, step_seconds: int | None = None) -> GeoCell:
    """Return the cell containing the point."""

    validate_coordinate(lat, lng)
    step = _step(step_seconds)
    lat_seconds = math.floor(float(lat) * SECONDS_PER_DEGREE)
    lng_seconds = math.floor(float(lng) * SECONDS_PER_DEGREE)
    lat_index = _clamp_row(lat_seconds // step, step)
    lng_index = _wrap_column(lng_seconds // step, step)
    return GeoCell(lat_index=lat_index, lng_index=lng_index, step_seconds=step)


def _dms(total_seconds: int) -> tuple[int, int, int]:
    degrees, remainder = divmod(total_seconds, SECONDS_PER_DEGREE)
    minutes, seconds = divmod(remainder, 60)
    return degrees, minutes, seconds


def _label_part(index: int, step: int, positive: str, negative: str) -> tuple[str, int]:
    # Negative rows/columns are named by their corner nearest zero: index -1
    # is S00_00_00, index -2 is S00_00_30 and so on.
    if index >= 0:
        return positive, index * step
    return negative, (-index - 1) * step


def _format_canonical(lat_index: int, lng_index: int, step: int) -> str:
    lat_hemi, lat_corner = _label_part(lat_index, step, "N", "S")
    lng_hemi, lng_corner = _label_part(lng_index, step, "E", "W")
    lat_deg, lat_min, lat_sec = _dms(lat_corner)
    lng_deg, lng_min, lng_sec = _dms(lng_corner)
    return (
        f"{lat_hemi}{lat_deg:02d}_{lat_min:02d}_{lat_sec:02d}_"
        f"{lng_hemi}{lng_deg:03d}_{lng_min:02d}_{lng_sec:02d}_s{step:02d}"
    )


def encode_cell_id(canonical: str) -> str:
    return base64.urlsafe_b64encode(canonical.encode("ascii")).decode("ascii").rstrip("=")


def decode_cell_id(cell_id: str) -> str:
    """Return the canonical label behind a cell id.

    Raises ``ValueError`` when the id is not base64 of a canonical label.
    """

    padding = "=" * (-len(cell_id) % 4)
    label = base64.b64decode(cell_id + padding, altchars=b"-_", validate=True).decode("ascii")
    if not CANONICAL_PATTERN.fullmatch(label):
        raise ValueError(f"'{cell_id}' is not a geo-cell id")
    return label


def canonical_key(lat: float, lng: float, *, step_seconds: int | None = None) -> str:
    return locate(lat, lng, step_seconds=step_seconds).canonical


def cell_id(lat: float, lng: float, *, step_seconds: int | None = None) -> str:
    return locate(lat, lng, step_seconds=step_seconds).cell_id


def neighbor_of(cell: GeoCell, direction: str) -> GeoCell:
    for name, d_lat, d_lng in NEIGHBOR_OFFSETS:
        if name == direction:
            return GeoCell(
                lat_index=_clamp_row(cell.lat_index + d_lat, cell.step_seconds),
                lng_index=_wrap_column(cell.lng_index + d_lng, cell.step_seconds),
                step_seconds=cell.step_seconds,
            )
    raise ValueError(f"Unknown direction '{direction}'")


def neighbor_geo_cells(cell: GeoCell) -> list[GeoCell]:
    return [neighbor_of(cell, direction) for direction in NEIGHBOR_DIRECTIONS]


def neighbor_cells(lat: float, lng: float, *, step_seconds: int | None = None) -> list[str]:
    """Ids of the 8 surrounding cells in N, NE, E, SE, S, SW, W, NW order.

    Longitude wraps at the antimeridian. Latitude is clamped, so at the polar
    rows the northern (or southern) neighbors repeat cells of the same row.
    """

    cell = locate(lat, lng, step_seconds=step_seconds)
    return [neighbor.cell_id for neighbor in neighbor_geo_cells(cell)]


def search_cells(lat: float, lng: float, *, step_seconds: int | None = None) -> list[str]:
    """The point's own cell followed by its neighbors, without duplicates."""

    cell = locate(lat, lng, step_seconds=step_seconds)
    ordered = [cell.cell_id, *(neighbor.cell_id for neighbor in neighbor_geo_cells(cell))]
    return list(dict.fromkeys(ordered))


def cell_polygon(cell: GeoCell) -> Polygon:
    """Cell bounds as a shapely polygon in (lng, lat) order."""

    return box(cell.west, cell.south, cell.east, cell.north)


def cell_geojson(cells: Sequence[GeoCell]) -> dict:
    """FeatureCollection of cell outlines for map debugging."""

    features = []
    for cell in cells:
        polygon = cell_polygon(cell)
        features.append(
            {
                "type": "Feature",
                "properties": {"cell_id": cell.cell_id, "canonical": cell.canonical},
                "geometry": {
                    "type": "Polygon",
                    "coordinates": [[[x, y] for x, y in polygon.exterior.coords]],
                },
            }
        )
    return {"type": "FeatureCollection", "features": features}


def moved_beyond(
    lat1: float, lng1: float, lat2: float, lng2: float, threshold_degrees: float
) -> bool:
    """True when either axis changed by more than the threshold."""

    return abs(lat1 - lat2) > threshold_degrees or abs(lng1 - lng2) > threshold_degrees


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c
