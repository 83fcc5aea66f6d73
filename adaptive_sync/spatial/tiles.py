"""
Tiling Module for Adaptive Places Sync
--------------------------------

This module provides utilities for generating the root search cells of a run. A region's
bounding box is partitioned into a fixed `cols x rows` grid of equal rectangles; each rectangle
becomes one GridCell whose query disc is centred on the rectangle and just large enough to
reach its farthest corner, so the union of root discs covers the whole region.

Functions:
  make_cell(cell_id, bounds, level, parent_id) -> GridCell:
    Build a cell for a (south, west, north, east) rectangle.

  generate_grid(region, mode) -> list[GridCell]:
    Deterministic root cells for a region. Test mode yields a small fixed grid (2 x 3) with
    `primary-<row>-<col>` ids, production an 8 x 9 grid with `prod-<row>-<col>` ids.

  calculate_search_radius(bounds) -> float:
    Geodesic distance in meters from the centre of a rectangle to its farthest corner.

  haversine_meters(lat1, lng1, lat2, lng2) -> float:
    Great-circle distance between two points.
"""

import math
from typing import List, Optional, Tuple

from ..config import GRID_SHAPES
from ..errors import ValidationError
from ..models import GridCell, Region
from ..utils.logger import logger

EARTH_RADIUS = 6371000  # meters

ID_PREFIXES = {
    'test': 'primary',
    'production': 'prod',
}


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlng = math.radians(lng2 - lng1)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS * c


def calculate_search_radius(bounds: Tuple[float, float, float, float]) -> float:
    """Search radius in meters for a rectangle: the distance from its centre to the farthest corner.

    Args:
        bounds: (south, west, north, east) in degrees.

    Returns:
        float: Radius in meters, rounded up to the next centimetre so the disc never
        falls short of a corner through float rounding.
    """
    south, west, north, east = bounds
    center_lat = (south + north) / 2
    center_lng = (west + east) / 2

    corners = [
        (north, east),  # Northeast
        (north, west),  # Northwest
        (south, east),  # Southeast
        (south, west),  # Southwest
    ]
    distance = max(haversine_meters(center_lat, center_lng, lat, lng) for lat, lng in corners)
    return math.ceil(distance * 100) / 100


def make_cell(
        cell_id: str,
        bounds: Tuple[float, float, float, float],
        level: int = 0,
        parent_id: Optional[str] = None,
        ) -> GridCell:
    south, west, north, east = bounds
    return GridCell(
        id=cell_id,
        center=((south + north) / 2, (west + east) / 2),
        radius_meters=calculate_search_radius(bounds),
        level=level,
        parent_id=parent_id,
        bounds=bounds,
    )


def generate_grid(region: Region, mode: str) -> List[GridCell]:
    """Create the root cells covering a region.

    Row 0 lies on the southern edge and column 0 on the western edge. The same region and
    mode always produce the same ids, centres and radii.

    Raises:
        ValidationError: unknown mode or invalid region bounds.
    """
    if mode not in GRID_SHAPES:
        raise ValidationError(f"unknown mode {mode!r}; expected one of {sorted(GRID_SHAPES)}")
    region.validate()

    cols, rows = GRID_SHAPES[mode]
    prefix = ID_PREFIXES[mode]
    lat_step = (region.north - region.south) / rows
    lng_step = (region.east - region.west) / cols

    cells = []
    for r in range(rows):
        south = region.south + r * lat_step
        north = region.north if r == rows - 1 else region.south + (r + 1) * lat_step
        for c in range(cols):
            west = region.west + c * lng_step
            east = region.east if c == cols - 1 else region.west + (c + 1) * lng_step
            cells.append(make_cell(f"{prefix}-{r}-{c}", (south, west, north, east)))

    logger.info("Generated initial grid", extra={
        "operation": "generate_grid",
        "mode": mode,
        "region": region.name,
        "cell_count": len(cells),
        "grid_shape": {"cols": cols, "rows": rows},
        "bounds": {
            "north": region.north,
            "south": region.south,
            "east": region.east,
            "west": region.west,
        },
    })

    return cells
