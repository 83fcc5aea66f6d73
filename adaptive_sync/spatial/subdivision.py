"""
Subdivision Planner
--------------------------------

Decides when a searched cell was clipped by the API's per-query cap and splits it into four
quadrant children (SW, SE, NW, NE). Children partition the parent's rectangle exactly, and
each child's disc reaches its own corners, so subdivision never opens a coverage gap.

Only the raw, pre-filter result count may drive the decision.
"""

from typing import List, Optional

from shapely.geometry import box
from shapely.ops import unary_union

from ..config import PLACES_RESULT_CAP, MAX_SUBDIVISION_DEPTH
from ..models import GridCell
from .tiles import make_cell

QUADRANTS = ("SW", "SE", "NW", "NE")


def cell_polygon(cell: GridCell):
    """Shapely rectangle (x=lng, y=lat) for the area a cell is responsible for."""
    south, west, north, east = cell.bounds
    return box(west, south, east, north)


class SubdivisionPlanner:

    def __init__(self, result_cap: int = PLACES_RESULT_CAP, max_depth: int = MAX_SUBDIVISION_DEPTH):
        if result_cap < 1:
            raise ValueError("result_cap must be positive")
        self.result_cap = result_cap
        self.max_depth = max_depth

    def is_saturated(self, raw_count: int) -> bool:
        return raw_count >= self.result_cap

    def should_subdivide(self, cell: GridCell, raw_count: int, current_depth: int, max_depth: Optional[int] = None) -> bool:
        if max_depth is None:
            max_depth = self.max_depth
        return self.is_saturated(raw_count) and current_depth < max_depth

    def subdivide(self, cell: GridCell) -> List[GridCell]:
        south, west, north, east = cell.bounds
        mid_lat = (south + north) / 2
        mid_lng = (west + east) / 2

        quadrant_bounds = {
            "SW": (south, west, mid_lat, mid_lng),
            "SE": (south, mid_lng, mid_lat, east),
            "NW": (mid_lat, west, north, mid_lng),
            "NE": (mid_lat, mid_lng, north, east),
        }
        children = [
            make_cell(f"{cell.id}-sub-{q}", quadrant_bounds[q], level=cell.level + 1, parent_id=cell.id)
            for q in QUADRANTS
        ]

        if not covers_parent(cell, children):
            raise ValueError(f"subdivision of {cell.id} leaves a coverage gap")
        return children


def covers_parent(parent: GridCell, children: List[GridCell]) -> bool:
    union = unary_union([cell_polygon(child) for child in children])
    return union.buffer(1e-12).covers(cell_polygon(parent))
