from .tiles import generate_grid, make_cell, calculate_search_radius, haversine_meters
from .subdivision import SubdivisionPlanner, cell_polygon, covers_parent

__all__ = [
    "generate_grid",
    "make_cell",
    "calculate_search_radius",
    "haversine_meters",
    "SubdivisionPlanner",
    "cell_polygon",
    "covers_parent",
]
