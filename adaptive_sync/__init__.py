"""
adaptive_sync
~~~~~~~~~~~~~

Adaptive, cap-driven Places API sync for coffee shops.

A run tiles a region into a fixed grid, searches each cell once, and splits any cell whose
search came back full into four quadrants until the results fit or the depth limit is reached.
Places are deduplicated across cells and upserted into the shop store.
"""

__version__ = "0.1.0"

# -------------------------------------------------------------------
# Package-level logger (this lives in utils/logger.py, not to be
# confused with the stdlib `logging` package)
# -------------------------------------------------------------------
from .utils.logger       import logger

# -------------------------------------------------------------------
# Errors & data model
# -------------------------------------------------------------------
from .errors             import (
    SyncError,
    ValidationError,
    AlreadyRunningError,
    NoRunInProgressError,
    SearchError,
    TransientSearchError,
    FatalSearchError,
    UpsertError,
)
from .models             import Region, GridCell, ExternalPlace, RawSearchResult, CanonicalShopRecord, RunSummary

# -------------------------------------------------------------------
# Spatial tiling
# -------------------------------------------------------------------
from .spatial.tiles      import generate_grid, calculate_search_radius
from .spatial.subdivision import SubdivisionPlanner

# -------------------------------------------------------------------
# Run engine
# -------------------------------------------------------------------
from .core.places        import PlaceSearchClient
from .core.progress      import ProgressBus
from .core.controller    import RunController, RunState
from .core.admin         import SyncAdmin
from .core.main          import build_controller

# -------------------------------------------------------------------
# Storage
# -------------------------------------------------------------------
from .storage.shops      import CsvShopStore
from .storage.history    import SqliteSyncHistory

# -------------------------------------------------------------------
# Public API
# -------------------------------------------------------------------
__all__ = [
    # logging
    "logger",
    # errors
    "SyncError",
    "ValidationError",
    "AlreadyRunningError",
    "NoRunInProgressError",
    "SearchError",
    "TransientSearchError",
    "FatalSearchError",
    "UpsertError",
    # model
    "Region",
    "GridCell",
    "ExternalPlace",
    "RawSearchResult",
    "CanonicalShopRecord",
    "RunSummary",
    # spatial
    "generate_grid",
    "calculate_search_radius",
    "SubdivisionPlanner",
    # engine
    "PlaceSearchClient",
    "ProgressBus",
    "RunController",
    "RunState",
    "SyncAdmin",
    "build_controller",
    # storage
    "CsvShopStore",
    "SqliteSyncHistory",
]
