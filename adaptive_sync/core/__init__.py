from .cancellation import CancellationToken
from .rate_limit import RateLimiter
from .places import PlaceSearchClient, parse_place
from .filters import ChainFilter, keep_all
from .dedupe import Deduplicator, SeenSet, MergeStats
from .progress import ProgressBus
from .controller import RunController, RunState
from .admin import SyncAdmin

__all__ = [
    "CancellationToken",
    "RateLimiter",
    "PlaceSearchClient",
    "parse_place",
    "ChainFilter",
    "keep_all",
    "Deduplicator",
    "SeenSet",
    "MergeStats",
    "ProgressBus",
    "RunController",
    "RunState",
    "SyncAdmin",
]
