"""
Data Model for Adaptive Places Sync
--------------------------------

Plain dataclasses shared by the tiling, search, dedupe, storage and progress modules.

Classes:
    Region:               Rectangular bounding box a run covers.
    GridCell:             One search unit (center + radius) and the rectangle it is responsible for.
    ExternalPlace:        A place as returned by the search API, keyed by its external id.
    RawSearchResult:      The outcome of one cell search, before application-side filtering.
    CanonicalShopRecord:  Deduplicated, upsert-ready projection of an ExternalPlace.
    UpsertResult:         Insert/update accounting for one upsert call.
    RunSummary:           Terminal artifact of one run.
    SyncHistoryRow:       Persisted run metadata.

Progress events (StartEvent, SearchStartEvent, SearchCompleteEvent, SubdivisionCreatedEvent,
AbortEvent, CompleteEvent) form a tagged union through their `type` tag.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from .errors import ValidationError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ----------------------------------------------------------------------------------------------------------

@dataclass(frozen=True)
class Region:
    name: str
    north: float
    south: float
    east: float
    west: float

    def validate(self) -> None:
        """Raise ValidationError unless the bounds describe a real, non-empty rectangle."""
        for label, value, limit in (
            ("north", self.north, 90), ("south", self.south, 90),
            ("east", self.east, 180), ("west", self.west, 180),
        ):
            if not isinstance(value, (int, float)) or not -limit <= value <= limit:
                raise ValidationError(f"region {self.name!r}: {label}={value!r} is out of range")
        if self.south >= self.north:
            raise ValidationError(f"region {self.name!r}: south ({self.south}) must be below north ({self.north})")
        if self.west >= self.east:
            raise ValidationError(f"region {self.name!r}: west ({self.west}) must be below east ({self.east})")


@dataclass(frozen=True)
class GridCell:
    id: str
    center: Tuple[float, float]                 # (lat, lng)
    radius_meters: float
    level: int
    parent_id: Optional[str]
    bounds: Tuple[float, float, float, float]   # (south, west, north, east)

    @property
    def lat(self) -> float:
        return self.center[0]

    @property
    def lng(self) -> float:
        return self.center[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lat": self.lat,
            "lng": self.lng,
            "radius_meters": self.radius_meters,
            "level": self.level,
            "parent_id": self.parent_id,
        }


# ----------------------------------------------------------------------------------------------------------

@dataclass(frozen=True)
class ExternalPlace:
    place_id: str
    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    types: Tuple[str, ...] = ()
    rating: Optional[float] = None
    user_rating_count: Optional[int] = None
    business_status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass
class RawSearchResult:
    cell_id: str
    places: List[ExternalPlace]
    raw_count: int
    api_calls_used: int = 1


def map_business_status(business_status: Optional[str]) -> str:
    """Map a Google business status onto the store's status vocabulary."""
    normalized = (business_status or "").upper()
    if normalized == "CLOSED_TEMPORARILY":
        return "temporarily_closed"
    if normalized == "CLOSED_PERMANENTLY":
        return "closed"
    return "active"


@dataclass
class CanonicalShopRecord:
    # Fields compared when merging sightings. Provenance fields are not part of the identity
    # of the data and never count as a change on their own.
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = (
        "name", "address", "latitude", "longitude", "types",
        "rating", "user_rating_count", "business_status", "status",
    )

    place_id: str
    name: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    types: Tuple[str, ...] = ()
    rating: Optional[float] = None
    user_rating_count: Optional[int] = None
    business_status: Optional[str] = None
    status: str = "active"
    source_cell_id: Optional[str] = None
    search_level: Optional[int] = None
    cell_radius: Optional[float] = None

    @classmethod
    def from_place(cls, place: ExternalPlace, cell: Optional[GridCell] = None) -> "CanonicalShopRecord":
        return cls(
            place_id=place.place_id,
            name=place.name,
            address=place.address,
            latitude=place.latitude,
            longitude=place.longitude,
            types=tuple(place.types),
            rating=place.rating,
            user_rating_count=place.user_rating_count,
            business_status=place.business_status,
            status=map_business_status(place.business_status),
            source_cell_id=cell.id if cell else None,
            search_level=cell.level if cell else None,
            cell_radius=cell.radius_meters if cell else None,
        )

    def content(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.CONTENT_FIELDS}


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    inserted_ids: List[str] = field(default_factory=list)
    updated_ids: List[str] = field(default_factory=list)


# ----------------------------------------------------------------------------------------------------------

@dataclass
class RunSummary:
    mode: str
    cells_searched: int = 0
    api_calls: int = 0
    places_found: int = 0
    inserted: int = 0
    updated: int = 0
    subdivisions: int = 0
    failed_cells: List[str] = field(default_factory=list)
    saturated_cells: List[str] = field(default_factory=list)
    dropped: int = 0
    budget_exhausted: bool = False
    aborted: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncHistoryRow:
    id: str
    started_at: str
    status: str = "started"
    finished_at: Optional[str] = None
    inserted_count: Optional[int] = None
    updated_count: Optional[int] = None
    error: Optional[str] = None
    requested_by: Optional[str] = None
    mode: Optional[str] = None
    areas_searched: Optional[int] = None
    places_found: Optional[int] = None
    api_calls: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ----------------------------------------------------------------------------------------------------------
# Progress events

@dataclass(frozen=True)
class ProgressEvent:
    type: ClassVar[str] = "event"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type
        return payload


@dataclass(frozen=True)
class StartEvent(ProgressEvent):
    type: ClassVar[str] = "start"
    mode: str
    estimated_cells: int


@dataclass(frozen=True)
class SearchStartEvent(ProgressEvent):
    type: ClassVar[str] = "search-start"
    cell_id: str
    level: int
    lat: float
    lng: float
    radius: float


@dataclass(frozen=True)
class SearchCompleteEvent(ProgressEvent):
    type: ClassVar[str] = "search-complete"
    cell_id: str
    level: int
    result_count: int
    raw_count: int
    api_calls: int
    subdivided: bool = False
    failed: bool = False


@dataclass(frozen=True)
class SubdivisionCreatedEvent(ProgressEvent):
    type: ClassVar[str] = "subdivision-created"
    parent_id: str
    child_ids: Tuple[str, ...]


@dataclass(frozen=True)
class AbortEvent(ProgressEvent):
    type: ClassVar[str] = "abort"
    reason: str


@dataclass(frozen=True)
class CompleteEvent(ProgressEvent):
    type: ClassVar[str] = "complete"
    cells_searched: int
    api_calls: int
    places_found: int
    inserted: int = 0
    updated: int = 0
    subdivisions: int = 0
    budget_exhausted: bool = False
