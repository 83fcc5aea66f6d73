"""
Google Places Nearby Search Module
--------------------------------

This module wraps the Places API (New) `places:searchNearby` endpoint for one search cell.
searchNearby has no pagination: one request returns at most 20 places, so a response that
comes back full is the signal that a cell was clipped and should be subdivided.

Key Features:
    - One POST per cell with a circle restriction at the cell centre and radius
    - Field mask limited to the fields the shop store keeps
    - Comprehensive logging with a unique search_id for correlation
    - Error classification into transient (retry) and fatal (abort the run) failures

Classes:
    PlaceSearchClient: search(cell) -> RawSearchResult

Functions:
    parse_place: Convert one v1 place payload into an ExternalPlace.

Configuration:
    API_KEY:            Google Places API key (GOOGLE_PLACES_API_KEY)
    PLACE_TYPES:        includedTypes sent with each request (default: cafe)
    PLACES_RESULT_CAP:  maxResultCount sent with each request (default: 20)
    REQUEST_TIMEOUT:    per-request timeout in seconds

Error classification:
    TransientSearchError: timeouts, connection errors, HTTP 429, HTTP 5xx, undecodable bodies
    FatalSearchError:     missing API key, HTTP 400/401/403/404
"""

import time
import uuid
from typing import Any, Dict, List, Optional

import requests

from ..config import (
    API_KEY,
    PLACES_ENDPOINT,
    PLACE_TYPES,
    PLACES_RESULT_CAP,
    REQUEST_TIMEOUT,
    MAX_SEARCH_RADIUS,
)
from ..errors import FatalSearchError, TransientSearchError
from ..models import ExternalPlace, GridCell, RawSearchResult
from ..utils.logger import logger

FIELD_MASK = ",".join([
    "places.id",
    "places.displayName",
    "places.formattedAddress",
    "places.location",
    "places.types",
    "places.businessStatus",
    "places.rating",
    "places.userRatingCount",
])

FATAL_STATUS_CODES = {400, 401, 403, 404}


def _synthesize_place_id(name: Optional[str], lat: Optional[float], lng: Optional[float]) -> str:
    slug = "_".join((name or "unknown").split())
    return f"local:{slug}:{lat if lat is not None else 0}:{lng if lng is not None else 0}"


def parse_place(payload: Dict[str, Any]) -> ExternalPlace:
    """Normalize a v1 place payload (or a legacy-shaped one) into an ExternalPlace."""
    display_name = payload.get("displayName")
    if isinstance(display_name, dict):
        name = display_name.get("text")
    else:
        name = payload.get("name") if isinstance(payload.get("name"), str) else None
        if name and name.startswith("places/"):
            name = None

    location = payload.get("location") or {}
    legacy_location = (payload.get("geometry") or {}).get("location") or {}
    lat = location.get("latitude", location.get("lat", legacy_location.get("lat")))
    lng = location.get("longitude", location.get("lng", legacy_location.get("lng")))

    place_id = payload.get("id") or payload.get("place_id") or payload.get("placeId")
    if not place_id and isinstance(payload.get("name"), str) and payload["name"].startswith("places/"):
        place_id = payload["name"].split("/")[-1]
    if not place_id:
        place_id = _synthesize_place_id(name, lat, lng)

    return ExternalPlace(
        place_id=str(place_id),
        name=name,
        latitude=lat,
        longitude=lng,
        address=payload.get("formattedAddress") or payload.get("formatted_address") or payload.get("vicinity"),
        types=tuple(payload.get("types") or ()),
        rating=payload.get("rating"),
        user_rating_count=payload.get("userRatingCount", payload.get("user_ratings_total")),
        business_status=payload.get("businessStatus") or payload.get("business_status"),
        raw=payload,
    )


class PlaceSearchClient:
    """Search one GridCell against the Places searchNearby endpoint."""

    def __init__(
            self,
            api_key: Optional[str] = API_KEY,
            endpoint: str = PLACES_ENDPOINT,
            place_types: Optional[List[str]] = None,
            result_cap: int = PLACES_RESULT_CAP,
            timeout: float = REQUEST_TIMEOUT,
            session: Optional[requests.Session] = None,
            ) -> None:
        self.api_key = api_key
        self.endpoint = endpoint
        self.place_types = list(place_types) if place_types is not None else list(PLACE_TYPES)
        self.result_cap = result_cap
        self.timeout = timeout
        self.session = session or requests.Session()

    def _build_body(self, cell: GridCell) -> Dict[str, Any]:
        return {
            "locationRestriction": {
                "circle": {
                    "center": {"latitude": cell.lat, "longitude": cell.lng},
                    "radius": min(cell.radius_meters, MAX_SEARCH_RADIUS),
                },
            },
            "includedTypes": self.place_types,
            "maxResultCount": self.result_cap,
        }

    def search(self, cell: GridCell) -> RawSearchResult:
        """
        Run one nearby search for a cell.

        Returns:
            RawSearchResult with every place in the response; `raw_count` is the response size
            before any filtering or in-response deduplication.

        Raises:
            TransientSearchError, FatalSearchError
        """
        search_id = str(uuid.uuid4())[:8]

        if not self.api_key:
            raise FatalSearchError("Missing Google Places API key (GOOGLE_PLACES_API_KEY)", api_calls=0)

        logger.debug("Starting nearby search", extra={
            "operation": "nearby_search",
            "search_id": search_id,
            "cell_id": cell.id,
            "lat": cell.lat,
            "lng": cell.lng,
            "radius": cell.radius_meters,
        })

        start_time = time.time()
        try:
            response = self.session.post(
                self.endpoint,
                json=self._build_body(cell),
                headers={
                    "Content-Type": "application/json",
                    "X-Goog-Api-Key": self.api_key,
                    "X-Goog-FieldMask": FIELD_MASK,
                },
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransientSearchError(f"Places request timed out for {cell.id}: {e}") from e
        except requests.ConnectionError as e:
            raise TransientSearchError(f"Places connection error for {cell.id}: {e}") from e
        except requests.RequestException as e:
            raise TransientSearchError(f"Places request failed for {cell.id}: {e}") from e

        status = response.status_code
        if status != 200:
            detail = response.text[:300]
            logger.warning("Places API returned non-OK status", extra={
                "operation": "nearby_search",
                "search_id": search_id,
                "cell_id": cell.id,
                "status_code": status,
                "error_message": detail,
            })
            if status == 429 or status >= 500:
                raise TransientSearchError(f"Places API HTTP {status}: {detail}", status_code=status)
            if status in FATAL_STATUS_CODES:
                raise FatalSearchError(f"Places API HTTP {status}: {detail}", status_code=status)
            raise TransientSearchError(f"Places API HTTP {status}: {detail}", status_code=status)

        try:
            data = response.json()
        except ValueError as e:
            raise TransientSearchError(f"Places API returned an undecodable body for {cell.id}") from e

        raw_places = data.get("places") or data.get("results") or []
        places = [parse_place(p) for p in raw_places]

        logger.info("Completed nearby search", extra={
            "operation": "nearby_search",
            "search_id": search_id,
            "cell_id": cell.id,
            "cell_level": cell.level,
            "results_count": len(places),
            "duration_sec": round(time.time() - start_time, 2),
            "hit_cap": len(places) >= self.result_cap,
        })

        return RawSearchResult(cell_id=cell.id, places=places, raw_count=len(raw_places), api_calls_used=1)

    def close(self) -> None:
        self.session.close()
