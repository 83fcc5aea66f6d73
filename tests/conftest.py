import os
import threading

# Keep test runs off the filesystem log handler and away from the real API key.
os.environ["LOG_TO_FILE"] = "0"
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("GOOGLE_PLACES_API_KEY", None)

import pytest

from adaptive_sync.core.controller import RunController
from adaptive_sync.core.filters import keep_all
from adaptive_sync.core.progress import ProgressBus
from adaptive_sync.core.rate_limit import RateLimiter
from adaptive_sync.models import ExternalPlace, RawSearchResult
from adaptive_sync.spatial.subdivision import SubdivisionPlanner
from adaptive_sync.storage.history import SqliteSyncHistory
from adaptive_sync.storage.shops import CsvShopStore


def make_places(prefix, count, business_status="OPERATIONAL"):
    return [
        ExternalPlace(
            place_id=f"{prefix}-{i}",
            name=f"Cafe {prefix} {i}",
            latitude=29.76,
            longitude=-95.37,
            address=f"{i} Main St",
            types=("cafe",),
            rating=4.5,
            user_rating_count=10 + i,
            business_status=business_status,
        )
        for i in range(count)
    ]


class FakeSearchClient:
    """
    Stands in for PlaceSearchClient.

    `responses` maps a cell id to a list of places, an exception to raise, or a list of those
    consumed one per call. Unknown cells return no places.
    """

    def __init__(self, responses=None, on_search=None):
        self.responses = dict(responses or {})
        self.on_search = on_search
        self.calls = []
        self._lock = threading.Lock()

    def search(self, cell):
        with self._lock:
            self.calls.append(cell.id)
        if self.on_search is not None:
            self.on_search(cell)

        response = self.responses.get(cell.id, [])
        if isinstance(response, list) and response and not isinstance(response[0], ExternalPlace):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, BaseException):
            raise response
        places = list(response)
        return RawSearchResult(cell_id=cell.id, places=places, raw_count=len(places))


@pytest.fixture
def store(tmp_path):
    return CsvShopStore(tmp_path / "shops.csv")


@pytest.fixture
def history(tmp_path):
    return SqliteSyncHistory(tmp_path / "history.sqlite3")


@pytest.fixture
def bus():
    return ProgressBus()


@pytest.fixture
def recorded(bus):
    events = []
    bus.subscribe(events.append)
    return events


@pytest.fixture
def make_controller(store, history, bus):
    def factory(client, **overrides):
        options = dict(
            search_client=client,
            sink=store,
            history=history,
            bus=bus,
            rate_limiter=RateLimiter(0),
            planner=SubdivisionPlanner(result_cap=20, max_depth=4),
            place_filter=keep_all,
            backoff_base=0.01,
            backoff_max=0.02,
        )
        options.update(overrides)
        return RunController(**options)
    return factory
