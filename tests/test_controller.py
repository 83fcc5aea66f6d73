import threading
from dataclasses import replace

import pytest

from adaptive_sync.core.controller import RunState
from adaptive_sync.core.filters import ChainFilter
from adaptive_sync.errors import (
    AlreadyRunningError,
    FatalSearchError,
    NoRunInProgressError,
    TransientSearchError,
    UpsertError,
    ValidationError,
)
from adaptive_sync.models import CanonicalShopRecord, SearchCompleteEvent, UpsertResult
from adaptive_sync.spatial.subdivision import SubdivisionPlanner
from adaptive_sync.storage.history import SyncHistoryRecorder
from adaptive_sync.storage.shops import UpsertSink

from conftest import FakeSearchClient, make_places

TEST_CELLS = ["primary-0-0", "primary-0-1", "primary-1-0", "primary-1-1", "primary-2-0", "primary-2-1"]


def types_of(events):
    return [e.type for e in events]


def test_completed_run_searches_every_root_cell(make_controller, recorded, history):
    client = FakeSearchClient({"primary-0-0": make_places("a", 3)})
    controller = make_controller(client)

    summary = controller.run("test", requested_by="tester")

    assert sorted(client.calls) == sorted(TEST_CELLS)
    assert summary.cells_searched == 6
    assert summary.api_calls == 6
    assert summary.places_found == 3
    assert summary.inserted == 3
    assert not summary.aborted
    assert not summary.budget_exhausted

    kinds = types_of(recorded)
    assert kinds[0] == "start"
    assert kinds[-1] == "complete"
    assert kinds.count("search-start") == kinds.count("search-complete") == 6
    assert "abort" not in kinds

    row = history.list_recent(1)[0]
    assert row.status == "success"
    assert row.requested_by == "tester"
    assert row.inserted_count == 3
    assert controller.state is RunState.IDLE
    assert controller.last_outcome is RunState.COMPLETED


def test_saturated_cells_subdivide_until_max_depth(make_controller, recorded):
    client = FakeSearchClient({
        "primary-0-0": make_places("root", 20),
        "primary-0-0-sub-SW": make_places("child", 20),
        "primary-0-0-sub-SW-sub-SW": make_places("grandchild", 20),
    })
    controller = make_controller(client, planner=SubdivisionPlanner(result_cap=20, max_depth=2))

    summary = controller.run("test")

    subdivisions = [e for e in recorded if e.type == "subdivision-created"]
    assert [e.parent_id for e in subdivisions] == ["primary-0-0", "primary-0-0-sub-SW"]
    assert subdivisions[0].child_ids == (
        "primary-0-0-sub-SW", "primary-0-0-sub-SE", "primary-0-0-sub-NW", "primary-0-0-sub-NE",
    )
    assert summary.subdivisions == 2
    assert summary.cells_searched == 6 + 4 + 4
    assert summary.saturated_cells == ["primary-0-0-sub-SW-sub-SW"]
    # Places from subdivided cells are kept too
    assert summary.places_found == 60
    assert all(e.level <= 2 for e in recorded if e.type == "search-start")

    completes = {e.cell_id: e for e in recorded if isinstance(e, SearchCompleteEvent)}
    assert completes["primary-0-0"].subdivided
    assert not completes["primary-0-0-sub-SW-sub-SW"].subdivided


def test_children_are_searched_after_the_root_grid(make_controller):
    client = FakeSearchClient({"primary-0-0": make_places("root", 20)})
    make_controller(client).run("test")
    assert client.calls[:6] == TEST_CELLS
    assert all("-sub-" in cell_id for cell_id in client.calls[6:])


def test_filtered_places_do_not_hide_a_full_cell(make_controller):
    places = [replace(p, name="Starbucks") for p in make_places("chain", 20)]
    client = FakeSearchClient({"primary-0-0": places})

    summary = make_controller(client, place_filter=ChainFilter(["starbucks"])).run("test", max_api_calls=10)

    assert summary.subdivisions == 1
    assert summary.places_found == 0


def test_second_start_is_rejected_while_running(make_controller, history):
    entered = threading.Event()
    gate = threading.Event()

    def block(cell):
        entered.set()
        gate.wait(5)

    controller = make_controller(FakeSearchClient(on_search=block))
    started = controller.start("test")
    assert started["started"] is True
    assert started["mode"] == "test"
    assert entered.wait(5)

    with pytest.raises(AlreadyRunningError):
        controller.start("production")
    assert controller.status()["running"] is True
    assert controller.status()["mode"] == "test"

    assert controller.abort("user request") == {"aborted": True}
    summary = controller.join(5)
    gate.set()

    assert summary is not None
    assert summary.aborted
    assert controller.state is RunState.IDLE
    assert controller.last_outcome is RunState.ABORTED
    row = history.list_recent(1)[0]
    assert row.status == "failed"
    assert row.error == "aborted: user request"


def test_abort_without_a_run(make_controller):
    controller = make_controller(FakeSearchClient())
    with pytest.raises(NoRunInProgressError):
        controller.abort()


def test_abort_mid_run_stops_new_searches(make_controller, bus, recorded, history, store):
    client = FakeSearchClient({
        "primary-0-0": make_places("a", 2),
        "primary-0-1": make_places("b", 1),
        "primary-1-0": make_places("c", 1),
    })
    controller = make_controller(client)

    def abort_after_second_cell(event):
        if isinstance(event, SearchCompleteEvent) and event.cell_id == "primary-0-1":
            controller.abort("enough")

    bus.subscribe(abort_after_second_cell)
    summary = controller.run("test")

    assert summary.aborted
    assert summary.cells_searched == 2
    kinds = types_of(recorded)
    assert kinds[-1] == "abort"
    assert "complete" not in kinds
    last_complete = max(i for i, e in enumerate(recorded) if e.type == "search-complete")
    assert "search-start" not in kinds[last_complete:]
    assert recorded[-1].reason == "enough"
    assert history.list_recent(1)[0].error == "aborted: enough"
    # Cells finished before the abort stay in the store
    assert sorted(store.ids()) == ["a-0", "a-1", "b-0"]
    assert summary.inserted == 3


def test_fatal_error_aborts_without_complete(make_controller, recorded, history):
    client = FakeSearchClient({"primary-0-1": FatalSearchError("Places API HTTP 403: denied", status_code=403)})
    controller = make_controller(client)

    with pytest.raises(FatalSearchError):
        controller.run("test")

    kinds = types_of(recorded)
    assert "complete" not in kinds
    assert kinds[-1] == "abort"
    assert client.calls == ["primary-0-0", "primary-0-1"]

    row = history.list_recent(1)[0]
    assert row.status == "failed"
    assert "403" in row.error
    assert controller.state is RunState.IDLE
    assert controller.last_outcome is RunState.FAILED
    assert controller.status()["last_error"] == row.error


def test_fatal_error_in_background_run_is_reported(make_controller):
    client = FakeSearchClient({"primary-0-0": FatalSearchError("bad key", status_code=401)})
    controller = make_controller(client)
    controller.start("test")
    summary = controller.join(5)
    assert summary is not None
    status = controller.status()
    assert status["running"] is False
    assert status["last_outcome"] == "failed"
    assert status["last_error"] == "bad key"


def test_transient_failure_is_retried(make_controller):
    client = FakeSearchClient({
        "primary-0-0": [TransientSearchError("HTTP 503", status_code=503), make_places("a", 2)],
    })
    summary = make_controller(client).run("test")

    assert client.calls.count("primary-0-0") == 2
    assert summary.api_calls == 7
    assert summary.failed_cells == []
    assert summary.inserted == 2


def test_persistent_transient_failure_skips_the_cell(make_controller, recorded):
    client = FakeSearchClient({"primary-0-0": TransientSearchError("timeout")})
    summary = make_controller(client, max_attempts=3).run("test")

    assert client.calls.count("primary-0-0") == 3
    assert summary.failed_cells == ["primary-0-0"]
    assert summary.cells_searched == 6
    failed = [e for e in recorded if isinstance(e, SearchCompleteEvent) and e.failed]
    assert [e.cell_id for e in failed] == ["primary-0-0"]
    assert recorded[-1].type == "complete"


def test_budget_stops_picking_new_cells(make_controller, recorded, history):
    client = FakeSearchClient()
    summary = make_controller(client).run("test", max_api_calls=3)

    assert len(client.calls) == 3
    assert summary.api_calls == 3
    assert summary.budget_exhausted
    assert recorded[-1].type == "complete"
    assert recorded[-1].budget_exhausted
    assert history.list_recent(1)[0].status == "success"


def test_inserted_plus_updated_counts_each_place_once(make_controller, store):
    places = make_places("a", 8)
    store.upsert_batch([CanonicalShopRecord.from_place(p) for p in places[:2]])

    client = FakeSearchClient({
        "primary-0-0": places[:5],
        "primary-0-1": [replace(places[3], rating=3.1)] + places[4:],
    })
    summary = make_controller(client).run("test")

    assert summary.updated == 2
    assert summary.inserted == 6
    assert summary.inserted + summary.updated == summary.places_found == 8
    assert store.count() == 8
    assert store.get("a-3")["google_rating"] == "3.1"


def test_upserts_are_chunked(make_controller, store):
    calls = []

    class CountingSink(UpsertSink):
        def upsert_batch(self, records):
            calls.append(len(records))
            return store.upsert_batch(records)

    client = FakeSearchClient({"primary-0-0": make_places("a", 12)})
    make_controller(client, sink=CountingSink(), batch_size=5).run("test")
    assert calls == [5, 5, 2]


def test_failed_batch_is_dropped_and_forgotten(make_controller):
    class FlakySink(UpsertSink):
        def __init__(self):
            self.failures = 2

        def upsert_batch(self, records):
            if self.failures:
                self.failures -= 1
                raise UpsertError("store offline")
            return UpsertResult(inserted=len(records), inserted_ids=[r.place_id for r in records])

    client = FakeSearchClient({
        "primary-0-0": make_places("a", 2),
        "primary-0-1": make_places("a", 1),
    })
    summary = make_controller(client, sink=FlakySink()).run("test")

    assert summary.dropped == 2
    assert summary.inserted == 1
    assert summary.places_found == 1


def test_stale_shops_marked_after_full_production_run(make_controller, store):
    store.upsert_batch([CanonicalShopRecord.from_place(make_places("gone", 1)[0])])
    client = FakeSearchClient()

    summary = make_controller(client, mark_stale=True).run("production", max_api_calls=100)

    assert summary.cells_searched == 72
    assert store.get("gone-0")["status"] == "temporarily_closed"


def test_failed_refresh_keeps_a_place_stored_earlier_in_the_run(make_controller, store):
    class FailsAfterFirstBatch(UpsertSink):
        def __init__(self):
            self.calls = 0

        def upsert_batch(self, records):
            self.calls += 1
            if self.calls in (2, 3):
                raise UpsertError("store offline")
            return store.upsert_batch(records)

    place = make_places("a", 1)[0]
    client = FakeSearchClient({
        "primary-0-0": [place],
        "primary-0-1": [replace(place, rating=1.0)],
    })
    summary = make_controller(client, sink=FailsAfterFirstBatch()).run("test")

    assert summary.dropped == 0
    assert summary.inserted == 1
    assert summary.places_found == 1
    assert summary.inserted + summary.updated == summary.places_found
    assert store.get("a-0")["google_rating"] == "4.5"


def test_refresh_after_a_failed_refresh_is_upserted_again(make_controller, store):
    class FailsSecondBatch(UpsertSink):
        def __init__(self):
            self.calls = 0

        def upsert_batch(self, records):
            self.calls += 1
            if self.calls in (2, 3):
                raise UpsertError("store offline")
            return store.upsert_batch(records)

    place = make_places("a", 1)[0]
    client = FakeSearchClient({
        "primary-0-0": [place],
        "primary-0-1": [replace(place, rating=1.0)],
        "primary-1-0": [replace(place, rating=1.0)],
    })
    summary = make_controller(client, sink=FailsSecondBatch()).run("test")

    assert summary.inserted == 1
    assert summary.updated == 0
    assert summary.places_found == 1
    assert store.get("a-0")["google_rating"] == "1.0"


def test_dropped_batch_skips_stale_marking(make_controller, store):
    store.upsert_batch([CanonicalShopRecord.from_place(make_places("kept", 1)[0])])

    class OfflineSink(UpsertSink):
        def upsert_batch(self, records):
            raise UpsertError("store offline")

        def mark_not_seen_since(self, timestamp):
            return store.mark_not_seen_since(timestamp)

    client = FakeSearchClient({"prod-0-0": make_places("kept", 1)})
    summary = make_controller(client, sink=OfflineSink(), mark_stale=True).run("production", max_api_calls=100)

    assert summary.cells_searched == 72
    assert summary.dropped == 1
    assert store.get("kept-0")["status"] == "active"


class BrokenHistory(SyncHistoryRecorder):
    def __init__(self, fail_on):
        self.fail_on = fail_on
        self.finished = []

    def start_run(self, mode, requested_by=None, started_at=None):
        if self.fail_on == "start":
            raise RuntimeError("history database locked")
        return "row-1"

    def finish_run(self, run_id, status, **fields):
        if self.fail_on == "finish":
            raise RuntimeError("history database locked")
        self.finished.append((run_id, status))
        return True

    def record_run(self, metadata):
        return None

    def list_recent(self, limit=10):
        return []

    def get(self, run_id):
        return None


@pytest.mark.parametrize("fail_on", ["start", "finish"])
def test_history_failures_do_not_fail_the_run(make_controller, recorded, store, fail_on):
    client = FakeSearchClient({"primary-0-0": make_places("a", 2)})
    controller = make_controller(client, history=BrokenHistory(fail_on))

    summary = controller.run("test")

    assert summary.inserted == 2
    assert store.count() == 2
    assert types_of(recorded)[-1] == "complete"
    assert "abort" not in types_of(recorded)
    assert controller.last_outcome is RunState.COMPLETED
    assert controller.state is RunState.IDLE


@pytest.mark.parametrize("mode, budget", [
    ("staging", None),
    ("test", 0),
    ("test", 5000),
    ("test", "10"),
    ("test", True),
])
def test_invalid_requests_are_rejected_before_starting(make_controller, mode, budget):
    client = FakeSearchClient()
    controller = make_controller(client)
    with pytest.raises(ValidationError):
        controller.start(mode, max_api_calls=budget)
    assert controller.state is RunState.IDLE
    assert client.calls == []


def test_status_after_completed_background_run(make_controller):
    controller = make_controller(FakeSearchClient({"primary-1-1": make_places("a", 4)}))
    controller.start("test")
    summary = controller.join(5)

    assert summary.places_found == 4
    status = controller.status()
    assert status["running"] is False
    assert status["mode"] is None
    assert status["last_outcome"] == "completed"
    assert status["snapshot"]["latest_summary"]["completed"] is True
    assert status["snapshot"]["latest_summary"]["places_found"] == 4


def test_controller_can_run_again_after_finishing(make_controller):
    controller = make_controller(FakeSearchClient())
    controller.run("test")
    summary = controller.run("test")
    assert summary.cells_searched == 6
