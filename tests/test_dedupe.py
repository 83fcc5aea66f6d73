from dataclasses import replace

from adaptive_sync.config import TEST_REGION
from adaptive_sync.core.dedupe import Deduplicator, SeenSet
from adaptive_sync.spatial.tiles import generate_grid

from conftest import make_places

CELLS = generate_grid(TEST_REGION, "test")


def test_new_places_are_all_changed():
    seen = SeenSet()
    changed, stats = Deduplicator().merge(seen, make_places("a", 3), CELLS[0])
    assert [r.place_id for r in changed] == ["a-0", "a-1", "a-2"]
    assert stats.new_count == 3
    assert stats.duplicate_count == 0
    assert len(seen) == 3
    assert changed[0].source_cell_id == CELLS[0].id
    assert changed[0].status == "active"


def test_identical_sighting_is_idempotent():
    seen = SeenSet()
    dedupe = Deduplicator()
    places = make_places("a", 2)
    dedupe.merge(seen, places, CELLS[0])
    before = dict(seen.records)

    changed, stats = dedupe.merge(seen, places, CELLS[1])
    assert changed == []
    assert stats.duplicate_count == 2
    assert stats.updated_count == 0
    assert seen.records == before


def test_differing_sighting_updates_and_keeps_known_fields():
    seen = SeenSet()
    dedupe = Deduplicator()
    original = make_places("a", 1)[0]
    dedupe.merge(seen, [original], CELLS[0])

    fresher = replace(original, rating=4.9, address=None)
    changed, stats = dedupe.merge(seen, [fresher], CELLS[1])

    assert stats.updated_count == 1
    record = changed[0]
    assert record.rating == 4.9
    assert record.address == original.address
    assert record.source_cell_id == CELLS[1].id


def test_missing_business_status_does_not_reopen_a_closed_shop():
    seen = SeenSet()
    dedupe = Deduplicator()
    closed = make_places("a", 1, business_status="CLOSED_PERMANENTLY")[0]
    dedupe.merge(seen, [closed], CELLS[0])

    changed, _ = dedupe.merge(seen, [replace(closed, business_status=None)], CELLS[1])
    assert changed == []
    assert seen.get("a-0").status == "closed"


def test_repeat_within_one_batch_counts_once():
    seen = SeenSet()
    places = make_places("a", 1) * 2
    changed, stats = Deduplicator().merge(seen, places, CELLS[0])
    assert len(changed) == 1
    assert stats.new_count == 1
    assert stats.duplicate_count == 1


def test_duplicates_by_cell_and_forget():
    seen = SeenSet()
    dedupe = Deduplicator()
    dedupe.merge(seen, make_places("a", 2), CELLS[0])
    dedupe.merge(seen, make_places("a", 1), CELLS[1])

    assert seen.duplicates_by_cell() == {CELLS[0].id: 1, CELLS[1].id: 1}

    seen.forget(["a-0"])
    assert "a-0" not in seen
    assert "a-1" in seen
