"""
Deduplication across overlapping cells.

Identity is the external place id. A place sighted again in another cell counts as a duplicate
but is still merged, since a later sighting from a smaller cell may carry fresher data: any
non-empty field that differs from the stored value replaces it, and empty fields never erase
what is stored. Merging an identical sighting changes nothing.
"""

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import CanonicalShopRecord, ExternalPlace, GridCell


@dataclass
class MergeStats:
    new_count: int = 0
    updated_count: int = 0
    duplicate_count: int = 0

    def add(self, other: "MergeStats") -> None:
        self.new_count += other.new_count
        self.updated_count += other.updated_count
        self.duplicate_count += other.duplicate_count


class SeenSet:
    """Canonical records of one run, keyed by place id, plus the cells each place was seen in."""

    def __init__(self):
        self.records: Dict[str, CanonicalShopRecord] = {}
        self.sightings: Dict[str, List[str]] = {}

    def __contains__(self, place_id: str) -> bool:
        return place_id in self.records

    def __len__(self) -> int:
        return len(self.records)

    def get(self, place_id: str) -> Optional[CanonicalShopRecord]:
        return self.records.get(place_id)

    def forget(self, place_ids: Iterable[str]) -> None:
        for pid in place_ids:
            self.records.pop(pid, None)
            self.sightings.pop(pid, None)

    def duplicates_by_cell(self) -> Dict[str, int]:
        """For every cell, how many of its places were also seen in another cell."""
        counts: Dict[str, int] = {}
        for cells in self.sightings.values():
            unique_cells = list(dict.fromkeys(cells))
            if len(unique_cells) > 1:
                for cell_id in unique_cells:
                    counts[cell_id] = counts.get(cell_id, 0) + 1
        return counts


class Deduplicator:

    def merge(
            self,
            seen: SeenSet,
            places: Iterable[ExternalPlace],
            cell: Optional[GridCell] = None,
            ) -> Tuple[List[CanonicalShopRecord], MergeStats]:
        """
        Merge one cell's places into the run's seen-set.

        Returns:
            (new_or_updated, stats): the records that must be (re)upserted, in first-seen order,
            and the new/updated/duplicate counts for this batch.
        """
        stats = MergeStats()
        changed: Dict[str, CanonicalShopRecord] = {}

        for place in places:
            incoming = CanonicalShopRecord.from_place(place, cell)
            pid = incoming.place_id
            if cell is not None:
                seen.sightings.setdefault(pid, []).append(cell.id)

            existing = seen.records.get(pid)
            if existing is None:
                seen.records[pid] = incoming
                changed[pid] = incoming
                stats.new_count += 1
                continue

            stats.duplicate_count += 1
            merged = self._merge_record(existing, incoming)
            if merged is not existing:
                seen.records[pid] = merged
                if pid not in changed:
                    stats.updated_count += 1
                changed[pid] = merged

        return list(changed.values()), stats

    @staticmethod
    def _merge_record(existing: CanonicalShopRecord, incoming: CanonicalShopRecord) -> CanonicalShopRecord:
        updates = {}
        current = existing.content()
        for name, value in incoming.content().items():
            if value is None or value == () or value == "":
                continue
            # status is derived from business_status; a sighting without one says nothing about it
            if name == "status" and incoming.business_status is None:
                continue
            if value != current[name]:
                updates[name] = value
        if not updates:
            return existing
        # Provenance follows the sighting that changed the record
        updates.update(
            source_cell_id=incoming.source_cell_id or existing.source_cell_id,
            search_level=incoming.search_level if incoming.search_level is not None else existing.search_level,
            cell_radius=incoming.cell_radius if incoming.cell_radius is not None else existing.cell_radius,
        )
        return replace(existing, **updates)
