"""
Shop Store Module
------------------------------------------------------------------------------------
Persists canonical shop records, keyed by their Google place id.

Key Components:
    - UpsertSink: the contract the run controller writes through
    - CsvShopStore: a pandas-managed CSV table with idempotent upserts

Semantics:
    - "inserted" vs "updated" is decided by whether the place id was already in the store
      before the call
    - date_added is kept for existing rows, last_updated is stamped on every write
    - the whole table is written to a temporary file and atomically swapped in, so an
      interrupted write never leaves a half-written store behind

Functions:
    record_to_row: Flatten a CanonicalShopRecord into store columns
"""

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import pandas as pd

from ..errors import UpsertError
from ..models import CanonicalShopRecord, UpsertResult, utc_now_iso
from ..utils.logger import logger

COLUMNS = [
    "google_place_id",
    "name",
    "address",
    "latitude",
    "longitude",
    "types",
    "google_rating",
    "user_rating_count",
    "business_status",
    "status",
    "source_cell_id",
    "search_level",
    "cell_radius",
    "date_added",
    "last_updated",
]


def record_to_row(record: CanonicalShopRecord, now: str) -> Dict[str, object]:
    return {
        "google_place_id": record.place_id,
        "name": record.name,
        "address": record.address,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "types": json.dumps(list(record.types)) if record.types else None,
        "google_rating": record.rating,
        "user_rating_count": record.user_rating_count,
        "business_status": record.business_status,
        "status": record.status,
        "source_cell_id": record.source_cell_id,
        "search_level": record.search_level,
        "cell_radius": record.cell_radius,
        "date_added": now,
        "last_updated": now,
    }

# ----------------------------------------------------------------------------------------------------------

class UpsertSink(ABC):
    """Idempotent upsert keyed by external place id."""

    @abstractmethod
    def upsert_batch(self, records: Sequence[CanonicalShopRecord]) -> UpsertResult:
        raise NotImplementedError

    def mark_not_seen_since(self, timestamp: str) -> int:
        """Flag active shops not refreshed since `timestamp`. Stores may leave this unsupported."""
        raise NotImplementedError

# ----------------------------------------------------------------------------------------------------------

class CsvShopStore(UpsertSink):

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.tmp_path = self.path.with_name(self.path.name + ".tmp")

    def _load(self) -> pd.DataFrame:
        if not self.path.exists():
            return pd.DataFrame(columns=COLUMNS, dtype=object)
        df = pd.read_csv(self.path, dtype=str, keep_default_na=False)
        for column in COLUMNS:
            if column not in df.columns:
                df[column] = ""
        return df[COLUMNS]

    def _write(self, df: pd.DataFrame) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # Write to a temporary file first to avoid corruption if the process is interrupted
            df.to_csv(self.tmp_path, index=False, columns=COLUMNS, na_rep="")
            os.replace(self.tmp_path, self.path)
        except OSError:
            if self.tmp_path.exists():
                os.remove(self.tmp_path)
            raise

    def upsert_batch(self, records: Sequence[CanonicalShopRecord]) -> UpsertResult:
        result = UpsertResult()
        if not records:
            return result

        # Last record wins when a batch repeats an id
        latest: Dict[str, CanonicalShopRecord] = {}
        for record in records:
            latest[record.place_id] = record

        now = utc_now_iso()
        try:
            df = self._load()
            existing_ids = set(df["google_place_id"])
            added_dates = dict(zip(df["google_place_id"], df["date_added"]))

            rows = []
            for pid, record in latest.items():
                row = record_to_row(record, now)
                if pid in existing_ids:
                    row["date_added"] = added_dates.get(pid) or now
                    result.updated_ids.append(pid)
                else:
                    result.inserted_ids.append(pid)
                rows.append(row)

            incoming = pd.DataFrame(rows, columns=COLUMNS)
            kept = df[~df["google_place_id"].isin(list(latest))]
            combined = pd.concat([kept, incoming], ignore_index=True) if len(kept) else incoming
            self._write(combined)
        except (OSError, ValueError, pd.errors.ParserError) as e:
            logger.error(f"Failed to upsert shops: {e}", extra={
                "operation": "upsert_shops",
                "path": str(self.path),
                "batch_size": len(latest),
                "error": str(e),
            })
            raise UpsertError(f"could not write {self.path}: {e}") from e

        result.inserted = len(result.inserted_ids)
        result.updated = len(result.updated_ids)

        logger.info("Upserted shop batch", extra={
            "operation": "upsert_shops",
            "path": str(self.path),
            "batch_size": len(latest),
            "inserted": result.inserted,
            "updated": result.updated,
        })
        return result

    def mark_not_seen_since(self, timestamp: str) -> int:
        try:
            df = self._load()
            stale = (df["status"] == "active") & (df["last_updated"] < timestamp)
            count = int(stale.sum())
            if count:
                now = utc_now_iso()
                df.loc[stale, "status"] = "temporarily_closed"
                df.loc[stale, "last_updated"] = now
                self._write(df)
        except (OSError, ValueError, pd.errors.ParserError) as e:
            raise UpsertError(f"could not mark stale shops in {self.path}: {e}") from e

        logger.info("Marked shops not seen since sync start", extra={
            "operation": "mark_stale",
            "since": timestamp,
            "marked": count,
        })
        return count

    # ------------------------------------------------------------------------------------------------------

    def all(self) -> pd.DataFrame:
        return self._load()

    def count(self) -> int:
        return len(self._load())

    def get(self, place_id: str) -> Optional[Dict[str, str]]:
        df = self._load()
        match = df[df["google_place_id"] == place_id]
        if match.empty:
            return None
        return match.iloc[0].to_dict()

    def ids(self) -> List[str]:
        return list(self._load()["google_place_id"])
