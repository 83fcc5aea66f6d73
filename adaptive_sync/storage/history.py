"""
Sync History Module
------------------------------------------------------------------------------------
Records run metadata independently of the live run.

Lifecycle of a row: created with status 'started' before the run begins, then finished exactly
once with 'success' or 'failed'. A finished row is never modified again.

Every write is best-effort: a failure is logged and reported through the return value, and
never fails or rolls back an otherwise successful sync.

Classes:
    SyncHistoryRecorder: the contract used by the run controller
    SqliteSyncHistory:   SQLite-backed implementation (one connection per operation, so the
                         control thread and the run thread can both use it)
"""

import sqlite3
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from ..errors import HistoryError
from ..models import SyncHistoryRow, utc_now_iso
from ..utils.logger import logger

STATUSES = ("started", "success", "failed")
MAX_HISTORY_LIMIT = 100

# record_run also accepts the camelCase keys web callers send
METADATA_ALIASES = {
    "areasSearched": "areas_searched",
    "placesFound": "places_found",
    "apiCalls": "api_calls",
    "startAt": "start_at",
    "endAt": "end_at",
    "requestedBy": "requested_by",
}


class SyncHistoryRecorder(ABC):

    @abstractmethod
    def start_run(self, mode: str, requested_by: Optional[str] = None, started_at: Optional[str] = None) -> Optional[str]:
        """Create a 'started' row. Returns its id, or None if it could not be written."""

    @abstractmethod
    def finish_run(
            self,
            run_id: str,
            status: str,
            inserted_count: int = 0,
            updated_count: int = 0,
            error: Optional[str] = None,
            areas_searched: Optional[int] = None,
            places_found: Optional[int] = None,
            api_calls: Optional[int] = None,
            finished_at: Optional[str] = None,
            ) -> bool:
        """Finish a 'started' row once. Returns False if nothing was updated."""

    @abstractmethod
    def record_run(self, metadata: Dict[str, Any]) -> Optional[SyncHistoryRow]:
        """Insert an already finished successful run in one step."""

    @abstractmethod
    def list_recent(self, limit: int = 10) -> List[SyncHistoryRow]:
        """Most recent rows first. Raises HistoryError if the store cannot be read."""

    @abstractmethod
    def get(self, run_id: str) -> Optional[SyncHistoryRow]:
        ...

# ----------------------------------------------------------------------------------------------------------

class SqliteSyncHistory(SyncHistoryRecorder):

    def __init__(self, path: Union[str, Path]):
        self.path = str(path)
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._create_tables()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _create_tables(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_history (
                    id TEXT PRIMARY KEY,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    status TEXT NOT NULL DEFAULT 'started'
                        CHECK (status IN ('started', 'success', 'failed')),
                    inserted_count INTEGER,
                    updated_count INTEGER,
                    error TEXT,
                    requested_by TEXT,
                    mode TEXT,
                    areas_searched INTEGER,
                    places_found INTEGER,
                    api_calls INTEGER
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sync_history_started_at ON sync_history (started_at)"
            )

    @staticmethod
    def _row(row: sqlite3.Row) -> SyncHistoryRow:
        return SyncHistoryRow(**{key: row[key] for key in row.keys()})

    # ------------------------------------------------------------------------------------------------------

    def start_run(self, mode: str, requested_by: Optional[str] = None, started_at: Optional[str] = None) -> Optional[str]:
        run_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO sync_history (id, started_at, status, requested_by, mode) VALUES (?, ?, 'started', ?, ?)",
                    (run_id, started_at or utc_now_iso(), requested_by, mode),
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to record sync start: {e}", extra={
                "operation": "sync_history",
                "mode": mode,
                "error": str(e),
            })
            return None

        logger.info("Recorded sync start", extra={
            "operation": "sync_history",
            "history_id": run_id,
            "mode": mode,
        })
        return run_id

    def finish_run(
            self,
            run_id: str,
            status: str,
            inserted_count: int = 0,
            updated_count: int = 0,
            error: Optional[str] = None,
            areas_searched: Optional[int] = None,
            places_found: Optional[int] = None,
            api_calls: Optional[int] = None,
            finished_at: Optional[str] = None,
            ) -> bool:
        if status not in STATUSES[1:]:
            raise ValueError(f"invalid terminal status {status!r}")
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE sync_history
                       SET status = ?, finished_at = ?, inserted_count = ?, updated_count = ?,
                           error = ?, areas_searched = ?, places_found = ?, api_calls = ?
                     WHERE id = ? AND status = 'started'
                    """,
                    (status, finished_at or utc_now_iso(), inserted_count, updated_count,
                     error, areas_searched, places_found, api_calls, run_id),
                )
                updated = cursor.rowcount == 1
        except sqlite3.Error as e:
            logger.error(f"Failed to record sync finish: {e}", extra={
                "operation": "sync_history",
                "history_id": run_id,
                "error": str(e),
            })
            return False

        if not updated:
            logger.warning("Sync history row missing or already finished", extra={
                "operation": "sync_history",
                "history_id": run_id,
            })
        return updated

    def record_run(self, metadata: Dict[str, Any]) -> Optional[SyncHistoryRow]:
        metadata = {METADATA_ALIASES.get(key, key): value for key, value in metadata.items()}
        run_id = self.start_run(
            mode=metadata.get("mode"),
            requested_by=metadata.get("requested_by"),
            started_at=metadata.get("start_at"),
        )
        if run_id is None:
            return None
        self.finish_run(
            run_id,
            "success",
            inserted_count=metadata.get("inserted", metadata.get("places_found", 0)),
            updated_count=metadata.get("updated", 0),
            areas_searched=metadata.get("areas_searched"),
            places_found=metadata.get("places_found"),
            api_calls=metadata.get("api_calls"),
            finished_at=metadata.get("end_at"),
        )
        return self.get(run_id)

    def list_recent(self, limit: int = 10) -> List[SyncHistoryRow]:
        limit = max(1, min(MAX_HISTORY_LIMIT, int(limit)))
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM sync_history ORDER BY started_at DESC LIMIT ?", (limit,)
                ).fetchall()
        except sqlite3.Error as e:
            raise HistoryError(f"could not read sync history: {e}") from e
        return [self._row(r) for r in rows]

    def get(self, run_id: str) -> Optional[SyncHistoryRow]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM sync_history WHERE id = ?", (run_id,)).fetchone()
        except sqlite3.Error as e:
            raise HistoryError(f"could not read sync history: {e}") from e
        return self._row(row) if row else None
