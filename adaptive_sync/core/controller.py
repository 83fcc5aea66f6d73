"""
Run Controller
--------------------------------

Owns the lifecycle of one adaptive sync run: grid generation, the cell work queue, rate
limiting, retries, subdivision, deduplication, upserts, progress events and history rows.

At most one run is active per controller. `start()` runs it on a background thread and returns
immediately; `run()` runs it on the calling thread. `abort()` cancels the run's token, which
wakes every suspension point (rate limiter, retry backoff, in-flight search) at once.

Lifecycle:
    IDLE -> RUNNING -> {COMPLETED, FAILED, ABORTED} -> IDLE

Terminal handling:
    COMPLETED: emits `complete`, history row `success`
    ABORTED:   emits `abort`, history row `failed` with error "aborted: <reason>"
    FAILED:    emits `abort` (never `complete`), history row `failed` with the error message

Usage:
    controller = build_controller()
    controller.start("test", max_api_calls=20)
    controller.join()
"""

import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from ..config import (
    DEFAULT_MAX_API_CALLS,
    MAX_API_CALLS_LIMIT,
    MODES,
    REGIONS,
    SEARCH_MAX_ATTEMPTS,
    SEARCH_BACKOFF_BASE,
    SEARCH_BACKOFF_MAX,
    UPSERT_BATCH_SIZE,
    MARK_STALE_AFTER_SYNC,
)
from ..errors import (
    AlreadyRunningError,
    FatalSearchError,
    NoRunInProgressError,
    RunCancelled,
    TransientSearchError,
    UpsertError,
    ValidationError,
)
from ..models import (
    AbortEvent,
    CanonicalShopRecord,
    CompleteEvent,
    GridCell,
    RawSearchResult,
    Region,
    RunSummary,
    SearchCompleteEvent,
    SearchStartEvent,
    StartEvent,
    SubdivisionCreatedEvent,
    utc_now_iso,
)
from ..spatial.subdivision import SubdivisionPlanner
from ..spatial.tiles import generate_grid
from ..storage.history import SyncHistoryRecorder
from ..storage.shops import UpsertSink
from ..utils.logger import logger
from ..utils.metrics import RunMetrics
from .cancellation import CancellationToken
from .dedupe import Deduplicator, SeenSet
from .filters import ChainFilter
from .progress import ProgressBus
from .rate_limit import RateLimiter


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class _RunContext:
    """Mutable state of the run in flight. Only the run thread touches it after start."""
    run_id: str
    mode: str
    cells: List[GridCell]
    max_api_calls: int
    requested_by: Optional[str]
    token: CancellationToken
    summary: RunSummary
    metrics: RunMetrics
    seen: SeenSet = field(default_factory=SeenSet)
    persisted: Dict[str, CanonicalShopRecord] = field(default_factory=dict)
    history_id: Optional[str] = None
    start_time: float = field(default_factory=time.time)


def _chunks(records: Sequence[CanonicalShopRecord], size: int):
    for i in range(0, len(records), size):
        yield records[i:i + size]


class RunController:

    def __init__(
            self,
            search_client,
            sink: UpsertSink,
            history: Optional[SyncHistoryRecorder] = None,
            bus: Optional[ProgressBus] = None,
            rate_limiter: Optional[RateLimiter] = None,
            planner: Optional[SubdivisionPlanner] = None,
            deduplicator: Optional[Deduplicator] = None,
            place_filter: Optional[Callable] = None,
            regions: Optional[Dict[str, Region]] = None,
            default_max_api_calls: int = DEFAULT_MAX_API_CALLS,
            max_api_calls_limit: int = MAX_API_CALLS_LIMIT,
            max_attempts: int = SEARCH_MAX_ATTEMPTS,
            backoff_base: float = SEARCH_BACKOFF_BASE,
            backoff_max: float = SEARCH_BACKOFF_MAX,
            batch_size: int = UPSERT_BATCH_SIZE,
            mark_stale: bool = MARK_STALE_AFTER_SYNC,
            ) -> None:

        # Collaborators
        self.search_client                                  = search_client                          # Anything with search(cell) -> RawSearchResult
        self.sink:          UpsertSink                      = sink                                   # Shop store
        self.history:       Optional[SyncHistoryRecorder]   = history                                # Run metadata, best-effort
        self.bus:           ProgressBus                     = bus or ProgressBus()                   # Progress events
        self.rate_limiter:  RateLimiter                     = rate_limiter or RateLimiter()          # Shared by every attempt
        self.planner:       SubdivisionPlanner              = planner or SubdivisionPlanner()        # Cap and depth rules
        self.deduplicator:  Deduplicator                    = deduplicator or Deduplicator()         # Cross-cell merge
        self.place_filter:  Callable                        = place_filter or ChainFilter()          # Post-search filter
        self.regions:       Dict[str, Region]               = dict(regions or REGIONS)               # Mode -> region

        # Policy
        self.default_max_api_calls:  int    = default_max_api_calls
        self.max_api_calls_limit:    int    = max_api_calls_limit
        self.max_attempts:           int    = max(1, max_attempts)
        self.backoff_base:           float  = backoff_base
        self.backoff_max:            float  = backoff_max
        self.batch_size:             int    = max(1, batch_size)
        self.mark_stale:             bool   = mark_stale

        # Run slot, guarded by _lock
        self._lock = threading.Lock()
        self._state: RunState = RunState.IDLE
        self._mode: Optional[str] = None
        self._token: Optional[CancellationToken] = None
        self._thread: Optional[threading.Thread] = None

        self.last_outcome: Optional[RunState] = None
        self.last_error: Optional[str] = None
        self.last_summary: Optional[RunSummary] = None

# -------------------------------------------------- Control Surface ---------------------------------------------------------

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def running(self) -> bool:
        return self.state is RunState.RUNNING

    def start(self, mode: str, max_api_calls: Optional[int] = None, requested_by: Optional[str] = None) -> Dict[str, Any]:
        """
        Start a run on a background thread.

        Raises:
            AlreadyRunningError: another run holds the slot
            ValidationError: bad mode, budget or region
        """
        ctx = self._claim(mode, max_api_calls, requested_by)
        thread = threading.Thread(
            target=self._execute,
            args=(ctx, False),
            name=f"adaptive-sync-{ctx.run_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._thread = thread
        try:
            thread.start()
        except RuntimeError:
            self._release(ctx, RunState.FAILED, "could not start run thread")
            raise
        return {"started": True, "mode": mode, "run_id": ctx.run_id}

    def run(self, mode: str, max_api_calls: Optional[int] = None, requested_by: Optional[str] = None) -> RunSummary:
        """Run to completion on the calling thread. Fatal search errors are re-raised after cleanup."""
        ctx = self._claim(mode, max_api_calls, requested_by)
        with self._lock:
            self._thread = None
        self._execute(ctx, True)
        return ctx.summary

    def abort(self, reason: str = "aborted by request") -> Dict[str, bool]:
        with self._lock:
            if self._state is not RunState.RUNNING or self._token is None:
                raise NoRunInProgressError()
            self._token.cancel(reason)
            mode = self._mode

        logger.info("Abort requested", extra={
            "operation": "sync_run",
            "mode": mode,
            "reason": reason,
        })
        return {"aborted": True}

    def status(self) -> Dict[str, Any]:
        # The controller lock must be released before taking the bus lock: a subscriber may call
        # abort() from inside emit, which holds the bus lock.
        with self._lock:
            running = self._state is RunState.RUNNING
            state = self._state.value
            mode = self._mode if running else None
            last_outcome = self.last_outcome.value if self.last_outcome else None
            last_error = self.last_error
        return {
            "snapshot": self.bus.snapshot(),
            "running": running,
            "mode": mode,
            "state": state,
            "last_outcome": last_outcome,
            "last_error": last_error,
        }

    def join(self, timeout: Optional[float] = None) -> Optional[RunSummary]:
        """Wait for a background run. Returns its summary, or None if it is still running."""
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                return None
        return self.last_summary

# -------------------------------------------------- Run Slot ---------------------------------------------------------

    def _validate_budget(self, max_api_calls: Optional[int]) -> int:
        if max_api_calls is None:
            return self.default_max_api_calls
        if isinstance(max_api_calls, bool) or not isinstance(max_api_calls, int):
            raise ValidationError(f"max_api_calls must be an integer, got {max_api_calls!r}")
        if not 1 <= max_api_calls <= self.max_api_calls_limit:
            raise ValidationError(f"max_api_calls must be between 1 and {self.max_api_calls_limit}")
        return max_api_calls

    def _claim(self, mode: str, max_api_calls: Optional[int], requested_by: Optional[str]) -> _RunContext:
        with self._lock:
            if self._state is RunState.RUNNING:
                raise AlreadyRunningError(self._mode)

        if mode not in MODES or mode not in self.regions:
            raise ValidationError(f"unknown mode {mode!r}, expected one of {', '.join(MODES)}")
        budget = self._validate_budget(max_api_calls)
        cells = generate_grid(self.regions[mode], mode)

        run_id = str(uuid.uuid4())
        token = CancellationToken()
        ctx = _RunContext(
            run_id=run_id,
            mode=mode,
            cells=cells,
            max_api_calls=budget,
            requested_by=requested_by,
            token=token,
            summary=RunSummary(mode=mode, started_at=utc_now_iso()),
            metrics=RunMetrics(run_id=run_id),
        )

        with self._lock:
            if self._state is RunState.RUNNING:
                raise AlreadyRunningError(self._mode)
            self._state = RunState.RUNNING
            self._mode = mode
            self._token = token
        return ctx

    def _release(self, ctx: _RunContext, outcome: RunState, error: Optional[str]) -> None:
        with self._lock:
            self.last_outcome = outcome
            self.last_error = error
            self.last_summary = ctx.summary
            self._state = RunState.IDLE
            self._mode = None
            self._token = None

# -------------------------------------------------- Run ---------------------------------------------------------

    def _execute(self, ctx: _RunContext, reraise: bool) -> None:
        summary = ctx.summary
        outcome = RunState.FAILED
        error: Optional[str] = None

        self.bus.reset()
        ctx.history_id = self._history_start(ctx)

        logger.info("Starting sync run", extra={
            "operation": "sync_run",
            "run_id": ctx.run_id,
            "history_id": ctx.history_id,
            "mode": ctx.mode,
            "initial_cells": len(ctx.cells),
            "max_api_calls": ctx.max_api_calls,
            "requested_by": ctx.requested_by,
        })

        try:
            self.bus.emit(StartEvent(mode=ctx.mode, estimated_cells=len(ctx.cells)))
            self._search_all(ctx)
            ctx.token.raise_if_cancelled()
            self._mark_stale(ctx)

            summary.places_found = len(ctx.seen)
            summary.finished_at = utc_now_iso()
            outcome = RunState.COMPLETED
            self.bus.emit(CompleteEvent(
                cells_searched=summary.cells_searched,
                api_calls=summary.api_calls,
                places_found=summary.places_found,
                inserted=summary.inserted,
                updated=summary.updated,
                subdivisions=summary.subdivisions,
                budget_exhausted=summary.budget_exhausted,
            ))
            self._history_finish(ctx, "success")

        except RunCancelled as e:
            outcome = RunState.ABORTED
            error = f"aborted: {e.reason}"
            self._finish_unsuccessful(ctx, e.reason, error, aborted=True)
            logger.warning("Sync run aborted", extra={
                "operation": "sync_run",
                "run_id": ctx.run_id,
                "mode": ctx.mode,
                "reason": e.reason,
            })

        except Exception as e:
            outcome = RunState.FAILED
            error = str(e)
            self._finish_unsuccessful(ctx, error, error, aborted=False)
            logger.error(f"Sync run failed: {e}", exc_info=not isinstance(e, FatalSearchError), extra={
                "operation": "sync_run",
                "run_id": ctx.run_id,
                "mode": ctx.mode,
                "error": error,
            })
            if reraise:
                raise

        finally:
            ctx.metrics.unique_results = len(ctx.seen)
            ctx.metrics.log_metrics()
            self._release(ctx, outcome, error)

            logger.info("Sync run finished", extra={
                "operation": "sync_run",
                "run_id": ctx.run_id,
                "mode": ctx.mode,
                "outcome": outcome.value,
                "summary": summary.to_dict(),
                "duration_sec": round(time.time() - ctx.start_time, 2),
            })

    def _finish_unsuccessful(self, ctx: _RunContext, reason: str, error: str, aborted: bool) -> None:
        summary = ctx.summary
        summary.aborted = aborted
        summary.places_found = len(ctx.seen)
        summary.finished_at = utc_now_iso()
        self.bus.emit(AbortEvent(reason=reason))
        self._history_finish(ctx, "failed", error)

    def _search_all(self, ctx: _RunContext) -> None:
        summary = ctx.summary
        queue: Deque[Tuple[GridCell, int]] = deque((cell, 0) for cell in ctx.cells)

        while queue:
            ctx.token.raise_if_cancelled()
            if summary.api_calls >= ctx.max_api_calls:
                summary.budget_exhausted = True
                logger.warning("API call budget exhausted", extra={
                    "operation": "sync_run",
                    "run_id": ctx.run_id,
                    "api_calls": summary.api_calls,
                    "max_api_calls": ctx.max_api_calls,
                    "cells_remaining": len(queue),
                })
                break

            cell, depth = queue.popleft()
            children = self._process_cell(ctx, cell, depth)
            queue.extend((child, depth + 1) for child in children)

    def _process_cell(self, ctx: _RunContext, cell: GridCell, depth: int) -> List[GridCell]:
        """Search, merge and upsert one cell. Returns the children to enqueue, if any."""
        summary = ctx.summary
        calls_before = summary.api_calls

        result = self._search_with_retry(ctx, cell)
        summary.cells_searched += 1

        if result is None:
            summary.failed_cells.append(cell.id)
            self.bus.emit(SearchCompleteEvent(
                cell_id=cell.id,
                level=cell.level,
                result_count=0,
                raw_count=0,
                api_calls=summary.api_calls - calls_before,
                failed=True,
            ))
            return []

        ctx.metrics.results_returned += result.raw_count
        kept = self.place_filter(result.places)

        # Only the raw count says whether the API clipped this cell
        subdivide = self.planner.should_subdivide(cell, result.raw_count, depth)
        if self.planner.is_saturated(result.raw_count) and not subdivide:
            summary.saturated_cells.append(cell.id)
            logger.warning("Cell saturated at max depth", extra={
                "operation": "sync_run",
                "run_id": ctx.run_id,
                "cell_id": cell.id,
                "cell_level": cell.level,
                "raw_count": result.raw_count,
            })

        changed, stats = self.deduplicator.merge(ctx.seen, kept, cell)
        for batch in _chunks(changed, self.batch_size):
            self._upsert(ctx, batch)

        logger.info("Searched cell", extra={
            "operation": "sync_run",
            "run_id": ctx.run_id,
            "cell_id": cell.id,
            "cell_level": cell.level,
            "raw_count": result.raw_count,
            "kept": len(kept),
            "new": stats.new_count,
            "duplicates": stats.duplicate_count,
            "subdivide": subdivide,
        })

        self.bus.emit(SearchCompleteEvent(
            cell_id=cell.id,
            level=cell.level,
            result_count=len(kept),
            raw_count=result.raw_count,
            api_calls=summary.api_calls - calls_before,
            subdivided=subdivide,
        ))

        if not subdivide:
            return []

        children = self.planner.subdivide(cell)
        summary.subdivisions += 1
        self.bus.emit(SubdivisionCreatedEvent(
            parent_id=cell.id,
            child_ids=tuple(child.id for child in children),
        ))
        return children

    def _count_calls(self, ctx: _RunContext, calls: int) -> None:
        ctx.summary.api_calls += calls
        ctx.metrics.total_requests += calls

    def _search_with_retry(self, ctx: _RunContext, cell: GridCell) -> Optional[RawSearchResult]:
        """
        Search one cell, retrying transient failures with capped exponential backoff.

        Returns:
            The search result, or None once the cell is given up on.

        Raises:
            RunCancelled: the run was aborted at a rate-limit wait, backoff or in-flight call
            FatalSearchError: the failure invalidates the whole run
        """
        token = ctx.token
        for attempt in range(1, self.max_attempts + 1):
            self.rate_limiter.acquire(token)
            if attempt == 1:
                token.raise_if_cancelled()
                self.bus.emit(SearchStartEvent(
                    cell_id=cell.id,
                    level=cell.level,
                    lat=cell.lat,
                    lng=cell.lng,
                    radius=cell.radius_meters,
                ))

            try:
                result = token.run(self.search_client.search, cell)
            except TransientSearchError as e:
                self._count_calls(ctx, e.api_calls)
                ctx.metrics.failed_requests += 1
                logger.warning(f"Transient search failure: {e}", extra={
                    "operation": "sync_run",
                    "run_id": ctx.run_id,
                    "cell_id": cell.id,
                    "attempt": attempt,
                    "max_attempts": self.max_attempts,
                    "status_code": e.status_code,
                })
                if attempt >= self.max_attempts or ctx.summary.api_calls >= ctx.max_api_calls:
                    logger.error("Giving up on cell", extra={
                        "operation": "sync_run",
                        "run_id": ctx.run_id,
                        "cell_id": cell.id,
                        "attempts": attempt,
                    })
                    return None
                delay = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
                if token.wait(delay):
                    raise RunCancelled(token.reason or "cancelled")
                continue
            except FatalSearchError as e:
                self._count_calls(ctx, e.api_calls)
                ctx.metrics.failed_requests += 1
                raise

            self._count_calls(ctx, result.api_calls_used)
            return result
        return None

    def _upsert(self, ctx: _RunContext, records: Sequence[CanonicalShopRecord]) -> None:
        """Upsert one batch, retrying once. A batch that still fails is dropped from the run."""
        summary = ctx.summary
        for attempt in (1, 2):
            try:
                result = self.sink.upsert_batch(records)
                break
            except UpsertError as e:
                logger.error(f"Upsert failed: {e}", extra={
                    "operation": "sync_run",
                    "run_id": ctx.run_id,
                    "batch_size": len(records),
                    "attempt": attempt,
                })
        else:
            # Places stored earlier in this run roll back to their stored version; the rest are forgotten
            dropped_ids = []
            for record in records:
                stored = ctx.persisted.get(record.place_id)
                if stored is None:
                    dropped_ids.append(record.place_id)
                else:
                    ctx.seen.records[record.place_id] = stored
            ctx.seen.forget(dropped_ids)
            summary.dropped += len(dropped_ids)
            logger.error("Dropped upsert batch", extra={
                "operation": "sync_run",
                "run_id": ctx.run_id,
                "dropped": len(dropped_ids),
                "rolled_back": len(records) - len(dropped_ids),
            })
            return

        # A place counts once per run, as whatever its first successful upsert reported
        first_seen = [pid for pid in result.inserted_ids if pid not in ctx.persisted]
        summary.inserted += len(set(first_seen))
        summary.updated += len({pid for pid in result.updated_ids if pid not in ctx.persisted and pid not in first_seen})
        stored_ids = set(result.inserted_ids) | set(result.updated_ids)
        for record in records:
            if record.place_id in stored_ids:
                ctx.persisted[record.place_id] = record

    def _mark_stale(self, ctx: _RunContext) -> None:
        summary = ctx.summary
        if (not self.mark_stale or ctx.mode != "production" or summary.budget_exhausted
                or summary.failed_cells or summary.dropped):
            return
        try:
            marked = self.sink.mark_not_seen_since(summary.started_at)
        except NotImplementedError:
            logger.debug("Sink does not support stale marking", extra={"operation": "mark_stale"})
            return
        except UpsertError as e:
            logger.error(f"Stale marking failed: {e}", extra={
                "operation": "mark_stale",
                "run_id": ctx.run_id,
            })
            return
        logger.info("Marked stale shops", extra={
            "operation": "mark_stale",
            "run_id": ctx.run_id,
            "marked": marked,
        })

# -------------------------------------------------- History ---------------------------------------------------------

    def _history_start(self, ctx: _RunContext) -> Optional[str]:
        if self.history is None:
            return None
        try:
            return self.history.start_run(ctx.mode, requested_by=ctx.requested_by, started_at=ctx.summary.started_at)
        except Exception as e:
            logger.error(f"History start failed: {e}", extra={
                "operation": "sync_history",
                "run_id": ctx.run_id,
            })
            return None

    def _history_finish(self, ctx: _RunContext, status: str, error: Optional[str] = None) -> None:
        if self.history is None or ctx.history_id is None:
            return
        summary = ctx.summary
        try:
            self.history.finish_run(
                ctx.history_id,
                status,
                inserted_count=summary.inserted,
                updated_count=summary.updated,
                error=error,
                areas_searched=summary.cells_searched,
                places_found=summary.places_found,
                api_calls=summary.api_calls,
                finished_at=summary.finished_at,
            )
        except Exception as e:
            logger.error(f"History finish failed: {e}", extra={
                "operation": "sync_history",
                "run_id": ctx.run_id,
                "history_id": ctx.history_id,
            })
