"""
Progress Bus
--------------------------------

In-process publish/subscribe channel for run lifecycle events.

- emit(event): stores the event in a bounded replay buffer and synchronously notifies every
  current subscriber before returning.
- subscribe(handler): replays the buffered history to the new handler, then delivers live
  events. Replay and registration happen under the emit lock, so a late subscriber sees every
  event exactly once. Returns an idempotent unsubscribe callable.
- snapshot(): recent events as dicts plus a running summary built from them.
- reset(): clears history and aggregates, keeps subscribers.

Handlers run on the emitting thread and must not block. Exceptions raised by a handler are
logged and never reach the run; handlers slower than `slow_handler_seconds` are logged.
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Dict, List

from ..config import PROGRESS_BUFFER_SIZE, PROGRESS_SLOW_HANDLER_SECONDS
from ..models import (
    AbortEvent,
    CompleteEvent,
    ProgressEvent,
    SearchCompleteEvent,
    StartEvent,
    SubdivisionCreatedEvent,
)
from ..utils.logger import logger

Handler = Callable[[ProgressEvent], None]


class ProgressBus:

    def __init__(self, max_buffer: int = PROGRESS_BUFFER_SIZE, slow_handler_seconds: float = PROGRESS_SLOW_HANDLER_SECONDS):
        self.max_buffer = max_buffer
        self.slow_handler_seconds = slow_handler_seconds
        self._lock = threading.RLock()
        self._subscribers: List[Handler] = []
        self._buffer: deque = deque(maxlen=max_buffer)
        self._reset_aggregates()

    def _reset_aggregates(self) -> None:
        self._summary: Dict[str, Any] = {
            "mode": None,
            "cells_searched": 0,
            "places_found": 0,
            "api_calls": 0,
            "subdivisions": 0,
            "aborted": False,
            "completed": False,
        }

    # ------------------------------------------------------------------------------------------------------

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        if not callable(handler):
            raise TypeError("progress handler must be callable")

        with self._lock:
            for event in list(self._buffer):
                self._deliver(handler, event, replay=True)
            self._subscribers.append(handler)

        unsubscribed = False

        def unsubscribe() -> None:
            nonlocal unsubscribed
            with self._lock:
                if unsubscribed:
                    return
                unsubscribed = True
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return unsubscribe

    def emit(self, event: ProgressEvent) -> None:
        with self._lock:
            self._update_aggregates(event)
            self._buffer.append(event)
            for handler in list(self._subscribers):
                self._deliver(handler, event)

    def _deliver(self, handler: Handler, event: ProgressEvent, replay: bool = False) -> None:
        started = time.monotonic()
        try:
            handler(event)
        except Exception as e:
            logger.error(f"Progress subscriber raised: {e}", exc_info=True, extra={
                "operation": "progress",
                "event_type": event.type,
                "replay": replay,
            })
        elapsed = time.monotonic() - started
        if elapsed > self.slow_handler_seconds:
            logger.warning("Slow progress subscriber", extra={
                "operation": "progress",
                "event_type": event.type,
                "elapsed_sec": round(elapsed, 3),
            })

    # ------------------------------------------------------------------------------------------------------

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def history(self) -> List[ProgressEvent]:
        with self._lock:
            return list(self._buffer)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "events": [event.to_dict() for event in self._buffer],
                "latest_summary": dict(self._summary),
            }

    def reset(self) -> None:
        with self._lock:
            self._buffer.clear()
            self._reset_aggregates()

    def _update_aggregates(self, event: ProgressEvent) -> None:
        summary = self._summary
        if isinstance(event, StartEvent):
            summary["mode"] = event.mode
            summary["aborted"] = False
            summary["completed"] = False
        elif isinstance(event, SearchCompleteEvent):
            summary["cells_searched"] += 1
            summary["places_found"] += event.result_count
            summary["api_calls"] += event.api_calls
        elif isinstance(event, SubdivisionCreatedEvent):
            summary["subdivisions"] += 1
        elif isinstance(event, AbortEvent):
            summary["aborted"] = True
        elif isinstance(event, CompleteEvent):
            # The run's own totals are authoritative
            summary.update(
                cells_searched=event.cells_searched,
                places_found=event.places_found,
                api_calls=event.api_calls,
                subdivisions=event.subdivisions,
                completed=True,
            )
