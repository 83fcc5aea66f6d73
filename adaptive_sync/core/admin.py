"""
Admin control surface for the sync engine.

Every operation returns an HTTP-style `(status_code, body)` pair and never lets an exception
escape, so a web route can hand the pair straight back to its framework.

    start(payload)   202 started, 409 already running, 400 invalid request
    abort()          200 aborted, 400 no run in progress
    status()         200 snapshot + running flag + mode
    history(limit)   200 most recent history rows, newest first
"""

from typing import Any, Dict, Optional, Tuple

from ..errors import AlreadyRunningError, HistoryError, NoRunInProgressError, ValidationError
from ..storage.history import MAX_HISTORY_LIMIT, SyncHistoryRecorder
from ..utils.logger import logger
from .controller import RunController

Response = Tuple[int, Dict[str, Any]]


def _error(status: int, message: str) -> Response:
    return status, {"ok": False, "error": message}


class SyncAdmin:

    def __init__(self, controller: RunController, history: Optional[SyncHistoryRecorder] = None):
        self.controller = controller
        self._history = history if history is not None else controller.history

    def start(self, payload: Optional[Dict[str, Any]] = None) -> Response:
        payload = payload or {}
        if not isinstance(payload, dict):
            return _error(400, "request body must be an object")

        mode = payload.get("mode", "test")
        options = payload.get("options") or {}
        if not isinstance(options, dict):
            return _error(400, "options must be an object")
        max_api_calls = options.get("maxApiCalls")
        requested_by = payload.get("requestedBy")

        try:
            started = self.controller.start(mode, max_api_calls=max_api_calls, requested_by=requested_by)
        except AlreadyRunningError:
            return _error(409, "sync already in progress")
        except ValidationError as e:
            return _error(400, str(e))
        except Exception as e:
            logger.error(f"Failed to start sync: {e}", exc_info=True, extra={
                "operation": "admin",
                "action": "start",
                "mode": mode,
            })
            return _error(500, "failed to start sync")

        logger.info("Sync started from admin", extra={
            "operation": "admin",
            "action": "start",
            "mode": mode,
            "run_id": started["run_id"],
            "requested_by": requested_by,
        })
        return 202, {"started": True, "mode": started["mode"]}

    def abort(self, reason: str = "aborted by admin") -> Response:
        try:
            return 200, self.controller.abort(reason)
        except NoRunInProgressError:
            return _error(400, "no run in progress")

    def status(self) -> Response:
        status = self.controller.status()
        return 200, {
            "ok": True,
            "snapshot": status["snapshot"],
            "running": status["running"],
            "mode": status["mode"],
        }

    def history(self, limit: Any = 10) -> Response:
        if self._history is None:
            return _error(404, "sync history is not configured")
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            limit = 10
        limit = max(1, min(MAX_HISTORY_LIMIT, limit))

        try:
            rows = self._history.list_recent(limit)
        except HistoryError as e:
            logger.error(f"Failed to read sync history: {e}", extra={
                "operation": "admin",
                "action": "history",
            })
            return _error(500, "failed to read sync history")
        return 200, {"ok": True, "data": [row.to_dict() for row in rows]}
