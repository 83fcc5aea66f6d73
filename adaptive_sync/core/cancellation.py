"""
Cooperative cancellation for a sync run.

A CancellationToken is created per run and threaded through every suspension point: the rate
limiter wait, the retry backoff and the network call. `abort()` on the controller cancels the
token; every waiter wakes immediately and raises RunCancelled.
"""

import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

from ..errors import RunCancelled

T = TypeVar("T")


class CancellationToken:

    def __init__(self, poll_interval: float = 0.05):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self.poll_interval = poll_interval

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        # First reason wins
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds. Returns True if the token was cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self._reason or "cancelled")

    def run(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """
        Run a blocking call on a helper thread and wait for it, giving up as soon as the token
        is cancelled. A call abandoned this way keeps running until its own transport timeout;
        its result is discarded.
        """
        self.raise_if_cancelled()
        future: Future = Future()

        def target():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as exc:
                future.set_exception(exc)

        worker = threading.Thread(target=target, name="adaptive-sync-call", daemon=True)
        worker.start()

        while True:
            try:
                return future.result(timeout=self.poll_interval)
            except FutureTimeout:
                if self._event.is_set():
                    raise RunCancelled(self._reason or "cancelled")
