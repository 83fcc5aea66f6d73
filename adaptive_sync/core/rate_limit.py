"""
Rate limiter for outbound search API calls.

Grants at most one call per `min_interval` seconds. A pending acquire observes the run's
cancellation token and raises RunCancelled rather than granting once the run is aborted.
"""

import threading
import time
from typing import Callable, Optional

from ..config import RATE_LIMIT_SECONDS
from ..errors import RunCancelled
from .cancellation import CancellationToken


class RateLimiter:

    def __init__(self, min_interval: float = RATE_LIMIT_SECONDS, clock: Callable[[], float] = time.monotonic):
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._last_grant: Optional[float] = None

    def reset(self) -> None:
        with self._lock:
            self._last_grant = None

    def acquire(self, token: Optional[CancellationToken] = None) -> float:
        """
        Block until the next call is permitted.

        Returns:
            float: seconds spent waiting.

        Raises:
            RunCancelled: the token was cancelled before or during the wait.
        """
        with self._lock:
            if token is not None:
                token.raise_if_cancelled()

            waited = 0.0
            if self._last_grant is not None:
                delay = self._last_grant + self.min_interval - self._clock()
                if delay > 0:
                    if token is not None:
                        if token.wait(delay):
                            raise RunCancelled(token.reason or "cancelled")
                    else:
                        time.sleep(delay)
                    waited = delay

            self._last_grant = self._clock()
            return waited
