import threading
import time

import pytest

from adaptive_sync.core.cancellation import CancellationToken
from adaptive_sync.core.rate_limit import RateLimiter
from adaptive_sync.errors import RunCancelled


def test_first_acquire_does_not_wait():
    limiter = RateLimiter(min_interval=5)
    assert limiter.acquire() == 0.0


def test_spacing_between_grants():
    limiter = RateLimiter(min_interval=0.05)
    limiter.acquire()
    started = time.monotonic()
    limiter.acquire()
    assert time.monotonic() - started >= 0.04


def test_zero_interval_never_waits():
    limiter = RateLimiter(min_interval=0)
    for _ in range(5):
        assert limiter.acquire() == 0.0


def test_cancelled_token_raises_before_granting():
    limiter = RateLimiter(min_interval=0)
    token = CancellationToken()
    token.cancel("stop")
    with pytest.raises(RunCancelled) as exc:
        limiter.acquire(token)
    assert exc.value.reason == "stop"


def test_pending_wait_wakes_on_cancel():
    limiter = RateLimiter(min_interval=30)
    token = CancellationToken()
    limiter.acquire(token)

    threading.Timer(0.05, token.cancel, args=("aborted",)).start()
    started = time.monotonic()
    with pytest.raises(RunCancelled):
        limiter.acquire(token)
    assert time.monotonic() - started < 5


def test_negative_interval_is_rejected():
    with pytest.raises(ValueError):
        RateLimiter(min_interval=-1)
