"""Retry policy and a runner that applies it."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from zrb.errors import RetryableError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Max attempts (including the first) and the sleep before each retry.

    The last delay is reused once the schedule runs out.
    """
    max_attempts: int = 3
    delays: tuple[float, ...] = (1.0, 5.0, 30.0)

    def delay(self, retry: int) -> float:
        if not self.delays:
            return 0.0
        return self.delays[min(retry, len(self.delays)) - 1]


def run_with_retries(
    policy: RetryPolicy,
    fn: Callable[..., T],
    *args: Any,
    sleep: Callable[[float], None] | None = None,
    cancel: threading.Event | None = None,
    on_retry: Callable[[int, RetryableError, float], None] | None = None,
    **kwargs: Any,
) -> T:
    """Call fn, retrying on RetryableError as the policy allows.

    Non-retryable errors propagate immediately. Once attempts are exhausted,
    or cancellation was requested, the last error is re-raised. Without an
    explicit `sleep`, backoff waits on `cancel` so a stop request ends it
    early.
    """
    attempt = 1
    while True:
        try:
            return fn(*args, **kwargs)
        except RetryableError as e:
            if attempt >= policy.max_attempts or (cancel is not None and cancel.is_set()):
                raise
            delay = policy.delay(attempt)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            if sleep is not None:
                sleep(delay)
            elif cancel is not None:
                cancel.wait(delay)
            else:
                time.sleep(delay)
            if cancel is not None and cancel.is_set():
                raise
            attempt += 1
