# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/utils/retry.py
import functools
import time
from typing import Callable

from converge.errors import StepTimeout


class RetryError(RuntimeError):
    pass


def retry(
    *,
    retries: int,
    delay: float,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    give_up_on: tuple[type[Exception], ...] = (),
    on_retry: Callable[[int, Exception], None] | None = None,
):
    """
    Retry decorator for idempotent operations.

    retries: number of attempts
    delay: seconds between attempts
    retry_on: exception types to retry
    give_up_on: exception types re-raised immediately (checked first)
    on_retry: callback(attempt, exception)
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            last_exc = None
            for attempt in range(1, retries + 1):
                try:
                    return fn(*args, **kwargs)
                except give_up_on:
                    raise
                except retry_on as exc:
                    last_exc = exc
                    if attempt == retries:
                        break
                    if on_retry:
                        on_retry(attempt, exc)
                    time.sleep(delay)
            raise RetryError(f"{fn.__name__} failed after {retries} retries") from last_exc
        return wrapper
    return decorator


def poll_until(
    probe: Callable[[], bool],
    *,
    timeout: float,
    interval: float,
    describe: str,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Bounded readiness wait shared by every step that waits on an external
    component. Calls *probe* until it returns True or the deadline passes
    (StepTimeout). Returns the number of probes made.
    """
    deadline = clock() + timeout
    attempts = 0
    while True:
        attempts += 1
        if probe():
            return attempts
        remaining = deadline - clock()
        if remaining <= 0:
            raise StepTimeout(f"timed out after {timeout:g}s waiting for {describe} ({attempts} probes)")
        sleep(min(interval, remaining))
