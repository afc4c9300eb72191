"""Bounded retry combinator."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(
    attempts: int,
    delay: float,
    fn: Callable[[int], T],
    *,
    retry_on: Callable[[BaseException], bool] = lambda exc: True,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Call ``fn(attempt)`` up to ``attempts`` times.

    ``attempt`` counts from 1.  Between failed attempts, ``on_retry`` is
    notified and the combinator sleeps ``delay`` seconds.  Exceptions for
    which ``retry_on`` is false propagate immediately; after the final
    attempt the last error is re-raised unchanged.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    for attempt in range(1, attempts + 1):
        try:
            return fn(attempt)
        except Exception as exc:
            if attempt == attempts or not retry_on(exc):
                raise
            logger.warning(
                "Attempt %d/%d failed: %s; retrying in %.1fs", attempt, attempts, exc, delay
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep(delay)

    raise AssertionError("unreachable")
