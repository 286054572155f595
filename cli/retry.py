"""Small retry helper for client-side network and disk operations."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def constant_delay(seconds: float) -> Callable[[int], float]:
    """Wait the same time after every failed attempt."""

    def _delay(attempt: int) -> float:
        return seconds

    return _delay


def linear_delay(step: float) -> Callable[[int], float]:
    """Wait ``step * attempt`` seconds after failed attempt number ``attempt``."""

    def _delay(attempt: int) -> float:
        return step * attempt

    return _delay


def retry_call(
    fn: Callable[[], T],
    attempts: int,
    delay: Callable[[int], float],
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds, at most ``attempts`` times.

    The exception of the last attempt propagates unchanged.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt == attempts:
                raise
            wait = delay(attempt)
            logger.warning("%s failed (attempt %d/%d): %s", label, attempt, attempts, exc)
            if wait > 0:
                sleep(wait)
    raise AssertionError("unreachable")
