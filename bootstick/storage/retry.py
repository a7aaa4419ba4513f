"""Bounded polling for conditions that become true asynchronously."""

from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

from bootstick.logging import LoggerFactory


log = LoggerFactory.for_system()

T = TypeVar("T")


def poll_until(
    probe: Callable[[int], Optional[T]],
    *,
    max_attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "condition",
) -> Optional[T]:
    """Call ``probe`` until it returns something other than None.

    ``probe`` receives the 1-based attempt number. Each failed attempt is
    followed by one ``interval`` sleep, so an exhausted poll has slept exactly
    ``max_attempts`` times. Pass a cancellable ``sleep`` (such as
    ``OperationContext.sleep``) to make the wait a cancellation checkpoint.

    Returns:
        The first non-None probe value, or None once attempts are exhausted
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    for attempt in range(1, max_attempts + 1):
        value = probe(attempt)
        if value is not None:
            if attempt > 1:
                log.debug(f"{description} satisfied on attempt {attempt}/{max_attempts}")
            return value
        log.trace(f"Waiting for {description} (attempt {attempt}/{max_attempts})")
        sleep(interval)
    log.debug(f"Gave up waiting for {description} after {max_attempts} attempts")
    return None
