"""Bounded polling for blocking waits on external systems."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from .errors import ReadinessTimeoutError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def wait_for(
    probe: Callable[[], T | None],
    *,
    what: str,
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *probe* until it returns a truthy value, at most *attempts* times.

    Raises :class:`ReadinessTimeoutError` once the attempts are exhausted;
    callers decide whether that is fatal or a warning.
    """
    for attempt in range(1, attempts + 1):
        value = probe()
        if value:
            return value
        LOGGER.debug("waiting for %s (attempt %d/%d)", what, attempt, attempts)
        if attempt < attempts:
            sleep(interval)
    raise ReadinessTimeoutError(
        f"timed out waiting for {what} after {attempts} attempts "
        f"({attempts * interval:.0f}s)."
    )


__all__ = ["wait_for"]
