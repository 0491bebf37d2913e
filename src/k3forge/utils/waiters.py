# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/utils/waiters.py

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Optional, TypeVar

from k3forge.errors import ReadinessTimeoutError

log = logging.getLogger("k3forge")

T = TypeVar("T")


def attempts_for(timeout: float, interval: float) -> int:
    """Number of fixed-interval polls that fit in *timeout* (at least one)."""
    if interval <= 0:
        return 1
    return max(1, math.ceil(timeout / interval))


def wait_until(
    predicate: Callable[[], Optional[T]],
    *,
    retries: int,
    delay: float,
    error: str,
) -> T:
    """
    Call *predicate* until it returns a truthy value, at most *retries* times,
    sleeping *delay* seconds in between. Returns that value.

    Raises ReadinessTimeoutError with *error* when the attempts run out.
    """
    for attempt in range(1, retries + 1):
        result = predicate()
        if result:
            return result
        log.debug("waiting: %s (attempt %d/%d)", error, attempt, retries)
        if attempt < retries:
            time.sleep(delay)
    raise ReadinessTimeoutError(f"{error} (gave up after {retries} attempts)")
