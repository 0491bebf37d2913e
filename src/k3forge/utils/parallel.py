# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/utils/parallel.py

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

from k3forge.errors import AggregateError, NodeOperationError

log = logging.getLogger("k3forge")

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ParallelOutcome(Generic[R]):
    # index-addressed: results[i] belongs to items[i], None when that item failed
    results: List[Optional[R]]
    errors: List[NodeOperationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self, summary: str) -> None:
        if self.errors:
            raise AggregateError(summary, self.errors)


def run_parallel(
    items: Iterable[T],
    fn: Callable[[T], R],
    *,
    label: Callable[[T], str] = str,
    max_workers: Optional[int] = None,
) -> ParallelOutcome[R]:
    """
    Run *fn* once per item on a thread pool and join before returning.

    A failing item never cancels its siblings: its exception is recorded as a
    NodeOperationError and the remaining items run to completion.
    """
    items = list(items)
    outcome: ParallelOutcome[R] = ParallelOutcome(results=[None] * len(items))
    if not items:
        return outcome

    lock = threading.Lock()

    def _task(index: int, item: T) -> None:
        name = label(item)
        try:
            value = fn(item)
        except Exception as exc:
            log.error("[%s] %s", name, exc)
            with lock:
                outcome.errors.append(NodeOperationError(name, exc))
            return
        with lock:
            outcome.results[index] = value

    with ThreadPoolExecutor(max_workers=max_workers or len(items)) as pool:
        futures = [pool.submit(_task, i, item) for i, item in enumerate(items)]
        for fut in futures:
            fut.result()

    return outcome
