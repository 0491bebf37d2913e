# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cluster/pipeline.py

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from k3forge.config.models import ClusterSpec
from k3forge.errors import PipelineCancelled
from k3forge.observers.dispatcher import EventBus
from k3forge.observers.events import (
    NodeStateChanged,
    PipelineFailed,
    PipelineStarted,
    PipelineSucceeded,
    StepCompleted,
    StepStarted,
    new_ctx,
)

log = logging.getLogger("k3forge")


class Pipeline:
    """
    Shared plumbing of the lifecycle pipelines: named steps, lifecycle
    events and a cancel flag that is honoured between steps.
    """

    name = "pipeline"

    def __init__(
        self,
        spec: ClusterSpec,
        *,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.spec = spec
        self.bus = bus or EventBus()
        self.run_id = run_id or str(uuid.uuid4())
        self.cancel = cancel or threading.Event()
        self._current_step: Optional[str] = None

    def emit(self, event_cls, **fields) -> None:
        self.bus.emit(event_cls(**new_ctx(self.spec.cluster_name, self.run_id), **fields))

    def node_state(self, node: str, state: str) -> None:
        log.debug("[%s] %s", node, state)
        self.emit(NodeStateChanged, node=node, state=state)

    def check_cancelled(self) -> None:
        if self.cancel.is_set():
            raise PipelineCancelled(f"{self.name} cancelled before step '{self._current_step}'")

    @contextmanager
    def step(self, name: str) -> Iterator[None]:
        self._current_step = name
        self.check_cancelled()
        log.info("==> %s", name)
        self.emit(StepStarted, step=name)
        started = time.monotonic()
        yield
        self.emit(StepCompleted, step=name, duration_ms=int((time.monotonic() - started) * 1000))

    @contextmanager
    def running(self) -> Iterator[None]:
        """Wraps a whole run with started/succeeded/failed events."""
        self.emit(PipelineStarted, pipeline=self.name)
        started = time.monotonic()
        try:
            yield
        except Exception as exc:
            self.emit(PipelineFailed, pipeline=self.name, step=self._current_step, error=str(exc))
            raise
        self.emit(PipelineSucceeded, pipeline=self.name, duration_ms=int((time.monotonic() - started) * 1000))
