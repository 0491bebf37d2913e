# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
from typing import Protocol
from .events import BaseEvent

class Observer(Protocol):
    """
    Receives every lifecycle event a pipeline emits on the EventBus.

    notify() runs on the emitting thread, which may be a fan-out worker,
    so implementations must be thread-safe. Exceptions raised here are
    logged by the bus and never reach the pipeline.
    """

    def notify(self, event: BaseEvent) -> None: ...
