# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/observers/dispatcher.py
from __future__ import annotations
import logging
from typing import List, Optional
from .events import BaseEvent
from .interface import Observer

log = logging.getLogger("k3forge")

class EventBus:
    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers = list(observers or [])

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception as exc:
                # observers must not break a pipeline
                log.debug("observer %s failed on %s: %s", type(ob).__name__, type(event).__name__, exc)
