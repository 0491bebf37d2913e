# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events of one pipeline run
    cluster: str

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


# ---------------------------------------------------------------------
# Pipeline lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PipelineStarted(BaseEvent):
    pipeline: str     # create/delete/upgrade/run

@dataclass(frozen=True)
class StepStarted(BaseEvent):
    step: str

@dataclass(frozen=True)
class StepCompleted(BaseEvent):
    step: str
    duration_ms: int

@dataclass(frozen=True)
class PipelineSucceeded(BaseEvent):
    pipeline: str
    duration_ms: int

@dataclass(frozen=True)
class PipelineFailed(BaseEvent):
    pipeline: str
    step: Optional[str]
    error: str


# ---------------------------------------------------------------------
# Node lifecycle
# ---------------------------------------------------------------------
# requested -> running -> ssh-reachable -> cloud-init-complete -> k3s-installed
NODE_REQUESTED = "requested"
NODE_RUNNING = "running"
NODE_SSH_REACHABLE = "ssh-reachable"
NODE_CLOUD_INIT_COMPLETE = "cloud-init-complete"
NODE_K3S_INSTALLED = "k3s-installed"

@dataclass(frozen=True)
class NodeStateChanged(BaseEvent):
    node: str
    state: str


# ---------------------------------------------------------------------
# Upgrade
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class UpgradePlanApplied(BaseEvent):
    plan: str
    version: str

@dataclass(frozen=True)
class UpgradeProgress(BaseEvent):
    role: str
    upgraded: int
    ready: int
    total: int
