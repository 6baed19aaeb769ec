# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single controller run
    cluster: str      # cluster name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": utc_now(),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    title: str
    steps: List[str]
    nodes: List[str]

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    title: str
    success: bool
    faulted_nodes: List[str]
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepStarted(BaseEvent):
    step: str
    kind: str                  # "global" | "node"
    nodes: List[str]

@dataclass(frozen=True)
class StepCompleted(BaseEvent):
    step: str
    duration_ms: int
    faulted: int = 0

@dataclass(frozen=True)
class StepSkipped(BaseEvent):
    step: str
    reason: str

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    step: str
    error: str


# ---------------------------------------------------------------------
# Progress & faults
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class Progress(BaseEvent):
    node: Optional[str]        # None for global progress
    verb: Optional[str]
    message: str

@dataclass(frozen=True)
class NodeFaulted(BaseEvent):
    node: str
    step: str
    error: str
