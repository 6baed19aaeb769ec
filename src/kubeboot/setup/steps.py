# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/setup/steps.py

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from ..nodes.proxy import NodeProxy
    from .controller import SetupController


class StepKind(str, Enum):
    GLOBAL = "global"
    NODE = "node"


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


GlobalAction = Callable[["SetupController"], None]
NodeAction = Callable[["SetupController", "NodeProxy"], None]
NodeFilter = Callable[["NodeProxy"], bool]


@dataclass
class SetupStep:
    name: str
    kind: StepKind
    action: Callable
    key: str
    node_filter: Optional[NodeFilter] = None
    idempotent: bool = True        # False: completion is never recorded
    quiet: bool = False            # no start/complete events
    on_begin: Optional[Callable[[], None]] = None
    state: StepState = StepState.PENDING
    error: Optional[str] = None

    def accepts(self, node: "NodeProxy") -> bool:
        return self.node_filter is None or bool(self.node_filter(node))


def default_key(name: str) -> str:
    return "step/" + "-".join(name.lower().split())
