# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/observers/logger.py
from __future__ import annotations

import logging

from .events import BaseEvent, NodeFaulted, RunSummary, StepFailed

# a run log covers one run of one cluster and each record is timestamped
_CONTEXT_FIELDS = ("ts", "run_id", "cluster")


class LoggerObserver:
    """Mirrors setup events into the run log; faults and failures log at ERROR."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        fields = ", ".join(f"{k}={v}" for k, v in event.dict().items() if k not in _CONTEXT_FIELDS)
        failed = isinstance(event, (NodeFaulted, StepFailed)) or (
            isinstance(event, RunSummary) and not event.success
        )
        level = logging.ERROR if failed else logging.INFO
        self.logger.log(level, "[EVENT] %s: %s", event.__class__.__name__, fields)
