# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/observers/console.py
from __future__ import annotations

import typer

from .events import BaseEvent, NodeFaulted, Progress, RunSummary, StepFailed, StepSkipped, StepStarted


class ConsoleObserver:
    """Prints a compact, human readable line per event."""

    def __init__(self, show_progress: bool = True):
        self.show_progress = show_progress

    def notify(self, event: BaseEvent) -> None:
        line = self.format(event)
        if line is None:
            return
        err = isinstance(event, (NodeFaulted, StepFailed))
        typer.echo(line, err=err)

    def format(self, event: BaseEvent) -> str | None:
        ts = event.ts
        if isinstance(event, Progress):
            if not self.show_progress:
                return None
            scope = event.node or "cluster"
            text = f"{event.verb}: {event.message}" if event.verb else event.message
            return f"[{ts}] {scope:<20} {text}"
        if isinstance(event, StepStarted):
            return f"[{ts}] ==> {event.step}"
        if isinstance(event, StepSkipped):
            return f"[{ts}] --- {event.step} ({event.reason})"
        if isinstance(event, StepFailed):
            return f"[{ts}] !!! {event.step}: {event.error}"
        if isinstance(event, NodeFaulted):
            return f"[{ts}] !!! [{event.node}] {event.step}: {event.error}"
        if isinstance(event, RunSummary):
            status = "OK" if event.success else "FAILED"
            faulted = ", ".join(event.faulted_nodes) or "-"
            return f"[{ts}] {event.title}: {status} faulted={faulted}"
        d = event.dict()
        k = event.__class__.__name__
        return f"[{ts}] {k} " + ", ".join(f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "cluster"))
