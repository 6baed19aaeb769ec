# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/setup/registry.py

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Optional, Set, Tuple

from ..errors import ReentrantStepError

log = logging.getLogger("kubeboot")

GLOBAL_SCOPE = "<global>"

StepId = Tuple[str, str]


class StepRegistry:
    """
    Completion set keyed by ``(scope, key)``.

    ``scope`` is a node name or :data:`GLOBAL_SCOPE`. Presence means the step
    finished successfully; nothing else is stored. The internal lock guards
    the set and the in-flight table but is never held while a body runs, so
    bodies may freely invoke other keys (including on other scopes).

    When ``state_path`` is given the set is loaded from and persisted to a
    JSON file, which lets a new process resume a partially completed run.
    """

    def __init__(self, state_path: Optional[Path] = None):
        self.state_path = Path(state_path) if state_path else None
        self._cond = threading.Condition(threading.Lock())
        self._done: Set[StepId] = set()
        self._in_flight: Dict[StepId, int] = {}
        if self.state_path and self.state_path.is_file():
            self._load()

    # ------------------ persistence ------------------

    def _load(self) -> None:
        data = json.loads(self.state_path.read_text() or "{}")
        for scope, keys in data.get("completed", {}).items():
            for key in keys:
                self._done.add((scope, key))
        log.debug("loaded %d completed steps from %s", len(self._done), self.state_path)

    def _persist(self) -> None:
        # caller holds the lock
        if self.state_path is None:
            return
        by_scope: Dict[str, list] = {}
        for scope, key in sorted(self._done):
            by_scope.setdefault(scope, []).append(key)
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.state_path.parent), prefix=".steps-")
        with os.fdopen(fd, "w") as f:
            json.dump({"completed": by_scope}, f, indent=2)
        os.replace(tmp, self.state_path)

    def reset(self) -> None:
        """Forget every completion (a fresh setup run)."""
        with self._cond:
            self._done.clear()
            if self.state_path and self.state_path.exists():
                self.state_path.unlink()

    # ------------------ contract ------------------

    def is_complete(self, scope: str, key: str) -> bool:
        with self._cond:
            return (scope, key) in self._done

    def mark_complete(self, scope: str, key: str) -> None:
        with self._cond:
            if (scope, key) in self._done:
                return
            self._done.add((scope, key))
            self._persist()

    def completed(self, scope: Optional[str] = None) -> Set[StepId]:
        with self._cond:
            return {s for s in self._done if scope is None or s[0] == scope}

    def invoke_idempotent(self, scope: str, key: str, body: Callable[[], None]) -> bool:
        """
        Run ``body`` unless ``(scope, key)`` is already complete.

        Returns True when the body ran and succeeded, False when it was
        skipped. If the body raises, the key stays unmarked and the error
        propagates. A concurrent caller for the same key waits for the
        running one and then re-checks.
        """
        step_id = (scope, key)
        me = threading.get_ident()

        with self._cond:
            while True:
                if step_id in self._done:
                    return False
                owner = self._in_flight.get(step_id)
                if owner is None:
                    break
                if owner == me:
                    raise ReentrantStepError(f"step [{key}] re-entered on [{scope}]")
                self._cond.wait()
            self._in_flight[step_id] = me

        succeeded = False
        try:
            body()
            succeeded = True
        finally:
            with self._cond:
                del self._in_flight[step_id]
                if succeeded:
                    self._done.add(step_id)
                    self._persist()
                self._cond.notify_all()

        return True
