# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/setup/controller.py

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..errors import SetupError
from ..nodes.proxy import NodeFault, NodeProxy
from ..observers.dispatcher import EventBus
from ..observers.events import (
    NodeFaulted,
    Progress,
    RunStarted,
    RunSummary,
    StepCompleted,
    StepFailed,
    StepSkipped,
    StepStarted,
    new_ctx,
    utc_now,
)
from .context import SetupContext
from .registry import GLOBAL_SCOPE, StepRegistry
from .steps import (
    GlobalAction,
    NodeAction,
    NodeFilter,
    SetupStep,
    StepKind,
    StepState,
    default_key,
)

log = logging.getLogger("kubeboot")

DEFAULT_MAX_PARALLEL = 10


class _StepAborted(Exception):
    """Raised inside a step body so an error logged via log_error leaves the step unmarked."""


@dataclass
class RunResult:
    success: bool
    node_faults: Dict[str, NodeFault] = field(default_factory=dict)
    global_error: Optional[str] = None
    failed_step: Optional[str] = None
    exception: Optional[BaseException] = None
    steps: Dict[str, StepState] = field(default_factory=dict)

    def summary(self) -> str:
        done = sum(1 for s in self.steps.values() if s == StepState.DONE)
        return (
            f"success={self.success} steps_done={done}/{len(self.steps)} "
            f"faulted_nodes={len(self.node_faults)}"
        )

    def raise_on_failure(self) -> None:
        if self.global_error is not None:
            raise SetupError(f"[{self.failed_step}] {self.global_error}") from self.exception
        if self.node_faults:
            names = ", ".join(sorted(self.node_faults))
            raise SetupError(f"faulted nodes: {names}")


@dataclass(frozen=True)
class StepRow:
    number: int
    name: str
    kind: str
    state: str


@dataclass(frozen=True)
class NodeRow:
    name: str
    role: str
    status: str
    fault: Optional[str]


@dataclass(frozen=True)
class ControllerSnapshot:
    title: str
    steps: List[StepRow]
    nodes: List[NodeRow]

    def render(self) -> str:
        lines = [self.title, ""]
        for s in self.steps:
            lines.append(f"  {s.number:>2}. {s.name:<40} {s.state}")
        lines.append("")
        for n in self.nodes:
            text = f"FAULT: {n.fault}" if n.fault else n.status
            lines.append(f"  {n.name:<24} {n.role:<14} {text}")
        return "\n".join(lines)


class SetupController:
    """
    Runs an ordered list of global and per-node steps against a set of nodes.

    - Global steps run once, on the calling thread. Any error aborts the run.
    - Per-node steps fan out over the healthy nodes through a thread pool of
      at most ``max_parallel`` workers. The controller waits for every node
      before the next step starts. An error on a node faults that node only;
      faulted nodes are left out of every later per-node step.
    - Every step body goes through the :class:`StepRegistry`, so a step that
      already completed is skipped when the controller is run again.
    """

    def __init__(
        self,
        title: str,
        nodes: Iterable[NodeProxy],
        *,
        context: Optional[SetupContext] = None,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        registry: Optional[StepRegistry] = None,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be > 0")

        self.title = title
        self.nodes: List[NodeProxy] = list(nodes)
        names = [n.name for n in self.nodes]
        if len(names) != len(set(names)):
            raise ValueError("node names must be unique")

        self.context = context
        self.max_parallel = max_parallel
        self.registry = registry or StepRegistry()
        self.bus = bus or EventBus()
        self.logger = logger or log
        self.run_ctx = new_ctx(
            cluster=context.cluster.name if context else title,
            run_id=run_id,
        )

        for node in self.nodes:
            node.registry = self.registry

        self.log_begin_marker = "# CLUSTER-BEGIN ##################################################################"
        self.log_end_marker = "# CLUSTER-END-SUCCESS ############################################################"
        self.log_failed_marker = "# CLUSTER-END-FAILED #############################################################"

        self._steps: List[SetupStep] = []
        self._keys: set = set()
        self._names: set = set()
        self._disposables: list = []
        self._error_lock = threading.Lock()
        self._error: Optional[str] = None

    # ------------------ events ------------------

    def _emit(self, event_cls, **fields) -> None:
        ctx = dict(self.run_ctx, ts=utc_now())
        self.bus.emit(event_cls(**ctx, **fields))

    # ------------------ step declaration ------------------

    @property
    def steps(self) -> List[SetupStep]:
        return list(self._steps)

    def _add(self, step: SetupStep) -> SetupStep:
        if step.key in self._keys:
            raise ValueError(f"duplicate step key '{step.key}'")
        if step.name in self._names:
            raise ValueError(f"duplicate step name '{step.name}'")
        self._keys.add(step.key)
        self._names.add(step.name)
        self._steps.append(step)
        return step

    def add_global_step(
        self,
        name: str,
        action: GlobalAction,
        *,
        key: Optional[str] = None,
        quiet: bool = False,
        idempotent: bool = True,
    ) -> SetupStep:
        return self._add(SetupStep(
            name=name,
            kind=StepKind.GLOBAL,
            action=action,
            key=key or default_key(name),
            idempotent=idempotent,
            quiet=quiet,
        ))

    def add_node_step(
        self,
        name: str,
        action: NodeAction,
        *,
        node_filter: Optional[NodeFilter] = None,
        key: Optional[str] = None,
        quiet: bool = False,
    ) -> SetupStep:
        return self._add(SetupStep(
            name=name,
            kind=StepKind.NODE,
            action=action,
            key=key or default_key(name),
            node_filter=node_filter,
            quiet=quiet,
        ))

    def add_wait_until_online_step(
        self,
        timeout: Union[float, timedelta],
        *,
        name: str = "wait until online",
        poll_interval: float = 5.0,
        node_filter: Optional[NodeFilter] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> SetupStep:
        """
        Poll every node until it answers or ``timeout`` elapses. The deadline
        is shared by all nodes and starts when the step begins. Nodes that
        never answer are faulted.
        """
        seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)
        deadline = {"at": 0.0}

        def begin() -> None:
            deadline["at"] = clock() + seconds

        def wait_online(controller: "SetupController", node: NodeProxy) -> None:
            controller.log_progress("waiting", verb="online", node=node)
            while True:
                if node.is_online():
                    node.status = "online"
                    return
                if clock() >= deadline["at"]:
                    raise TimeoutError(f"node [{node.name}] did not come online within [{seconds:g}s]")
                sleep(poll_interval)

        step = SetupStep(
            name=name,
            kind=StepKind.NODE,
            action=wait_online,
            key=default_key(name),
            node_filter=node_filter,
            idempotent=False,
            on_begin=begin,
        )
        return self._add(step)

    def add_disposable(self, resource) -> None:
        """``resource.close()`` is called when :meth:`run` returns."""
        self._disposables.append(resource)

    # ------------------ progress ------------------

    def node(self, name: str) -> NodeProxy:
        for n in self.nodes:
            if n.name == name:
                return n
        raise KeyError(name)

    @property
    def healthy_nodes(self) -> List[NodeProxy]:
        return [n for n in self.nodes if not n.is_faulted]

    def log_progress(
        self,
        message: str,
        *,
        verb: Optional[str] = None,
        node: Optional[NodeProxy] = None,
    ) -> None:
        text = f"{verb}: {message}" if verb else message
        if node is not None:
            node.status = text
        else:
            self.logger.info(text)
        self._emit(Progress, node=node.name if node else None, verb=verb, message=message)

    def log_error(self, message: str, *, node: Optional[NodeProxy] = None) -> None:
        """
        Report an error. With ``node`` the node is faulted; otherwise the run
        stops once the current step finishes.
        """
        if node is not None:
            node.set_fault(message)
            return
        self.logger.error(message)
        with self._error_lock:
            if self._error is None:
                self._error = message

    def _take_error(self) -> Optional[str]:
        with self._error_lock:
            error, self._error = self._error, None
            return error

    def snapshot(self) -> ControllerSnapshot:
        return ControllerSnapshot(
            title=self.title,
            steps=[
                StepRow(number=i, name=s.name, kind=s.kind.value, state=s.state.value)
                for i, s in enumerate(self._steps, 1)
            ],
            nodes=[
                NodeRow(
                    name=n.name,
                    role=n.role.value,
                    status=n.status,
                    fault=str(n.fault) if n.fault else None,
                )
                for n in self.nodes
            ],
        )

    # ------------------ execution ------------------

    def _run_global(self, step: SetupStep) -> bool:
        def body() -> None:
            step.action(self)
            with self._error_lock:
                error = self._error
            if error is not None:
                raise _StepAborted(error)

        if not step.idempotent:
            body()
            return True
        return self.registry.invoke_idempotent(GLOBAL_SCOPE, step.key, body)

    def _run_on_node(self, step: SetupStep, node: NodeProxy) -> bool:
        """Runs in a worker thread. Returns False when the node faulted."""

        def body() -> None:
            step.action(self, node)
            if node.is_faulted:
                raise _StepAborted(str(node.fault))

        try:
            if step.idempotent:
                if not self.registry.invoke_idempotent(node.name, step.key, body):
                    node.logger.debug("step [%s] already complete", step.name)
            else:
                body()
            return True
        except _StepAborted:
            fault = node.fault
        except Exception as exc:
            fault = node.set_fault(str(exc) or type(exc).__name__, step=step.name, exception=exc)
            node.log_exception(exc)
            self.logger.error("[%s] %s failed: %s", node.name, step.name, exc)

        self._emit(NodeFaulted, node=node.name, step=step.name, error=fault.message if fault else "")
        return False

    def _run_node_step(self, step: SetupStep) -> int:
        eligible = [n for n in self.nodes if not n.is_faulted and step.accepts(n)]
        if not eligible:
            return 0

        workers = min(self.max_parallel, len(eligible))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kubeboot-node") as pool:
            futures = [pool.submit(self._run_on_node, step, node) for node in eligible]
            wait(futures)

        # every node has finished this step here
        return sum(1 for f in futures if f.result() is False)

    def _dispose(self) -> None:
        while self._disposables:
            resource = self._disposables.pop()
            try:
                resource.close()
            except Exception:
                self.logger.warning("failed to dispose %r", resource, exc_info=True)

    def run(self) -> RunResult:
        self._take_error()
        self.logger.info(self.log_begin_marker)
        self._emit(
            RunStarted,
            title=self.title,
            steps=[s.name for s in self._steps],
            nodes=[n.name for n in self.nodes],
        )

        global_error: Optional[str] = None
        failed_step: Optional[str] = None
        exception: Optional[BaseException] = None

        try:
            for step in self._steps:
                if global_error is not None:
                    step.state = StepState.SKIPPED
                    self._emit(StepSkipped, step=step.name, reason="run aborted")
                    continue

                step.state = StepState.RUNNING
                step.error = None
                if step.on_begin:
                    step.on_begin()
                if not step.quiet:
                    nodes = [] if step.kind is StepKind.GLOBAL else [
                        n.name for n in self.nodes if not n.is_faulted and step.accepts(n)
                    ]
                    self._emit(StepStarted, step=step.name, kind=step.kind.value, nodes=nodes)

                t0 = time.monotonic()
                try:
                    if step.kind is StepKind.GLOBAL:
                        ran = self._run_global(step)
                        faulted = 0
                        if not ran:
                            self._emit(StepSkipped, step=step.name, reason="already complete")
                    else:
                        faulted = self._run_node_step(step)
                except Exception as exc:
                    step.state = StepState.FAILED
                    step.error = str(exc) or type(exc).__name__
                    global_error, failed_step = step.error, step.name
                    if not isinstance(exc, _StepAborted):
                        exception = exc
                    self.logger.error("step [%s] failed: %s", step.name, step.error, exc_info=exception is not None)
                    self._emit(StepFailed, step=step.name, error=step.error)
                    continue

                error = self._take_error()
                if error is not None:
                    step.state = StepState.FAILED
                    step.error = error
                    global_error, failed_step = error, step.name
                    self._emit(StepFailed, step=step.name, error=error)
                    continue

                step.state = StepState.FAILED if faulted else StepState.DONE
                if not step.quiet:
                    duration_ms = int((time.monotonic() - t0) * 1000)
                    self._emit(StepCompleted, step=step.name, duration_ms=duration_ms, faulted=faulted)
        finally:
            self._dispose()

        node_faults = {n.name: n.fault for n in self.nodes if n.fault is not None}
        result = RunResult(
            success=global_error is None and not node_faults,
            node_faults=node_faults,
            global_error=global_error,
            failed_step=failed_step,
            exception=exception,
            steps={s.name: s.state for s in self._steps},
        )

        self.logger.info(self.log_end_marker if result.success else self.log_failed_marker)
        self._emit(
            RunSummary,
            title=self.title,
            success=result.success,
            faulted_nodes=sorted(node_faults),
            error=global_error,
        )
        return result
