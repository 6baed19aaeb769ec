# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/nodes/proxy.py

from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from ..config.models import NodeDefinition, NodeRole
from ..errors import RemoteCommandError
from .ssh import CommandResult, RemoteRunner

if TYPE_CHECKING:
    from ..setup.registry import StepRegistry

log = logging.getLogger("kubeboot")


@dataclass(frozen=True)
class NodeFault:
    message: str
    step: Optional[str] = None
    exception: Optional[BaseException] = None

    def __str__(self) -> str:
        return f"[{self.step}] {self.message}" if self.step else self.message


class NodeProxy:
    """
    Handle for one machine in the cluster.

    ``status`` and ``fault`` are written only by the task currently working
    on this node; a per-node lock keeps reads from other threads (console,
    snapshots) consistent without making nodes contend with each other.
    """

    def __init__(
        self,
        name: str,
        address: str,
        runner: RemoteRunner,
        *,
        role: NodeRole = NodeRole.WORKER,
        definition: Optional[NodeDefinition] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.name = name
        self.address = address
        self.role = role
        self.definition = definition
        self.runner = runner
        self.logger = logger or logging.getLogger(f"kubeboot.node.{name}")
        self.registry: Optional["StepRegistry"] = None
        self._lock = threading.Lock()
        self._status = ""
        self._fault: Optional[NodeFault] = None

    @classmethod
    def from_definition(
        cls,
        definition: NodeDefinition,
        runner: RemoteRunner,
        logger: Optional[logging.Logger] = None,
    ) -> "NodeProxy":
        return cls(
            definition.name,
            definition.address,
            runner,
            role=definition.role,
            definition=definition,
            logger=logger,
        )

    def __repr__(self) -> str:
        return f"NodeProxy({self.name!r}, {self.address!r}, {self.role.value})"

    @property
    def is_control_plane(self) -> bool:
        return self.role == NodeRole.CONTROL_PLANE

    # ------------------ status & faults ------------------

    @property
    def status(self) -> str:
        with self._lock:
            return self._status

    @status.setter
    def status(self, value: str) -> None:
        with self._lock:
            self._status = value or ""
        if value:
            self.logger.info("*** %s", value)

    @property
    def fault(self) -> Optional[NodeFault]:
        with self._lock:
            return self._fault

    @property
    def is_faulted(self) -> bool:
        return self.fault is not None

    def set_fault(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        exception: Optional[BaseException] = None,
    ) -> NodeFault:
        """Record a fault. The first fault wins; later ones are only logged."""
        with self._lock:
            if self._fault is None:
                self._fault = NodeFault(message=message, step=step, exception=exception)
            current = self._fault
            self._status = f"FAULT: {message}"
        self.logger.error("*** FAULT: %s", message)
        return current

    def clear_fault(self) -> None:
        with self._lock:
            self._fault = None

    def log_exception(self, exc: BaseException) -> None:
        self.logger.error(
            "*** EXCEPTION\n%s",
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )

    # ------------------ idempotency ------------------

    def _registry(self) -> "StepRegistry":
        if self.registry is None:
            raise RuntimeError(f"node [{self.name}] is not attached to a step registry")
        return self.registry

    def is_complete(self, key: str) -> bool:
        return self._registry().is_complete(self.name, key)

    def invoke_idempotent(self, key: str, body: Callable[[], None]) -> bool:
        """Run ``body`` once for this node and ``key``; returns False when skipped."""
        ran = self._registry().invoke_idempotent(self.name, key, body)
        if not ran:
            self.logger.debug("idempotent [%s] already complete", key)
        return ran

    # ------------------ remote operations ------------------

    def run_command(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        check: bool = False,
        timeout: Optional[float] = None,
        redact: bool = False,
    ) -> CommandResult:
        shown = "<redacted>" if redact else cmd
        self.logger.debug("$ %s%s", "sudo " if sudo else "", shown)
        result = self.runner.run(cmd, sudo=sudo, timeout=timeout)
        if result.output_text.strip():
            self.logger.debug("[stdout]\n%s", result.output_text.rstrip())
        if result.error_text.strip():
            self.logger.debug("[stderr]\n%s", result.error_text.rstrip())
        self.logger.debug("[exit %d]", result.exit_code)
        if check and not result.success:
            raise RemoteCommandError(shown, result.exit_code, result.all_text, node_name=self.name)
        return result

    def sudo_command(
        self,
        cmd: str,
        *,
        check: bool = True,
        timeout: Optional[float] = None,
        redact: bool = False,
    ) -> CommandResult:
        return self.run_command(cmd, sudo=True, check=check, timeout=timeout, redact=redact)

    def upload_text(
        self,
        path: str,
        content: str,
        *,
        permissions: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> None:
        self.logger.debug("upload: %s", path)
        self.runner.upload_text(path, content, permissions=permissions, owner=owner)

    def download_text(self, path: str) -> str:
        self.logger.debug("download: %s", path)
        return self.runner.download_text(path)

    def is_online(self) -> bool:
        return self.runner.is_reachable()

    def close(self) -> None:
        self.runner.close()
