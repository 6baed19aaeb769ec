# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/errors.py
from __future__ import annotations

from typing import Optional


class KubeBootError(RuntimeError):
    """Base class for kubeboot failures."""


class ConfigError(KubeBootError):
    """Raised when a cluster definition cannot be loaded or validated."""


class SetupError(KubeBootError):
    """A fatal setup failure. Raised from global steps, it aborts the run."""


class HostingError(KubeBootError):
    """Raised when no hosting manager can handle an environment."""


class JoinError(KubeBootError):
    """Raised when a node could not join the cluster within its attempt budget."""

    def __init__(self, node_name: str, attempts: int, output: str = ""):
        super().__init__(
            f"Unable to join node [{node_name}] to the cluster after [{attempts}] attempts."
        )
        self.node_name = node_name
        self.attempts = attempts
        self.output = output


class ReentrantStepError(KubeBootError):
    """Raised when a step body re-enters its own (scope, key)."""


class RemoteCommandError(KubeBootError):
    """A checked remote command returned a non-zero exit code."""

    def __init__(
        self,
        command: str,
        exit_code: int,
        output: str = "",
        node_name: Optional[str] = None,
    ):
        where = f" on [{node_name}]" if node_name else ""
        super().__init__(f"Command failed{where} (rc={exit_code}): {command}\n{output}".rstrip())
        self.command = command
        self.exit_code = exit_code
        self.output = output
        self.node_name = node_name
