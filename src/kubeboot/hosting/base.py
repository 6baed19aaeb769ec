# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/hosting/base.py

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from ..config.models import ClusterDefinition

if TYPE_CHECKING:
    from ..setup.controller import SetupController


class HostingManager(ABC):
    """
    Provider-specific provisioning hooks.

    A hosting manager contributes steps to the prepare controller before and
    after the generic node preparation, and steps to the remove controller.
    The engine writes ``max_parallel`` and ``wait_seconds`` before adding
    steps and registers the manager as a disposable, so ``close()`` runs
    when the controller finishes.
    """

    environment: str = ""

    def __init__(self, cluster: ClusterDefinition):
        self.cluster = cluster
        self.max_parallel = cluster.setup.max_parallel
        self.wait_seconds = 0.0

    @property
    def requires_admin_privileges(self) -> bool:
        return False

    @property
    def requires_node_address_check(self) -> bool:
        return False

    @property
    def generate_secure_password(self) -> bool:
        """True when provisioning sets a generated password on the nodes."""
        return False

    def validate(self, cluster: ClusterDefinition) -> None:
        """Raise ConfigError when ``cluster`` cannot be hosted here."""

    @abstractmethod
    def add_provisioning_steps(self, controller: "SetupController") -> None: ...

    def add_post_provisioning_steps(self, controller: "SetupController") -> None:
        pass

    def add_deprovisioning_steps(self, controller: "SetupController") -> None:
        pass

    def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(environment={self.environment!r}, cluster={self.cluster.name!r})"
