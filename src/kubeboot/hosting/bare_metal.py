# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/hosting/bare_metal.py

from __future__ import annotations

import socket
from typing import TYPE_CHECKING, Callable

from ..config.models import ClusterDefinition
from ..errors import ConfigError
from .base import HostingManager
from .factory import register_hosting_manager

if TYPE_CHECKING:
    from ..nodes.proxy import NodeProxy
    from ..setup.controller import SetupController


def _tcp_probe(address: str, port: int, timeout: float) -> None:
    with socket.create_connection((address, port), timeout=timeout):
        pass


@register_hosting_manager("bare-metal")
class BareMetalHostingManager(HostingManager):
    """
    Machines that already exist and run a supported OS. Nothing is created
    or destroyed; provisioning only confirms every node address answers on
    its SSH port.
    """

    def __init__(
        self,
        cluster: ClusterDefinition,
        probe: Callable[[str, int, float], None] = _tcp_probe,
    ):
        super().__init__(cluster)
        self._probe = probe

    @property
    def requires_node_address_check(self) -> bool:
        return True

    def validate(self, cluster: ClusterDefinition) -> None:
        addresses = [n.address for n in cluster.nodes]
        dupes = sorted({a for a in addresses if addresses.count(a) > 1})
        if dupes:
            raise ConfigError(f"nodes share addresses: {', '.join(dupes)}")

    def add_provisioning_steps(self, controller: "SetupController") -> None:
        timeout = self.cluster.setup.ssh_connect_timeout

        def check_address(ctl: "SetupController", node: "NodeProxy") -> None:
            port = node.definition.port if node.definition else 22
            ctl.log_progress(f"{node.address}:{port}", verb="check", node=node)
            try:
                self._probe(node.address, port, timeout)
            except OSError as e:
                raise ConnectionError(f"node address [{node.address}:{port}] is not reachable: {e}") from e

        controller.add_node_step("check node address", check_address)
