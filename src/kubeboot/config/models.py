# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/config/models.py

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class NodeRole(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class NodeDefinition(BaseModel):
    name: str
    address: str
    role: NodeRole = NodeRole.WORKER
    port: int = 22
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("address")
    @classmethod
    def _valid_address(cls, v: str) -> str:
        try:
            ipaddress.ip_address(v)
        except ValueError as e:
            raise ValueError(f"invalid node address '{v}'") from e
        return v

    @property
    def is_control_plane(self) -> bool:
        return self.role == NodeRole.CONTROL_PLANE


class HostingOptions(BaseModel):
    environment: str = "bare-metal"
    # provider specific settings, opaque to the engine
    options: Dict[str, object] = Field(default_factory=dict)


class SetupOptions(BaseModel):
    max_parallel: int = Field(default=10, gt=0)
    wait_online_timeout_seconds: int = 900
    online_poll_seconds: float = 5.0
    join_max_attempts: int = Field(default=6, gt=0)
    join_retry_delay_seconds: float = 5.0
    password_length: int = 20
    ssh_username: str = "sysadmin"
    ssh_password: Optional[str] = None      # used when the hosting manager doesn't generate one
    ssh_connect_timeout: float = 20.0
    command_timeout: float = 900.0


class ChartOptions(BaseModel):
    repo_name: str
    repo_url: str
    chart: str
    version: Optional[str] = None


class KubernetesOptions(BaseModel):
    version: str = "1.29.0"
    pod_subnet: str = "10.254.0.0/16"
    service_subnet: str = "10.253.0.0/16"
    api_port: int = 6443
    # control-plane nodes get NoSchedule unless workloads are allowed on them
    allow_pods_on_control_plane: Optional[bool] = None
    cni: ChartOptions = ChartOptions(
        repo_name="projectcalico",
        repo_url="https://docs.tigera.io/calico/charts",
        chart="tigera-operator",
    )
    metrics_server: ChartOptions = ChartOptions(
        repo_name="metrics-server",
        repo_url="https://kubernetes-sigs.github.io/metrics-server/",
        chart="metrics-server",
    )
    cert_manager: ChartOptions = ChartOptions(
        repo_name="jetstack",
        repo_url="https://charts.jetstack.io",
        chart="cert-manager",
    )


class ClusterDefinition(BaseModel):
    name: str
    domain: str = "cluster.local"
    nodes: List[NodeDefinition]
    hosting: HostingOptions = Field(default_factory=HostingOptions)
    setup: SetupOptions = Field(default_factory=SetupOptions)
    kubernetes: KubernetesOptions = Field(default_factory=KubernetesOptions)

    @model_validator(mode="after")
    def _check_nodes(self) -> "ClusterDefinition":
        seen = set()
        for n in self.nodes:
            if n.name in seen:
                raise ValueError(f"duplicate node name '{n.name}'")
            seen.add(n.name)
        if not any(n.is_control_plane for n in self.nodes):
            raise ValueError("cluster must define at least one control-plane node")
        return self

    # Helpers
    @property
    def control_planes(self) -> List[NodeDefinition]:
        return [n for n in self.nodes if n.is_control_plane]

    @property
    def workers(self) -> List[NodeDefinition]:
        return [n for n in self.nodes if not n.is_control_plane]

    @property
    def first_control_plane(self) -> NodeDefinition:
        return self.control_planes[0]

    def by_name(self) -> Dict[str, NodeDefinition]:
        return {n.name: n for n in self.nodes}
