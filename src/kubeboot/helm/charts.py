# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/helm/charts.py

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..config.models import ChartOptions
from ..nodes.proxy import NodeProxy
from .errors import HelmError

ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"
HELM_INSTALL_SCRIPT = "https://raw.githubusercontent.com/helm/helm/main/scripts/get-helm-3"


@dataclass(frozen=True)
class ChartSpec:
    repo_name: str
    repo_url: str
    name: str
    version: Optional[str] = None

    @classmethod
    def from_options(cls, opts: ChartOptions) -> "ChartSpec":
        return cls(opts.repo_name, opts.repo_url, opts.chart, opts.version)

    @property
    def ref(self) -> str:
        return f"{self.repo_name}/{self.name}"


def _set_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    # helm splits --set on unescaped commas
    return str(value).replace(",", r"\,")


def render_set_args(values: Mapping[str, Any]) -> str:
    """``{"a.b": 1}`` -> ``--set a.b=1`` (keys sorted so commands are stable)."""
    return " ".join(
        f"--set {shlex.quote(f'{k}={_set_value(v)}')}" for k, v in sorted(values.items())
    )


def ensure_helm(node: NodeProxy) -> None:
    """Install the helm CLI on ``node`` when it is missing."""
    if node.run_command("command -v helm").success:
        return
    result = node.sudo_command(f"curl -fsSL {HELM_INSTALL_SCRIPT} | bash", check=False)
    if not result.success:
        raise HelmError(f"helm install failed on [{node.name}]", result.all_text)


def install_chart(
    node: NodeProxy,
    chart: ChartSpec,
    release_name: str,
    namespace: str,
    values: Optional[Dict[str, Any]] = None,
    *,
    timeout: int = 600,
) -> None:
    """
    Install or upgrade ``release_name`` from a remote repo, running helm on
    ``node`` against the cluster admin kubeconfig.
    """

    def helm(args: str) -> None:
        result = node.sudo_command(f"helm --kubeconfig {ADMIN_KUBECONFIG} {args}", check=False, timeout=timeout + 60)
        if not result.success:
            raise HelmError(f"helm {args.split()[0]} failed for release '{release_name}'", result.all_text)

    # 1. Add repo (idempotent)
    helm(f"repo add {chart.repo_name} {chart.repo_url} --force-update")

    # 2. Update repo
    helm(f"repo update {chart.repo_name}")

    # 3. Install / upgrade
    cmd = (
        f"upgrade --install {release_name} {chart.ref} "
        f"--namespace {namespace} --create-namespace "
        f"--wait --timeout {timeout}s"
    )
    if chart.version:
        cmd += f" --version {chart.version}"
    if values:
        cmd += " " + render_set_args(values)

    helm(cmd)
