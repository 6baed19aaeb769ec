# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ..config.models import ClusterDefinition

if TYPE_CHECKING:
    from ..hosting.base import HostingManager
    from ..kube.client import KubeClient
    from ..login import ClusterLogin


@dataclass
class SetupContext:
    """
    Shared, typed state handed to every step through ``controller.context``.
    Built once per controller.
    """

    cluster: ClusterDefinition
    login: Optional["ClusterLogin"] = None
    hosting_manager: Optional["HostingManager"] = None
    state_dir: Optional[Path] = None
    log_folder: Optional[Path] = None
    debug: bool = False
    resumed: bool = False
    # set by the "configure workstation" step
    kubeconfig_path: Optional[Path] = None
    kube: Optional["KubeClient"] = None

    def require_login(self) -> "ClusterLogin":
        if self.login is None:
            raise RuntimeError("setup context has no cluster login")
        return self.login

    def require_kube(self) -> "KubeClient":
        if self.kube is None:
            raise RuntimeError("kubernetes client not configured; run the workstation step first")
        return self.kube
