# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/login.py

from __future__ import annotations

import io
import logging
import os
import secrets
import string
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

import paramiko
import yaml
from pydantic import BaseModel, Field, PrivateAttr

from .config.models import ClusterDefinition

log = logging.getLogger("kubeboot")

DEFAULT_STATE_DIR = Path.home() / ".kubeboot"


class RemoteFileDetails(BaseModel):
    text: str
    permissions: str = "600"
    owner: str = "root:root"


class SetupDetails(BaseModel):
    setup_pending: bool = True
    cluster_join_command: Optional[str] = None
    # control-plane certificates and configs downloaded from the first control plane
    control_plane_files: Dict[str, RemoteFileDetails] = Field(default_factory=dict)


class SshKey(BaseModel):
    private_openssh: str
    public_openssh: str


class ClusterLogin(BaseModel):
    """
    Everything a later (or resumed) run needs to reach the cluster: generated
    SSH credentials, the kubeadm join command and control-plane file material.

    The file's existence with ``setup_details.setup_pending`` set is what
    makes a run resume instead of starting clean.
    """

    cluster_definition: ClusterDefinition
    ssh_username: str = "sysadmin"
    ssh_password: Optional[str] = None
    ssh_key: Optional[SshKey] = None
    setup_details: SetupDetails = Field(default_factory=SetupDetails)

    _path: Optional[Path] = PrivateAttr(default=None)
    _lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @classmethod
    def create(cls, path: Path, cluster: ClusterDefinition, **kwargs) -> "ClusterLogin":
        login = cls(cluster_definition=cluster, **kwargs)
        login._path = Path(path)
        return login

    @classmethod
    def load(cls, path: Path) -> Optional["ClusterLogin"]:
        path = Path(path)
        if not path.is_file():
            return None
        data = yaml.safe_load(path.read_text()) or {}
        login = cls.model_validate(data)
        login._path = path
        return login

    def save(self) -> None:
        """Atomically rewrite the login file (mode 600)."""
        if self._path is None:
            raise ValueError("cluster login has no path")
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            text = yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False)
            fd, tmp = tempfile.mkstemp(dir=str(self._path.parent), prefix=".login-")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(text)
                os.chmod(tmp, 0o600)
                os.replace(tmp, self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise


def login_path(cluster_name: str, state_dir: Path | None = None) -> Path:
    return (state_dir or DEFAULT_STATE_DIR) / "logins" / f"root@{cluster_name}.yaml"


def load_or_create_login(
    cluster: ClusterDefinition,
    path: Path,
) -> tuple[ClusterLogin, bool]:
    """
    Return ``(login, resumed)``. An existing login with setup still pending
    is resumed; anything else starts a fresh login.
    """
    login = ClusterLogin.load(path)
    if login is not None and login.setup_details.setup_pending:
        log.info("resuming pending setup from %s", path)
        return login, True

    login = ClusterLogin.create(
        path,
        cluster,
        ssh_username=cluster.setup.ssh_username,
        setup_details=SetupDetails(setup_pending=True),
    )
    login.save()
    return login, False


def generate_password(length: int) -> str:
    alphabet = string.ascii_letters + string.digits
    # the suffix guarantees every character class for strict password rules
    return "".join(secrets.choice(alphabet) for _ in range(length)) + ".Aa0"


def generate_ssh_key(cluster_name: str, username: str, bits: int = 2048) -> SshKey:
    key = paramiko.RSAKey.generate(bits)
    buf = io.StringIO()
    key.write_private_key(buf)
    public = f"{key.get_name()} {key.get_base64()} {username}@{cluster_name}"
    return SshKey(private_openssh=buf.getvalue(), public_openssh=public)
