# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/nodes/ssh.py

from __future__ import annotations

import io
import os
import socket
import threading
from dataclasses import dataclass
from itertools import count
from typing import Optional, Protocol

import paramiko

_tmp_counter = count(1)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output_text: str = ""
    error_text: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def all_text(self) -> str:
        return (self.output_text + self.error_text).strip()


@dataclass
class SshCredentials:
    username: str
    password: Optional[str] = None
    private_key: Optional[str] = None      # OpenSSH/PEM text


class RemoteRunner(Protocol):
    """What a node needs from its transport."""

    def run(self, cmd: str, *, sudo: bool = False, timeout: Optional[float] = None) -> CommandResult: ...

    def upload_text(
        self,
        remote_path: str,
        content: str,
        *,
        permissions: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> None: ...

    def download_text(self, remote_path: str) -> str: ...

    def is_reachable(self) -> bool: ...

    def close(self) -> None: ...


def _q(s: str) -> str:
    """
    Quote for bash -lc.
    """
    return "'" + s.replace("'", "'\"'\"'") + "'"


def _load_pkey(text: str) -> paramiko.PKey:
    last: Optional[Exception] = None
    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            return key_cls.from_private_key(io.StringIO(text))
        except paramiko.SSHException as e:
            last = e
            continue
    raise paramiko.SSHException(f"Unsupported private key format: {last}")


class SshRunner:
    """
    Lazily connected paramiko session for one node.

    Connection failures raise (transport errors are never turned into a
    failed ``CommandResult``). Commands run through ``bash -lc`` and, with
    ``sudo=True``, through ``sudo -S`` fed with the login password.
    """

    def __init__(
        self,
        address: str,
        credentials: SshCredentials,
        *,
        port: int = 22,
        connect_timeout: float = 20.0,
        cmd_timeout: Optional[float] = None,
    ):
        self.address = address
        self.port = port
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.cmd_timeout = cmd_timeout
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    # ------------------ connection & utils ------------------

    def _connect(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        pkey = None
        if self.credentials.private_key:
            pkey = _load_pkey(self.credentials.private_key)

        client.connect(
            hostname=self.address,
            port=self.port,
            username=self.credentials.username,
            password=self.credentials.password if not pkey else None,
            pkey=pkey,
            timeout=self.connect_timeout,
            allow_agent=False,
            look_for_keys=False,
        )
        return client

    @property
    def client(self) -> paramiko.SSHClient:
        with self._lock:
            if self._client is None:
                self._client = self._connect()
            return self._client

    def reconnect(self) -> None:
        self.close()
        _ = self.client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def is_reachable(self) -> bool:
        """True once an SSH session can be opened and a trivial command succeeds."""
        try:
            return self.run("true", timeout=self.connect_timeout).success
        except (paramiko.SSHException, socket.error, EOFError):
            self.close()
            return False

    # ------------------ commands ------------------

    def run(self, cmd: str, *, sudo: bool = False, timeout: Optional[float] = None) -> CommandResult:
        stdin_data = None
        if sudo:
            cmd = f"sudo -S -p '' bash -lc {_q(cmd)}"
            stdin_data = self.credentials.password
        else:
            cmd = f"bash -lc {_q(cmd)}"

        stdin, stdout, stderr = self.client.exec_command(cmd, timeout=timeout or self.cmd_timeout)
        if stdin_data:
            stdin.write(stdin_data + "\n")
            stdin.flush()
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        rc = stdout.channel.recv_exit_status()
        return CommandResult(exit_code=rc, output_text=out, error_text=err)

    # ------------------ files ------------------

    def upload_text(
        self,
        remote_path: str,
        content: str,
        *,
        permissions: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> None:
        """
        Upload content to a temp path then move with sudo to the final
        destination to preserve root-owned targets.
        """
        tmp_remote = f"/tmp/.kubeboot_tmp_{os.getpid()}_{next(_tmp_counter)}"
        sftp = self.client.open_sftp()
        try:
            with sftp.file(tmp_remote, "w") as f:
                f.write(content)
        finally:
            sftp.close()

        mode = f"-m {permissions} " if permissions else ""
        parent = os.path.dirname(remote_path) or "/"
        cmd = f"mkdir -p {parent} && install {mode}{tmp_remote} {remote_path}"
        if owner:
            cmd += f" && chown {owner} {remote_path}"
        cmd += f" ; rc=$? ; rm -f {tmp_remote} ; exit $rc"
        result = self.run(cmd, sudo=True)
        if not result.success:
            raise IOError(f"upload to {remote_path} failed: {result.all_text}")

    def download_text(self, remote_path: str) -> str:
        result = self.run(f"cat {remote_path}", sudo=True)
        if not result.success:
            raise IOError(f"download of {remote_path} failed: {result.all_text}")
        return result.output_text
