# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/nodes/prepare.py

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING, Dict

from .proxy import NodeProxy

if TYPE_CHECKING:
    from ..setup.controller import SetupController

SUPPORTED_OS = {"ubuntu": ("22.04", "24.04")}

KERNEL_MODULES = textwrap.dedent("""\
    overlay
    br_netfilter
    ip_tables
    iptable_filter
    iptable_nat
    nf_nat
    xt_conntrack
""")

SYSCTL = textwrap.dedent("""\
    net.bridge.bridge-nf-call-iptables = 1
    net.bridge.bridge-nf-call-ip6tables = 1
    net.ipv4.ip_forward = 1
    fs.inotify.max_user_instances = 8192
    fs.inotify.max_user_watches = 524288
""")


def parse_os_release(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in text.splitlines():
        if "=" not in line:
            continue
        k, v = line.split("=", 1)
        out[k.strip()] = v.strip().strip('"')
    return out


def verify_node_os(controller: "SetupController", node: NodeProxy) -> None:
    controller.log_progress("operating system", verb="check", node=node)
    info = parse_os_release(node.run_command("cat /etc/os-release", check=True).output_text)
    os_id, version = info.get("ID", ""), info.get("VERSION_ID", "")
    if version not in SUPPORTED_OS.get(os_id, ()):
        raise RuntimeError(f"unsupported operating system [{os_id} {version}]")


def configure_node_credentials(controller: "SetupController", node: NodeProxy) -> None:
    """Install the cluster SSH public key and, when requested, the generated password."""
    ctx = controller.context
    login = ctx.require_login()
    user = login.ssh_username
    ssh_dir = f"/home/{user}/.ssh"

    controller.log_progress("credentials", verb="configure", node=node)
    if login.ssh_key is not None:
        node.sudo_command(f"mkdir -p {ssh_dir} && chmod 700 {ssh_dir}")
        node.upload_text(
            f"{ssh_dir}/authorized_keys",
            login.ssh_key.public_openssh.strip() + "\n",
            permissions="600",
            owner=f"{user}:{user}",
        )
        node.sudo_command(f"chown {user}:{user} {ssh_dir}")

    manager = ctx.hosting_manager
    if manager is not None and manager.generate_secure_password and login.ssh_password:
        # sudo must keep working after the password changes under this session
        node.upload_text(f"/etc/sudoers.d/{user}", f"{user} ALL=(ALL) NOPASSWD:ALL\n", permissions="440", owner="root:root")
        node.sudo_command(f"echo '{user}:{login.ssh_password}' | chpasswd", redact=True)


def _kube_minor(version: str) -> str:
    return ".".join(version.split(".")[:2])


def prepare_node(controller: "SetupController", node: NodeProxy) -> None:
    """
    Base OS preparation. Every part is its own idempotent sub-step so a
    re-run after a failure resumes at the part that failed.
    """
    ctx = controller.context
    kube = ctx.cluster.kubernetes

    def hostname() -> None:
        controller.log_progress("hostname", verb="configure", node=node)
        fqdn = f"{node.name}.{ctx.cluster.domain}"
        node.sudo_command(f"hostnamectl set-hostname {node.name}")
        node.sudo_command(r"sed -i 's/^127\.0\.1\.1.*//' /etc/hosts")
        node.sudo_command(
            f"grep -qxF '{node.address} {fqdn} {node.name}' /etc/hosts "
            f"|| echo '{node.address} {fqdn} {node.name}' >> /etc/hosts"
        )

    def swap() -> None:
        controller.log_progress("swap", verb="disable", node=node)
        node.sudo_command("swapoff -a")
        node.sudo_command(r"sed -i '/\sswap\s/ s/^#*/#/' /etc/fstab")

    def modules() -> None:
        controller.log_progress("kernel modules", verb="configure", node=node)
        node.upload_text("/etc/modules-load.d/kubeboot.conf", KERNEL_MODULES, permissions="644", owner="root:root")
        for m in (ln.strip() for ln in KERNEL_MODULES.splitlines()):
            if m:
                node.sudo_command(f"modprobe {m}", check=False)

    def sysctl() -> None:
        controller.log_progress("kernel parameters", verb="configure", node=node)
        node.upload_text("/etc/sysctl.d/99-kubeboot.conf", SYSCTL, permissions="644", owner="root:root")
        node.sudo_command("sysctl --system")

    def packages() -> None:
        controller.log_progress("packages", verb="install", node=node)
        minor = _kube_minor(kube.version)
        repo = f"https://pkgs.k8s.io/core:/stable:/v{minor}/deb/"
        node.sudo_command(
            "DEBIAN_FRONTEND=noninteractive apt-get update -y && "
            "DEBIAN_FRONTEND=noninteractive apt-get install -y "
            "apt-transport-https ca-certificates curl gpg containerd podman",
            timeout=ctx.cluster.setup.command_timeout,
        )
        node.sudo_command(
            "mkdir -p /etc/apt/keyrings && "
            f"curl -fsSL {repo}Release.key | gpg --dearmor --yes -o /etc/apt/keyrings/kubernetes.gpg"
        )
        node.upload_text(
            "/etc/apt/sources.list.d/kubernetes.list",
            f"deb [signed-by=/etc/apt/keyrings/kubernetes.gpg] {repo} /\n",
            permissions="644",
            owner="root:root",
        )
        node.sudo_command(
            "DEBIAN_FRONTEND=noninteractive apt-get update -y && "
            "DEBIAN_FRONTEND=noninteractive apt-get install -y kubelet kubeadm kubectl && "
            "apt-mark hold kubelet kubeadm kubectl",
            timeout=ctx.cluster.setup.command_timeout,
        )

    def containerd() -> None:
        controller.log_progress("containerd", verb="configure", node=node)
        node.sudo_command(
            "mkdir -p /etc/containerd && containerd config default "
            "| sed 's/SystemdCgroup = false/SystemdCgroup = true/' > /etc/containerd/config.toml"
        )
        node.sudo_command("systemctl restart containerd && systemctl enable kubelet")

    for key, body in (
        ("base/hostname", hostname),
        ("base/swap", swap),
        ("base/modules", modules),
        ("base/sysctl", sysctl),
        ("base/packages", packages),
        ("base/containerd", containerd),
    ):
        node.invoke_idempotent(key, body)

    controller.log_progress("node", verb="prepared", node=node)
