# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/setup/join.py

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Callable, Iterable

import yaml

from ..errors import JoinError, SetupError
from ..nodes.proxy import NodeProxy

if TYPE_CHECKING:
    from .controller import SetupController

log = logging.getLogger("kubeboot")

JOIN_MARKER = "kubeadm join"
IGNORE_MANIFESTS_ARG = "--ignore-preflight-errors=DirAvailable--etc-kubernetes-manifests"

# Every node runs a local haproxy in front of the API servers. kubeadm's
# controlPlaneEndpoint is API_PROXY_HOST:API_PROXY_PORT, and API_PROXY_HOST
# resolves to the loopback address on each node.
API_PROXY_HOST = "kubernetes-masters"
API_PROXY_PORT = 6442
CONTROL_PLANE_ENDPOINT = f"{API_PROXY_HOST}:{API_PROXY_PORT}"
API_PROXY_NAME = "kubeboot-api-proxy"
API_PROXY_CONFIG = "/etc/kubeboot/api-proxy.cfg"
API_PROXY_MANIFEST = f"/etc/kubernetes/manifests/{API_PROXY_NAME}.yaml"
API_PROXY_IMAGE = "docker.io/library/haproxy:2.8"
HOSTS_ENTRY = f"127.0.0.1 {API_PROXY_HOST}"


def extract_join_command(output: str) -> str:
    """
    Pull the worker ``kubeadm join ...`` command out of ``kubeadm init`` output.

    kubeadm prints the control-plane variant first and the worker variant
    last; the last occurrence runs to the end of the output. Line
    continuations and whitespace control characters are removed.
    """
    start = output.rfind(JOIN_MARKER)
    if start == -1:
        raise SetupError("Cannot locate the [kubeadm join ...] command in the [kubeadm init ...] response.")
    return re.sub(r"[\t\n\r\\]", "", output[start:].strip())


def render_api_proxy_config(control_planes: Iterable[NodeProxy], api_port: int) -> str:
    lines = [
        "global",
        "    daemon",
        "",
        "defaults",
        "    timeout connect 5s",
        "    timeout client  1h",
        "    timeout server  1h",
        "",
        "frontend kubernetes_masters",
        f"    bind *:{API_PROXY_PORT}",
        "    mode tcp",
        "    default_backend kubernetes_masters_backend",
        "",
        "backend kubernetes_masters_backend",
        "    mode tcp",
        "    balance roundrobin",
    ]
    for cp in control_planes:
        # health checks keep traffic off control planes that have not joined yet
        lines.append(f"    server {cp.name} {cp.address}:{api_port} check")
    return "\n".join(lines) + "\n"


def render_api_proxy_pod() -> str:
    """Static pod manifest that keeps the proxy running under the kubelet once the node has joined."""
    pod = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": API_PROXY_NAME,
            "namespace": "kube-system",
            "labels": {"app": API_PROXY_NAME},
        },
        "spec": {
            "hostNetwork": True,
            "priorityClassName": "system-node-critical",
            "volumes": [{
                "name": "config",
                "hostPath": {"path": API_PROXY_CONFIG, "type": "File"},
            }],
            "containers": [{
                "name": "haproxy",
                "image": API_PROXY_IMAGE,
                "volumeMounts": [{"name": "config", "mountPath": "/usr/local/etc/haproxy/haproxy.cfg", "readOnly": True}],
                "ports": [{"name": "kube-api", "containerPort": API_PROXY_PORT, "protocol": "TCP"}],
            }],
        },
    }
    return yaml.safe_dump(pod, sort_keys=False)


def install_api_proxy(node: NodeProxy, control_planes: Iterable[NodeProxy], api_port: int) -> None:
    """
    Point the control-plane endpoint at this node's loopback address and
    install the proxy config and static pod manifest.
    """
    node.sudo_command(f"grep -qxF '{HOSTS_ENTRY}' /etc/hosts || echo '{HOSTS_ENTRY}' >> /etc/hosts")
    node.upload_text(API_PROXY_CONFIG, render_api_proxy_config(control_planes, api_port), permissions="644", owner="root:root")
    node.upload_text(API_PROXY_MANIFEST, render_api_proxy_pod(), permissions="600", owner="root:root")


def join_with_retry(
    node: NodeProxy,
    join_command: str,
    *,
    control_plane: bool = False,
    max_attempts: int = 6,
    delay: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Run the join command until it succeeds or ``max_attempts`` is used up.

    A failed command (non-zero exit) is retried after ``delay`` seconds. An
    exception from the transport is not a join failure and propagates at
    once. Returns the number of attempts it took.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    cmd = join_command
    if control_plane:
        cmd += " --control-plane"
    cmd += f" {IGNORE_MANIFESTS_ARG}"

    last_output = ""
    for attempt in range(1, max_attempts + 1):
        result = node.sudo_command(cmd, check=False, redact=True)
        if result.success:
            return attempt
        last_output = result.all_text
        node.logger.warning("join attempt %d/%d failed (rc=%d)", attempt, max_attempts, result.exit_code)
        if attempt < max_attempts:
            sleep(delay)

    raise JoinError(node.name, max_attempts, last_output)


def join_node(
    controller: "SetupController",
    node: NodeProxy,
    *,
    control_plane: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Join ``node`` through its local API server proxy.

    The kubelet is not running yet, so a podman container stands in for the
    static proxy pod while ``kubeadm join`` runs. The container is removed
    whether or not the join succeeds; once joined, the kubelet starts the
    static pod on the same port.
    """
    ctx = controller.context
    login = ctx.require_login()
    join_command = login.setup_details.cluster_join_command
    if not join_command:
        raise SetupError("cluster join command is not known; initialize the control plane first")

    control_planes = [n for n in controller.nodes if n.is_control_plane]
    install_api_proxy(node, control_planes, ctx.cluster.kubernetes.api_port)

    controller.log_progress("proxy", verb="start", node=node)
    # left behind by an interrupted run
    node.sudo_command(f"podman rm --force {API_PROXY_NAME}", check=False)
    node.sudo_command(
        f"podman run --name={API_PROXY_NAME} --detach "
        f"-v={API_PROXY_CONFIG}:/usr/local/etc/haproxy/haproxy.cfg "
        f"--network=host {API_PROXY_IMAGE}"
    )
    try:
        controller.log_progress("as control-plane" if control_plane else "as worker", verb="join", node=node)
        attempts = join_with_retry(
            node,
            join_command,
            control_plane=control_plane,
            max_attempts=ctx.cluster.setup.join_max_attempts,
            delay=ctx.cluster.setup.join_retry_delay_seconds,
            sleep=sleep,
        )
        node.logger.info("joined after %d attempt(s)", attempts)
    finally:
        node.sudo_command(f"podman rm --force {API_PROXY_NAME}", check=False)

    controller.log_progress("to cluster", verb="joined", node=node)
