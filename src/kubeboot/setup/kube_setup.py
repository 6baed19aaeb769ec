# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/setup/kube_setup.py

"""
The fixed prepare / setup / remove sequences.

Each ``create_*_controller`` function returns a :class:`SetupController`
loaded with every step in order; callers only ``run()`` it.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Callable, List, Optional

import yaml

from ..config.models import ClusterDefinition, NodeDefinition
from ..errors import SetupError
from ..helm.charts import ChartSpec, ensure_helm, install_chart
from ..hosting.base import HostingManager
from ..hosting.factory import get_hosting_manager
from ..kube.client import KubeClient
from ..logging.log import node_logger
from ..login import (
    DEFAULT_STATE_DIR,
    ClusterLogin,
    RemoteFileDetails,
    generate_password,
    generate_ssh_key,
)
from ..nodes.prepare import configure_node_credentials, prepare_node, verify_node_os
from ..nodes.proxy import NodeProxy
from ..nodes.ssh import SshCredentials, SshRunner
from ..observers.dispatcher import EventBus
from .context import SetupContext
from .controller import SetupController
from .join import (
    API_PROXY_HOST,
    API_PROXY_NAME,
    CONTROL_PLANE_ENDPOINT,
    HOSTS_ENTRY,
    IGNORE_MANIFESTS_ARG,
    extract_join_command,
    install_api_proxy,
    join_node,
)
from .registry import StepRegistry

NodeFactory = Callable[[NodeDefinition, SshCredentials, Optional[Path]], NodeProxy]
KubeFactory = Callable[[Path], KubeClient]

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBEADM_CONFIG = "/etc/kubeboot/kubeadm.yaml"
CONTROL_PLANE_TAINT = "node-role.kubernetes.io/control-plane"
WORKER_ROLE_LABEL = "node-role.kubernetes.io/worker"

# copied from the first control plane to every other control plane before it joins
CONTROL_PLANE_FILES = {
    ADMIN_CONF: "600",
    "/etc/kubernetes/pki/ca.crt": "600",
    "/etc/kubernetes/pki/ca.key": "600",
    "/etc/kubernetes/pki/sa.pub": "600",
    "/etc/kubernetes/pki/sa.key": "644",
    "/etc/kubernetes/pki/front-proxy-ca.crt": "644",
    "/etc/kubernetes/pki/front-proxy-ca.key": "600",
    "/etc/kubernetes/pki/etcd/ca.crt": "644",
    "/etc/kubernetes/pki/etcd/ca.key": "600",
}

ADMISSION_PLUGINS = (
    "NamespaceLifecycle,LimitRanger,ServiceAccount,DefaultStorageClass,"
    "DefaultTolerationSeconds,MutatingAdmissionWebhook,ValidatingAdmissionWebhook,"
    "Priority,ResourceQuota"
)


# ---------------------------------------------------------------------
# Construction helpers
# ---------------------------------------------------------------------

def ssh_node_factory(cluster: ClusterDefinition) -> NodeFactory:
    def build(definition: NodeDefinition, credentials: SshCredentials, log_folder: Optional[Path]) -> NodeProxy:
        runner = SshRunner(
            definition.address,
            credentials,
            port=definition.port,
            connect_timeout=cluster.setup.ssh_connect_timeout,
            cmd_timeout=cluster.setup.command_timeout,
        )
        return NodeProxy.from_definition(definition, runner, logger=node_logger(definition.name, log_folder, append=True))
    return build


def _setup_credentials(cluster: ClusterDefinition, login: ClusterLogin) -> SshCredentials:
    return SshCredentials(
        username=login.ssh_username,
        password=login.ssh_password or cluster.setup.ssh_password,
        private_key=login.ssh_key.private_openssh if login.ssh_key else None,
    )


def _provisioning_credentials(cluster: ClusterDefinition) -> SshCredentials:
    # the cluster key is not on the machines yet
    return SshCredentials(username=cluster.setup.ssh_username, password=cluster.setup.ssh_password)


def _state_path(state_dir: Path, cluster: ClusterDefinition, phase: str) -> Path:
    return state_dir / "steps" / f"{cluster.name}-{phase}.json"


def _new_controller(
    title: str,
    phase: str,
    cluster: ClusterDefinition,
    login: Optional[ClusterLogin],
    credentials: SshCredentials,
    *,
    resumed: bool,
    hosting_manager: Optional[HostingManager],
    state_dir: Optional[Path],
    node_factory: Optional[NodeFactory],
    bus: Optional[EventBus],
    run_id: Optional[str],
    max_parallel: Optional[int],
    debug: bool,
) -> SetupController:
    state_dir = Path(state_dir) if state_dir else DEFAULT_STATE_DIR
    log_folder = state_dir / "logs" / cluster.name
    registry = StepRegistry(_state_path(state_dir, cluster, phase))
    if not resumed:
        registry.reset()
        if phase == "prepare":
            # a fresh prepare also starts a fresh setup
            StepRegistry(_state_path(state_dir, cluster, "setup")).reset()

    factory = node_factory or ssh_node_factory(cluster)
    nodes = [
        factory(d, SshCredentials(credentials.username, credentials.password, credentials.private_key), log_folder)
        for d in cluster.nodes
    ]

    context = SetupContext(
        cluster=cluster,
        login=login,
        hosting_manager=hosting_manager,
        state_dir=state_dir,
        log_folder=log_folder,
        debug=debug,
        resumed=resumed,
    )
    controller = SetupController(
        title,
        nodes,
        context=context,
        max_parallel=max_parallel or cluster.setup.max_parallel,
        registry=registry,
        bus=bus,
        run_id=run_id,
    )
    for node in nodes:
        controller.add_disposable(node)
    return controller


def _first_control_plane(controller: SetupController) -> NodeProxy:
    node = controller.node(controller.context.cluster.first_control_plane.name)
    if node.is_faulted:
        raise SetupError(f"first control-plane node [{node.name}] is faulted: {node.fault}")
    return node


def _is_control_plane(node: NodeProxy) -> bool:
    return node.is_control_plane


def _is_worker(node: NodeProxy) -> bool:
    return not node.is_control_plane


# ---------------------------------------------------------------------
# Prepare
# ---------------------------------------------------------------------

def create_prepare_controller(
    cluster: ClusterDefinition,
    login: ClusterLogin,
    *,
    resumed: bool = False,
    hosting_manager: Optional[HostingManager] = None,
    state_dir: Optional[Path] = None,
    node_factory: Optional[NodeFactory] = None,
    bus: Optional[EventBus] = None,
    run_id: Optional[str] = None,
    max_parallel: Optional[int] = None,
    debug: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> SetupController:
    manager = hosting_manager or get_hosting_manager(cluster)
    controller = _new_controller(
        f"Preparing [{cluster.name}] cluster infrastructure",
        "prepare",
        cluster,
        login,
        _provisioning_credentials(cluster),
        resumed=resumed,
        hosting_manager=manager,
        state_dir=state_dir,
        node_factory=node_factory,
        bus=bus,
        run_id=run_id,
        max_parallel=max_parallel,
        debug=debug,
    )

    def configure_hosting_manager(ctl: SetupController) -> None:
        if manager.requires_admin_privileges and os.geteuid() != 0:
            raise SetupError(f"hosting environment '{manager.environment}' requires admin privileges")
        manager.max_parallel = ctl.max_parallel
        manager.wait_seconds = 60

    def generate_credentials(ctl: SetupController) -> None:
        ctl.log_progress("ssh credentials", verb="generate")
        if login.ssh_key is None:
            login.ssh_key = generate_ssh_key(cluster.name, login.ssh_username)
        if login.ssh_password is None:
            if manager.generate_secure_password:
                login.ssh_password = generate_password(cluster.setup.password_length)
            else:
                login.ssh_password = cluster.setup.ssh_password
        login.save()

    controller.add_global_step("configure hosting manager", configure_hosting_manager, idempotent=False, quiet=True)
    controller.add_global_step("generate ssh credentials", generate_credentials)
    manager.add_provisioning_steps(controller)
    controller.add_wait_until_online_step(
        cluster.setup.wait_online_timeout_seconds,
        poll_interval=cluster.setup.online_poll_seconds,
        sleep=sleep,
        clock=clock,
    )
    controller.add_node_step("verify node OS", verify_node_os)
    controller.add_node_step("node credentials", configure_node_credentials)
    controller.add_node_step("prepare nodes", prepare_node)
    manager.add_post_provisioning_steps(controller)
    controller.add_disposable(manager)
    return controller


# ---------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------

def render_kubeadm_config(cluster: ClusterDefinition, first: NodeProxy) -> str:
    k = cluster.kubernetes
    sans = [API_PROXY_HOST]
    for cp in cluster.control_planes:
        sans.extend([cp.name, cp.address])
    init = {
        "apiVersion": "kubeadm.k8s.io/v1beta3",
        "kind": "InitConfiguration",
        "localAPIEndpoint": {"advertiseAddress": first.address, "bindPort": k.api_port},
        "nodeRegistration": {"name": first.name, "criSocket": "unix:///run/containerd/containerd.sock"},
    }
    cfg = {
        "apiVersion": "kubeadm.k8s.io/v1beta3",
        "kind": "ClusterConfiguration",
        "clusterName": cluster.name,
        "kubernetesVersion": f"v{k.version}",
        "controlPlaneEndpoint": CONTROL_PLANE_ENDPOINT,
        "apiServer": {"certSANs": sans},
        "networking": {
            "podSubnet": k.pod_subnet,
            "serviceSubnet": k.service_subnet,
            "dnsDomain": cluster.domain,
        },
    }
    kubelet = {
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "kind": "KubeletConfiguration",
        "cgroupDriver": "systemd",
        "logging": {"format": "json"},
    }
    return yaml.safe_dump_all([init, cfg, kubelet], sort_keys=False)


def rename_admin_context(text: str, cluster_name: str) -> str:
    """
    kubeadm names the admin context ``kubernetes-admin@<cluster>``. Rename
    it to ``root@<cluster>`` and the user to ``<cluster>-root``.
    """
    doc = yaml.safe_load(text) or {}
    old_user = "kubernetes-admin"
    new_user = f"{cluster_name}-root"
    new_context = f"root@{cluster_name}"

    for user in doc.get("users") or []:
        if user.get("name") == old_user:
            user["name"] = new_user
    for ctx in doc.get("contexts") or []:
        if ctx.get("name") == f"{old_user}@{cluster_name}":
            ctx["name"] = new_context
        if (ctx.get("context") or {}).get("user") == old_user:
            ctx["context"]["user"] = new_user
    if doc.get("current-context") == f"{old_user}@{cluster_name}":
        doc["current-context"] = new_context
    return yaml.safe_dump(doc, sort_keys=False)


def create_setup_controller(
    cluster: ClusterDefinition,
    login: ClusterLogin,
    *,
    resumed: bool = False,
    state_dir: Optional[Path] = None,
    node_factory: Optional[NodeFactory] = None,
    kube_factory: Optional[KubeFactory] = None,
    bus: Optional[EventBus] = None,
    run_id: Optional[str] = None,
    max_parallel: Optional[int] = None,
    debug: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> SetupController:
    controller = _new_controller(
        f"Setting up [{cluster.name}] cluster",
        "setup",
        cluster,
        login,
        _setup_credentials(cluster, login),
        resumed=resumed,
        hosting_manager=None,
        state_dir=state_dir,
        node_factory=node_factory,
        bus=bus,
        run_id=run_id,
        max_parallel=max_parallel,
        debug=debug,
    )
    make_kube = kube_factory or KubeClient.from_kubeconfig
    details = login.setup_details

    def initialize_control_plane(ctl: SetupController) -> None:
        first = _first_control_plane(ctl)

        def kubeadm_init() -> None:
            ctl.log_progress("cluster", verb="initialize", node=first)
            install_api_proxy(first, [n for n in ctl.nodes if n.is_control_plane], cluster.kubernetes.api_port)
            first.upload_text(KUBEADM_CONFIG, render_kubeadm_config(cluster, first), permissions="600", owner="root:root")
            result = first.sudo_command(
                f"kubeadm init --config {KUBEADM_CONFIG} {IGNORE_MANIFESTS_ARG}",
                timeout=cluster.setup.command_timeout,
            )
            details.cluster_join_command = extract_join_command(result.output_text)
            login.save()
            ctl.log_progress("cluster", verb="created")

        def admin_context() -> None:
            ctl.log_progress("kubectl", verb="configure", node=first)
            admin = rename_admin_context(first.download_text(ADMIN_CONF), cluster.name)
            first.upload_text(ADMIN_CONF, admin, permissions="600", owner="root:root")

        def download_files() -> None:
            ctl.log_progress("control-plane files", verb="download", node=first)
            for path, permissions in CONTROL_PLANE_FILES.items():
                details.control_plane_files[path] = RemoteFileDetails(
                    text=first.download_text(path),
                    permissions=permissions,
                )
            login.save()

        first.invoke_idempotent("setup/cluster-init", kubeadm_init)
        first.invoke_idempotent("setup/admin-context", admin_context)
        first.invoke_idempotent("setup/control-plane-files", download_files)

        if not details.cluster_join_command:
            raise SetupError("cluster join command is missing from the cluster login")

    def join_control_plane(ctl: SetupController, node: NodeProxy) -> None:
        for path, f in details.control_plane_files.items():
            node.upload_text(path, f.text, permissions=f.permissions, owner=f.owner)
        join_node(ctl, node, control_plane=True, sleep=sleep)

    def configure_api_server(ctl: SetupController, node: NodeProxy) -> None:
        ctl.log_progress("kubernetes api server", verb="configure", node=node)
        node.sudo_command(
            "sed -i 's/.*--enable-admission-plugins=.*/    - --enable-admission-plugins="
            f"{ADMISSION_PLUGINS}/' /etc/kubernetes/manifests/kube-apiserver.yaml"
        )
        node.sudo_command(f"mkdir -p /root/.kube && cp {ADMIN_CONF} /root/.kube/config")

    def join_worker(ctl: SetupController, node: NodeProxy) -> None:
        join_node(ctl, node, control_plane=False, sleep=sleep)

    def configure_workstation(ctl: SetupController) -> None:
        admin = details.control_plane_files.get(ADMIN_CONF)
        if admin is None:
            raise SetupError("admin kubeconfig was not downloaded from the first control plane")
        path = ctl.context.state_dir / "kubeconfig" / f"{cluster.name}.conf"
        path.parent.mkdir(parents=True, exist_ok=True)
        # the proxy host only resolves on cluster nodes
        first = cluster.control_planes[0]
        text = admin.text.replace(CONTROL_PLANE_ENDPOINT, f"{first.address}:{cluster.kubernetes.api_port}")
        path.write_text(rename_admin_context(text, cluster.name))
        os.chmod(path, 0o600)
        ctl.context.kubeconfig_path = path
        ctl.context.kube = make_kube(path)
        ctl.log_progress(str(path), verb="wrote")

    def control_plane_taints(ctl: SetupController) -> None:
        kube = ctl.context.require_kube()
        allow = cluster.kubernetes.allow_pods_on_control_plane
        if allow is None:
            allow = not cluster.workers
        present = set(kube.list_node_names())
        for cp in cluster.control_planes:
            # a faulted control plane never registered with the API server
            if ctl.node(cp.name).is_faulted or cp.name not in present:
                continue
            if allow:
                kube.remove_taint(cp.name, CONTROL_PLANE_TAINT)
            else:
                kube.taint_node(cp.name, CONTROL_PLANE_TAINT, None, "NoSchedule")
        ctl.log_progress("control-plane taints", verb="configured")

    def label_nodes(ctl: SetupController) -> None:
        kube = ctl.context.require_kube()
        present = set(kube.list_node_names())
        for d in cluster.nodes:
            if d.name not in present:
                continue
            labels = dict(d.labels)
            if not d.is_control_plane:
                labels[WORKER_ROLE_LABEL] = ""
            if labels:
                kube.label_node(d.name, labels)
        ctl.log_progress("nodes", verb="labeled")

    def chart_step(opts_name: str, release: str, namespace: str, values: dict, waits: List[tuple]):
        def install(ctl: SetupController) -> None:
            first = _first_control_plane(ctl)
            kube = ctl.context.require_kube()
            chart = ChartSpec.from_options(getattr(cluster.kubernetes, opts_name))
            first.invoke_idempotent("setup/helm", lambda: ensure_helm(first))
            ctl.log_progress(release, verb="install")
            install_chart(first, chart, release, namespace, values)
            for kind, ns, name in waits:
                getattr(kube, f"wait_for_{kind}")(ns, name, timeout=600)
        return install

    controller.add_wait_until_online_step(
        cluster.setup.wait_online_timeout_seconds,
        poll_interval=cluster.setup.online_poll_seconds,
        sleep=sleep,
        clock=clock,
    )
    controller.add_global_step("initialize control plane", initialize_control_plane)
    first_name = cluster.first_control_plane.name
    controller.add_node_step(
        "join control plane",
        join_control_plane,
        node_filter=lambda n: n.is_control_plane and n.name != first_name,
    )
    controller.add_node_step("configure api server", configure_api_server, node_filter=_is_control_plane)
    controller.add_node_step("join workers", join_worker, node_filter=_is_worker)
    controller.add_global_step("configure workstation", configure_workstation, idempotent=False)
    controller.add_global_step("control-plane taints", control_plane_taints, idempotent=False)
    controller.add_global_step("label nodes", label_nodes, idempotent=False)
    controller.add_global_step("install cni", chart_step(
        "cni", "tigera-operator", "tigera-operator",
        {"installation.calicoNetwork.ipPools[0].cidr": cluster.kubernetes.pod_subnet},
        [("deployment", "tigera-operator", "tigera-operator"), ("daemonset", "calico-system", "calico-node")],
    ))
    controller.add_global_step("install metrics server", chart_step(
        "metrics_server", "metrics-server", "kube-system",
        {"args[0]": "--kubelet-insecure-tls"},
        [("deployment", "kube-system", "metrics-server")],
    ))
    controller.add_global_step("install cert-manager", chart_step(
        "cert_manager", "cert-manager", "cert-manager",
        {"installCRDs": True},
        [("deployment", "cert-manager", "cert-manager"), ("deployment", "cert-manager", "cert-manager-webhook")],
    ))

    def finish_setup(ctl: SetupController) -> None:
        faulted = [n.name for n in ctl.nodes if n.is_faulted]
        if faulted:
            # stay pending so the next run resumes the faulted nodes
            ctl.log_progress(f"pending, faulted nodes: {', '.join(faulted)}", verb="setup")
            return
        details.setup_pending = False
        login.save()
        ctl.log_progress("cluster setup", verb="finished")

    controller.add_global_step("finish setup", finish_setup, idempotent=False)
    return controller


# ---------------------------------------------------------------------
# Remove
# ---------------------------------------------------------------------

def create_remove_controller(
    cluster: ClusterDefinition,
    login: Optional[ClusterLogin],
    *,
    hosting_manager: Optional[HostingManager] = None,
    state_dir: Optional[Path] = None,
    node_factory: Optional[NodeFactory] = None,
    bus: Optional[EventBus] = None,
    run_id: Optional[str] = None,
    max_parallel: Optional[int] = None,
    debug: bool = False,
) -> SetupController:
    manager = hosting_manager or get_hosting_manager(cluster)
    credentials = _setup_credentials(cluster, login) if login else _provisioning_credentials(cluster)
    controller = _new_controller(
        f"Removing [{cluster.name}] cluster",
        "remove",
        cluster,
        login,
        credentials,
        resumed=False,
        hosting_manager=manager,
        state_dir=state_dir,
        node_factory=node_factory,
        bus=bus,
        run_id=run_id,
        max_parallel=max_parallel,
        debug=debug,
    )

    def reset_node(ctl: SetupController, node: NodeProxy) -> None:
        ctl.log_progress("kubernetes", verb="reset", node=node)
        node.sudo_command(f"kubeadm reset -f {IGNORE_MANIFESTS_ARG}", check=False)
        node.sudo_command(f"podman rm --force {API_PROXY_NAME}", check=False)
        node.sudo_command("rm -rf /etc/cni/net.d /etc/kubeboot /root/.kube")
        node.sudo_command(f"sed -i '/^{HOSTS_ENTRY}$/d' /etc/hosts")

    def remove_state(ctl: SetupController) -> None:
        state_dir = ctl.context.state_dir
        if login is not None and login.path is not None:
            login.path.unlink(missing_ok=True)
        for phase in ("prepare", "setup", "remove"):
            _state_path(state_dir, cluster, phase).unlink(missing_ok=True)
        (state_dir / "kubeconfig" / f"{cluster.name}.conf").unlink(missing_ok=True)
        ctl.log_progress("cluster login", verb="removed")

    controller.add_node_step("reset nodes", reset_node, key="remove/reset-nodes")
    manager.add_deprovisioning_steps(controller)
    controller.add_global_step("remove cluster state", remove_state, idempotent=False)
    controller.add_disposable(manager)
    return controller
