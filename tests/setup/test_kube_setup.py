from pathlib import Path

import pytest
import yaml
from kubernetes.client.rest import ApiException

from kubeboot.hosting.bare_metal import BareMetalHostingManager
from kubeboot.login import ClusterLogin, SshKey
from kubeboot.nodes.proxy import NodeProxy
from kubeboot.nodes.ssh import CommandResult
from kubeboot.setup import kube_setup
from kubeboot.setup.join import API_PROXY_MANIFEST, HOSTS_ENTRY
from kubeboot.setup.kube_setup import (
    ADMIN_CONF,
    CONTROL_PLANE_FILES,
    CONTROL_PLANE_TAINT,
    KUBEADM_CONFIG,
    WORKER_ROLE_LABEL,
    create_prepare_controller,
    create_remove_controller,
    create_setup_controller,
    rename_admin_context,
    render_kubeadm_config,
)
from kubeboot.setup.steps import StepState


ADMIN_YAML = yaml.safe_dump({
    "apiVersion": "v1",
    "kind": "Config",
    "clusters": [{"name": "test", "cluster": {"server": "https://kubernetes-masters:6442"}}],
    "users": [{"name": "kubernetes-admin", "user": {"client-certificate-data": "AA=="}}],
    "contexts": [{"name": "kubernetes-admin@test", "context": {"cluster": "test", "user": "kubernetes-admin"}}],
    "current-context": "kubernetes-admin@test",
})

INIT_OUTPUT = (
    "Your Kubernetes control-plane has initialized successfully!\n\n"
    "  kubeadm join kubernetes-masters:6442 --token abc.def \\\n"
    "\t--discovery-token-ca-cert-hash sha256:00 \\\n\t--control-plane\n\n"
    "kubeadm join kubernetes-masters:6442 --token abc.def \\\n"
    "\t--discovery-token-ca-cert-hash sha256:00\n"
)
JOIN = "kubeadm join kubernetes-masters:6442 --token abc.def --discovery-token-ca-cert-hash sha256:00"
UBUNTU = CommandResult(0, 'NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\n')


class FakeKube:
    def __init__(self, nodes):
        self.nodes = list(nodes)
        self.calls = []

    def list_node_names(self):
        return list(self.nodes)

    def _require(self, name):
        # the API server answers 404 for a node that never registered
        if name not in self.nodes:
            raise ApiException(status=404, reason="Not Found")

    def label_node(self, name, labels):
        self._require(name)
        self.calls.append(("label", name, labels))

    def taint_node(self, name, key, value, effect):
        self._require(name)
        self.calls.append(("taint", name, key, effect))

    def remove_taint(self, name, key):
        self._require(name)
        self.calls.append(("untaint", name, key))
        return True

    def _wait(self, kind):
        return lambda ns, name, timeout=300: self.calls.append(("wait", kind, ns, name))

    @property
    def wait_for_deployment(self):
        return self._wait("deployment")

    @property
    def wait_for_daemonset(self):
        return self._wait("daemonset")


class Fleet:
    """Runners keyed by node name plus a node factory that uses them."""

    def __init__(self, fake_runner, names):
        self.runners = {n: fake_runner() for n in names}
        self.credentials = {}

    def factory(self, definition, credentials, log_folder):
        self.credentials[definition.name] = credentials
        return NodeProxy.from_definition(definition, self.runners[definition.name])


def _first_control_plane_files(runner):
    for path in CONTROL_PLANE_FILES:
        runner.files[path] = f"content of {path}"
    runner.files[ADMIN_CONF] = ADMIN_YAML
    runner.respond("kubeadm init", CommandResult(0, INIT_OUTPUT))


@pytest.fixture
def login(cluster, tmp_path: Path):
    lg = ClusterLogin.create(
        tmp_path / "logins" / "root@test.yaml",
        cluster,
        ssh_username="sysadmin",
        ssh_password="secret",
        ssh_key=SshKey(private_openssh="PRIVATE", public_openssh="ssh-rsa AAAA sysadmin@test"),
    )
    lg.save()
    return lg


# ----------------- helpers -----------------

def test_rename_admin_context():
    doc = yaml.safe_load(rename_admin_context(ADMIN_YAML, "test"))
    assert doc["current-context"] == "root@test"
    assert doc["contexts"][0]["name"] == "root@test"
    assert doc["contexts"][0]["context"]["user"] == "test-root"
    assert doc["users"][0]["name"] == "test-root"


def test_render_kubeadm_config(cluster, make_node):
    from kubeboot.config.models import NodeRole

    first = make_node("cp-1", NodeRole.CONTROL_PLANE)
    docs = list(yaml.safe_load_all(render_kubeadm_config(cluster, first)))
    kinds = [d["kind"] for d in docs]
    assert kinds == ["InitConfiguration", "ClusterConfiguration", "KubeletConfiguration"]
    assert docs[1]["clusterName"] == "test"
    assert docs[1]["networking"]["podSubnet"] == cluster.kubernetes.pod_subnet
    assert docs[0]["localAPIEndpoint"]["advertiseAddress"] == first.address
    # nodes reach the API servers through their local proxy
    assert docs[1]["controlPlaneEndpoint"] == "kubernetes-masters:6442"
    assert docs[1]["apiServer"]["certSANs"] == ["kubernetes-masters", "cp-1", "10.0.1.1"]


# ----------------- prepare -----------------

def test_prepare_controller_happy_path(cluster, login, fake_runner, tmp_path, monkeypatch):
    fleet = Fleet(fake_runner, ["cp-1", "worker-1", "worker-2"])
    for r in fleet.runners.values():
        r.respond("cat /etc/os-release", UBUNTU)
    login.ssh_key = None
    monkeypatch.setattr(kube_setup, "generate_ssh_key", lambda c, u: SshKey(private_openssh="K", public_openssh="ssh-rsa NEW"))

    probes = []
    manager = BareMetalHostingManager(cluster, probe=lambda a, p, t: probes.append((a, p)))
    ctl = create_prepare_controller(
        cluster, login, hosting_manager=manager, state_dir=tmp_path, node_factory=fleet.factory
    )

    assert [s.name for s in ctl.steps] == [
        "configure hosting manager",
        "generate ssh credentials",
        "check node address",
        "wait until online",
        "verify node OS",
        "node credentials",
        "prepare nodes",
    ]

    result = ctl.run()

    assert result.success, result.summary()
    assert len(probes) == 3
    assert manager.wait_seconds == 60
    assert login.ssh_key.public_openssh == "ssh-rsa NEW"
    assert ClusterLogin.load(login.path).ssh_key.public_openssh == "ssh-rsa NEW"
    for name, r in fleet.runners.items():
        assert r.files["/home/sysadmin/.ssh/authorized_keys"] == "ssh-rsa NEW\n"
        assert "/etc/modules-load.d/kubeboot.conf" in r.files
        assert r.count("swapoff -a") == 1
        assert r.closed
        # provisioning connects with the machine password, not the cluster key
        assert fleet.credentials[name].password == "secret"
        assert fleet.credentials[name].private_key is None

    reg = ctl.registry
    assert ("worker-1", "base/packages") in reg.completed("worker-1")


def test_prepare_faults_unsupported_os(cluster, login, fake_runner, tmp_path):
    fleet = Fleet(fake_runner, ["cp-1", "worker-1", "worker-2"])
    for r in fleet.runners.values():
        r.respond("cat /etc/os-release", UBUNTU)
    fleet.runners["worker-2"].respond("cat /etc/os-release", CommandResult(0, "ID=centos\nVERSION_ID=7\n"))

    manager = BareMetalHostingManager(cluster, probe=lambda a, p, t: None)
    ctl = create_prepare_controller(cluster, login, hosting_manager=manager, state_dir=tmp_path, node_factory=fleet.factory)
    result = ctl.run()

    assert list(result.node_faults) == ["worker-2"]
    assert "unsupported operating system" in result.node_faults["worker-2"].message
    assert fleet.runners["worker-2"].count("swapoff") == 0
    assert fleet.runners["worker-1"].count("swapoff") == 1


# ----------------- setup -----------------

def _setup(cluster, login, fleet, tmp_path, kube, **kw):
    return create_setup_controller(
        cluster,
        login,
        state_dir=tmp_path,
        node_factory=fleet.factory,
        kube_factory=lambda path: kube,
        sleep=lambda s: None,
        **kw,
    )


def test_setup_controller_happy_path(cluster, login, fake_runner, tmp_path):
    fleet = Fleet(fake_runner, ["cp-1", "worker-1", "worker-2"])
    cp = fleet.runners["cp-1"]
    _first_control_plane_files(cp)
    kube = FakeKube(["cp-1", "worker-1", "worker-2"])

    ctl = _setup(cluster, login, fleet, tmp_path, kube)
    result = ctl.run()

    assert result.success, result.summary()
    assert cp.count("kubeadm init") == 1
    assert login.setup_details.cluster_join_command == JOIN
    assert login.setup_details.setup_pending is False
    assert set(login.setup_details.control_plane_files) == set(CONTROL_PLANE_FILES)

    # persisted for a later run
    saved = ClusterLogin.load(login.path)
    assert saved.setup_details.setup_pending is False

    for w in ("worker-1", "worker-2"):
        r = fleet.runners[w]
        assert r.count(JOIN) == 1
        assert r.count("podman rm --force") == 2
        assert API_PROXY_MANIFEST in r.files
        assert r.count(HOSTS_ENTRY) == 1
    assert cp.count(JOIN) == 0

    # the first control plane gets its proxy before kubeadm init
    assert cp.count(HOSTS_ENTRY) == 1
    assert API_PROXY_MANIFEST in cp.files
    uploaded = [u[0] for u in cp.uploads]
    assert uploaded.index(API_PROXY_MANIFEST) < uploaded.index(KUBEADM_CONFIG)

    kubeconfig = tmp_path / "kubeconfig" / "test.conf"
    workstation = yaml.safe_load(kubeconfig.read_text())
    assert workstation["current-context"] == "root@test"
    # the proxy host does not resolve off the cluster nodes
    assert workstation["clusters"][0]["cluster"]["server"] == "https://10.0.1.1:6443"
    assert ctl.context.kubeconfig_path == kubeconfig

    assert ("taint", "cp-1", CONTROL_PLANE_TAINT, "NoSchedule") in kube.calls
    assert ("label", "worker-1", {WORKER_ROLE_LABEL: ""}) in kube.calls
    assert ("wait", "daemonset", "calico-system", "calico-node") in kube.calls
    assert ("wait", "deployment", "cert-manager", "cert-manager-webhook") in kube.calls
    assert cp.count("helm --kubeconfig /etc/kubernetes/admin.conf upgrade --install") == 3

    # setup connects with the cluster key
    assert fleet.credentials["worker-1"].private_key == "PRIVATE"


def test_setup_resumes_after_worker_fault(make_cluster, login, fake_runner, tmp_path):
    cluster = make_cluster(setup={"ssh_password": "secret", "join_max_attempts": 2})
    login.cluster_definition = cluster
    kube = FakeKube(["cp-1", "worker-1"])

    fleet = Fleet(fake_runner, ["cp-1", "worker-1", "worker-2"])
    _first_control_plane_files(fleet.runners["cp-1"])
    fleet.runners["worker-2"].respond("kubeadm join", CommandResult(1, "", "refused"))

    first = _setup(cluster, login, fleet, tmp_path, kube).run()

    assert list(first.node_faults) == ["worker-2"]
    assert first.steps["join workers"] == StepState.FAILED
    assert first.steps["install cni"] == StepState.DONE
    assert fleet.runners["worker-2"].count("kubeadm join") == 2
    assert login.setup_details.setup_pending is True

    # next run in the same state folder, worker-2 is fixed
    again = Fleet(fake_runner, ["cp-1", "worker-1", "worker-2"])
    rejoined = FakeKube(["cp-1", "worker-1", "worker-2"])
    second = _setup(cluster, login, again, tmp_path, rejoined, resumed=True).run()

    assert second.success, second.summary()
    assert again.runners["cp-1"].count("kubeadm init") == 0
    assert again.runners["worker-1"].count("kubeadm join") == 0
    assert again.runners["worker-2"].count("kubeadm join") == 1
    # labels and taints are reapplied for nodes that joined on this run
    assert ("label", "worker-2", {WORKER_ROLE_LABEL: ""}) in rejoined.calls
    assert login.setup_details.setup_pending is False


def test_setup_continues_after_control_plane_join_fault(make_cluster, fake_runner, tmp_path):
    cluster = make_cluster(control_planes=2, workers=1, setup={"ssh_password": "secret", "join_max_attempts": 1})
    login = ClusterLogin.create(tmp_path / "login.yaml", cluster, ssh_password="secret")
    # cp-2 never registers with the API server
    kube = FakeKube(["cp-1", "worker-1"])

    fleet = Fleet(fake_runner, ["cp-1", "cp-2", "worker-1"])
    _first_control_plane_files(fleet.runners["cp-1"])
    fleet.runners["cp-2"].respond("kubeadm join", CommandResult(1, "", "refused"))

    result = _setup(cluster, login, fleet, tmp_path, kube).run()

    assert result.global_error is None
    assert list(result.node_faults) == ["cp-2"]
    assert result.steps["join control plane"] == StepState.FAILED
    assert result.steps["control-plane taints"] == StepState.DONE
    assert result.steps["install cni"] == StepState.DONE
    assert result.steps["finish setup"] == StepState.DONE
    assert ("taint", "cp-1", CONTROL_PLANE_TAINT, "NoSchedule") in kube.calls
    assert not [c for c in kube.calls if c[1] == "cp-2"]
    assert fleet.runners["worker-1"].count(JOIN) == 1
    assert login.setup_details.setup_pending is True


def test_setup_fails_globally_when_init_output_has_no_join(cluster, login, fake_runner, tmp_path):
    fleet = Fleet(fake_runner, ["cp-1", "worker-1", "worker-2"])
    fleet.runners["cp-1"].respond("kubeadm init", CommandResult(0, "something else"))

    result = _setup(cluster, login, fleet, tmp_path, FakeKube([])).run()

    assert result.failed_step == "initialize control plane"
    assert all(fleet.runners[w].count("kubeadm join") == 0 for w in ("worker-1", "worker-2"))
    assert login.setup_details.setup_pending is True


def test_pods_allowed_on_control_plane_without_workers(make_cluster, fake_runner, tmp_path):
    cluster = make_cluster(control_planes=1, workers=0)
    login = ClusterLogin.create(tmp_path / "login.yaml", cluster, ssh_password="secret")
    fleet = Fleet(fake_runner, ["cp-1"])
    _first_control_plane_files(fleet.runners["cp-1"])
    kube = FakeKube(["cp-1"])

    assert _setup(cluster, login, fleet, tmp_path, kube).run().success
    assert ("untaint", "cp-1", CONTROL_PLANE_TAINT) in kube.calls


# ----------------- remove -----------------

def test_remove_controller_resets_nodes_and_state(cluster, login, fake_runner, tmp_path):
    (tmp_path / "kubeconfig").mkdir()
    (tmp_path / "kubeconfig" / "test.conf").write_text("x")
    fleet = Fleet(fake_runner, ["cp-1", "worker-1", "worker-2"])

    ctl = create_remove_controller(
        cluster,
        login,
        hosting_manager=BareMetalHostingManager(cluster),
        state_dir=tmp_path,
        node_factory=fleet.factory,
    )
    result = ctl.run()

    assert result.success
    assert all(r.count("kubeadm reset -f") == 1 for r in fleet.runners.values())
    assert all(r.count(f"/^{HOSTS_ENTRY}$/d") == 1 for r in fleet.runners.values())
    assert not login.path.exists()
    assert not (tmp_path / "kubeconfig" / "test.conf").exists()
