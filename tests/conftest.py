import threading
from typing import Dict, List, Optional

import pytest

from kubeboot.config.models import ClusterDefinition, NodeRole
from kubeboot.nodes.proxy import NodeProxy
from kubeboot.nodes.ssh import CommandResult


# ----------------- Fake remote runner -----------------

class FakeRunner:
    """
    In-memory RemoteRunner.

    ``respond(fragment, *results)`` scripts the answers for any command that
    contains ``fragment``: results are consumed in order and the last one
    repeats. A result may be an exception instance, which is raised.
    """

    def __init__(self, online=True, files: Optional[Dict[str, str]] = None):
        self.online = online
        self.files: Dict[str, str] = dict(files or {})
        self.uploads: List[tuple] = []
        self.commands: List[str] = []
        self.sudo_flags: List[bool] = []
        self.closed = False
        self._responses: Dict[str, list] = {}
        self._lock = threading.Lock()

    def respond(self, fragment: str, *results) -> None:
        self._responses[fragment] = list(results)

    def count(self, fragment: str) -> int:
        return sum(1 for c in self.commands if fragment in c)

    def run(self, cmd, *, sudo=False, timeout=None):
        with self._lock:
            self.commands.append(cmd)
            self.sudo_flags.append(sudo)
            for fragment, queue in self._responses.items():
                if fragment in cmd:
                    r = queue.pop(0) if len(queue) > 1 else queue[0]
                    break
            else:
                r = CommandResult(0)
        if isinstance(r, BaseException):
            raise r
        return r

    def upload_text(self, remote_path, content, *, permissions=None, owner=None):
        with self._lock:
            self.uploads.append((remote_path, content, permissions, owner))
            self.files[remote_path] = content

    def download_text(self, remote_path):
        with self._lock:
            if remote_path not in self.files:
                raise IOError(f"download of {remote_path} failed")
            return self.files[remote_path]

    def is_reachable(self):
        return self.online() if callable(self.online) else self.online

    def close(self):
        self.closed = True


@pytest.fixture
def make_node():
    counter = iter(range(10, 250))

    def _make(name, role=NodeRole.WORKER, runner=None, **runner_kw):
        return NodeProxy(name, f"10.0.0.{next(counter)}", runner or FakeRunner(**runner_kw), role=role)

    return _make


@pytest.fixture
def three_nodes(make_node):
    """One control plane, two workers."""
    return [
        make_node("cp-1", NodeRole.CONTROL_PLANE),
        make_node("worker-1"),
        make_node("worker-2"),
    ]


def cluster_definition(control_planes=1, workers=2, **extra) -> ClusterDefinition:
    nodes = [
        {"name": f"cp-{i}", "address": f"10.0.1.{i}", "role": "control-plane"}
        for i in range(1, control_planes + 1)
    ] + [
        {"name": f"worker-{i}", "address": f"10.0.2.{i}"}
        for i in range(1, workers + 1)
    ]
    data = {"name": "test", "nodes": nodes, "setup": {"ssh_password": "secret"}}
    data.update(extra)
    return ClusterDefinition.model_validate(data)


@pytest.fixture
def make_cluster():
    return cluster_definition


@pytest.fixture
def cluster():
    return cluster_definition()


@pytest.fixture
def fake_runner():
    return FakeRunner
