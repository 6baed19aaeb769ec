import logging

import pytest

from kubeboot.config.models import NodeRole
from kubeboot.errors import RemoteCommandError
from kubeboot.nodes.ssh import CommandResult
from kubeboot.setup.registry import StepRegistry


def test_first_fault_wins(make_node):
    node = make_node("w1")
    assert not node.is_faulted

    node.set_fault("disk full", step="prepare")
    current = node.set_fault("later problem", step="join")

    assert current.message == "disk full"
    assert node.fault.step == "prepare"
    assert str(node.fault) == "[prepare] disk full"
    assert node.status == "FAULT: later problem"

    node.clear_fault()
    assert node.fault is None


def test_is_control_plane(make_node):
    assert make_node("cp", NodeRole.CONTROL_PLANE).is_control_plane
    assert not make_node("w").is_control_plane


def test_sudo_command_checks_exit_code(make_node):
    node = make_node("w1")
    node.runner.respond("apt-get", CommandResult(100, "", "E: Unable to locate package"))

    with pytest.raises(RemoteCommandError) as ei:
        node.sudo_command("apt-get install -y nothing")

    err = ei.value
    assert err.exit_code == 100
    assert err.node_name == "w1"
    assert "Unable to locate package" in str(err)
    assert node.runner.sudo_flags == [True]


def test_run_command_unchecked_returns_result(make_node):
    node = make_node("w1")
    node.runner.respond("test -f", CommandResult(1))
    assert node.run_command("test -f /etc/x").exit_code == 1


def test_redacted_commands_never_reach_logs_or_errors(make_node, caplog):
    node = make_node("w1")
    node.runner.respond("chpasswd", CommandResult(1, "", "bad"))

    with caplog.at_level(logging.DEBUG, logger="kubeboot.node.w1"):
        with pytest.raises(RemoteCommandError) as ei:
            node.sudo_command("echo 'sysadmin:hunter2' | chpasswd", redact=True)

    assert "hunter2" not in caplog.text
    assert "hunter2" not in str(ei.value)
    assert "<redacted>" in str(ei.value)


def test_idempotency_requires_registry(make_node):
    node = make_node("w1")
    with pytest.raises(RuntimeError, match="not attached"):
        node.invoke_idempotent("base/swap", lambda: None)


def test_invoke_idempotent_scoped_per_node(make_node):
    registry = StepRegistry()
    a, b = make_node("a"), make_node("b")
    a.registry = b.registry = registry
    calls = []

    assert a.invoke_idempotent("base/swap", lambda: calls.append("a"))
    assert not a.invoke_idempotent("base/swap", lambda: calls.append("a"))
    assert b.invoke_idempotent("base/swap", lambda: calls.append("b"))

    assert calls == ["a", "b"]
    assert a.is_complete("base/swap")


def test_file_transfer_and_online_delegate_to_runner(make_node):
    node = make_node("w1", online=False)
    node.upload_text("/etc/a", "x", permissions="644")

    assert node.download_text("/etc/a") == "x"
    assert node.runner.uploads == [("/etc/a", "x", "644", None)]
    assert node.is_online() is False

    node.close()
    assert node.runner.closed
