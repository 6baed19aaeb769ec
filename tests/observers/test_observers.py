import json
import logging

import pytest

from kubeboot.observers.console import ConsoleObserver
from kubeboot.observers.dispatcher import EventBus
from kubeboot.observers.events import NodeFaulted, Progress, RunSummary, StepStarted, new_ctx
from kubeboot.observers.jsonfile import JsonFileObserver
from kubeboot.observers.logger import LoggerObserver


def _ctx():
    return {"ts": "2026-01-01T00:00:00Z", "run_id": "r1", "cluster": "lab"}


class Recorder:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


class Broken:
    def notify(self, event):
        raise RuntimeError("observer bug")


def test_new_ctx_generates_run_id():
    ctx = new_ctx("lab")
    assert ctx["cluster"] == "lab"
    assert ctx["run_id"]
    assert ctx["ts"].endswith("Z")
    assert new_ctx("lab", run_id="fixed")["run_id"] == "fixed"


def test_bus_delivers_to_all_even_if_one_fails():
    rec = Recorder()
    bus = EventBus([Broken(), rec])
    ev = StepStarted(**_ctx(), step="join", kind="node", nodes=["w1"])

    bus.emit(ev)

    assert rec.events == [ev]


def test_console_format():
    c = ConsoleObserver()
    assert (
        c.format(Progress(**_ctx(), node="w1", verb="join", message="attempt 2"))
        == "[2026-01-01T00:00:00Z] w1                   join: attempt 2"
    )
    assert c.format(NodeFaulted(**_ctx(), node="w1", step="join", error="boom")).endswith(
        "!!! [w1] join: boom"
    )
    assert c.format(RunSummary(**_ctx(), title="setup", success=False, faulted_nodes=["w1", "w2"])).endswith(
        "setup: FAILED faulted=w1, w2"
    )


def test_console_can_hide_progress():
    c = ConsoleObserver(show_progress=False)
    assert c.format(Progress(**_ctx(), node=None, verb=None, message="x")) is None


def test_json_file_observer_appends_lines(tmp_path):
    path = tmp_path / "logs" / "events.jsonl"
    ob = JsonFileObserver(path)

    ob.notify(StepStarted(**_ctx(), step="init", kind="global", nodes=[]))
    ob.notify(NodeFaulted(**_ctx(), node="w1", step="join", error="boom"))

    rows = [json.loads(line) for line in path.read_text().splitlines()]
    assert [r["type"] for r in rows] == ["StepStarted", "NodeFaulted"]
    assert rows[1]["node"] == "w1"
    assert rows[0]["run_id"] == "r1"


def test_logger_observer(caplog):
    ob = LoggerObserver(logging.getLogger("kubeboot.test"))
    with caplog.at_level(logging.INFO, logger="kubeboot.test"):
        ob.notify(StepStarted(**_ctx(), step="init", kind="global", nodes=[]))
    assert "[EVENT] StepStarted" in caplog.text
    assert "step=init" in caplog.text
    # the run log is per run, so the context fields are left out
    assert "run_id=" not in caplog.text
    assert "cluster=" not in caplog.text
    assert caplog.records[0].levelno == logging.INFO


def test_logger_observer_logs_failures_at_error(caplog):
    ob = LoggerObserver(logging.getLogger("kubeboot.test"))
    with caplog.at_level(logging.INFO, logger="kubeboot.test"):
        ob.notify(NodeFaulted(**_ctx(), node="w1", step="join", error="boom"))
        ob.notify(RunSummary(**_ctx(), title="setup", success=False, faulted_nodes=["w1"]))
        ob.notify(RunSummary(**_ctx(), title="setup", success=True, faulted_nodes=[]))

    assert [r.levelno for r in caplog.records] == [logging.ERROR, logging.ERROR, logging.INFO]
    assert "[EVENT] NodeFaulted: node=w1, step=join, error=boom" in caplog.text


def test_bus_rejects_objects_without_notify():
    bus = EventBus()
    with pytest.raises(TypeError):
        bus.subscribe(object())
