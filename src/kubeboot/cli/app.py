# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/cli/app.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from kubeboot.config.loader import load_cluster_definition
from kubeboot.errors import KubeBootError
from kubeboot.hosting.factory import get_hosting_manager
from kubeboot.logging.log import init_logging
from kubeboot.login import DEFAULT_STATE_DIR, ClusterLogin, load_or_create_login, login_path
from kubeboot.observers.console import ConsoleObserver
from kubeboot.observers.dispatcher import EventBus
from kubeboot.observers.jsonfile import JsonFileObserver
from kubeboot.observers.logger import LoggerObserver
from kubeboot.setup.controller import RunResult, SetupController
from kubeboot.setup.kube_setup import (
    create_prepare_controller,
    create_remove_controller,
    create_setup_controller,
)


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="kubeboot: Kubernetes cluster bootstrap CLI")

EXIT_GLOBAL_FAILURE = 1
EXIT_NODE_FAULTS = 2

ConfigArg = typer.Argument(..., exists=True, dir_okay=False, help="Cluster definition YAML")
MaxParallelOpt = typer.Option(None, "--max-parallel", min=1, help="Override setup.max_parallel")
DebugOpt = typer.Option(False, "--debug", help="Debug output on the console")
StateDirOpt = typer.Option(None, "--state-dir", help="State folder (default ~/.kubeboot)")


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _session(state_dir: Optional[Path], debug: bool):
    state_dir = state_dir or DEFAULT_STATE_DIR
    logger, run_id, log_path = init_logging(base_dir=state_dir / "logs", verbose=debug)

    bus = EventBus(observers=[
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(state_dir / "logs" / f"{run_id}.jsonl"),
    ])

    typer.echo("")
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")
    return state_dir, run_id, bus


def _load(config: Path):
    try:
        return load_cluster_definition(config)
    except KubeBootError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(EXIT_GLOBAL_FAILURE)


def _report(controller: SetupController, result: RunResult) -> int:
    typer.echo("")
    typer.echo(controller.snapshot().render())
    typer.echo("")

    if result.global_error is not None:
        typer.echo(f"[{result.failed_step}] {result.global_error}", err=True)
    for name, fault in sorted(result.node_faults.items()):
        typer.echo(f"  FAULTED {name}: {fault}", err=True)

    if result.global_error is not None:
        return EXIT_GLOBAL_FAILURE
    if result.node_faults:
        return EXIT_NODE_FAULTS
    return 0


def _run(controller: SetupController) -> int:
    return _report(controller, controller.run())


def _prepare(config: Path, max_parallel: Optional[int], debug: bool, state_dir: Optional[Path]) -> int:
    cluster = _load(config)
    state_dir, run_id, bus = _session(state_dir, debug)
    login, resumed = load_or_create_login(cluster, login_path(cluster.name, state_dir))
    try:
        controller = create_prepare_controller(
            cluster,
            login,
            resumed=resumed,
            state_dir=state_dir,
            bus=bus,
            run_id=run_id,
            max_parallel=max_parallel,
            debug=debug,
        )
    except KubeBootError as e:
        typer.echo(str(e), err=True)
        return EXIT_GLOBAL_FAILURE
    return _run(controller)


def _setup(config: Path, max_parallel: Optional[int], debug: bool, state_dir: Optional[Path]) -> int:
    cluster = _load(config)
    state_dir, run_id, bus = _session(state_dir, debug)
    login, resumed = load_or_create_login(cluster, login_path(cluster.name, state_dir))
    controller = create_setup_controller(
        cluster,
        login,
        resumed=resumed,
        state_dir=state_dir,
        bus=bus,
        run_id=run_id,
        max_parallel=max_parallel,
        debug=debug,
    )
    return _run(controller)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def prepare(
    config: Path = ConfigArg,
    max_parallel: Optional[int] = MaxParallelOpt,
    debug: bool = DebugOpt,
    state_dir: Optional[Path] = StateDirOpt,
):
    """Provision and prepare the cluster nodes."""
    raise typer.Exit(_prepare(config, max_parallel, debug, state_dir))


@app.command()
def setup(
    config: Path = ConfigArg,
    max_parallel: Optional[int] = MaxParallelOpt,
    debug: bool = DebugOpt,
    state_dir: Optional[Path] = StateDirOpt,
):
    """Bootstrap Kubernetes on prepared nodes (resumes a pending setup)."""
    raise typer.Exit(_setup(config, max_parallel, debug, state_dir))


@app.command()
def deploy(
    config: Path = ConfigArg,
    max_parallel: Optional[int] = MaxParallelOpt,
    debug: bool = DebugOpt,
    state_dir: Optional[Path] = StateDirOpt,
):
    """prepare, then setup."""
    code = _prepare(config, max_parallel, debug, state_dir)
    if code != 0:
        raise typer.Exit(code)
    raise typer.Exit(_setup(config, max_parallel, debug, state_dir))


@app.command()
def remove(
    config: Path = ConfigArg,
    max_parallel: Optional[int] = MaxParallelOpt,
    debug: bool = DebugOpt,
    state_dir: Optional[Path] = StateDirOpt,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Reset every node and remove the local cluster state."""
    cluster = _load(config)
    if not yes:
        typer.confirm(f"Remove cluster '{cluster.name}'?", abort=True)

    state_dir, run_id, bus = _session(state_dir, debug)
    login = ClusterLogin.load(login_path(cluster.name, state_dir))
    try:
        manager = get_hosting_manager(cluster)
    except KubeBootError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(EXIT_GLOBAL_FAILURE)

    controller = create_remove_controller(
        cluster,
        login,
        hosting_manager=manager,
        state_dir=state_dir,
        bus=bus,
        run_id=run_id,
        max_parallel=max_parallel,
        debug=debug,
    )
    raise typer.Exit(_run(controller))


if __name__ == "__main__":
    app()
