# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/cli/app.py
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import List, Optional

import typer

from converge.cli.helper import (
    build_bus,
    cancel_on_sigint,
    config_path,
    parse_duration,
    print_report,
    runner_factory,
)
from converge.config.loader import load_config
from converge.config.models import ConvergeConfig, Node, Role
from converge.deploy.orchestrator import RunOptions, converge_cluster
from converge.errors import ConfigError, ConvergeError, CyclicDependencyError, DuplicateStepID, UnknownDependencyError, exit_code_for
from converge.logging.log import init_logging
from converge.observers.dispatcher import EventBus
from converge.observers.events import new_ctx
from converge.report import detect_drift
from converge.steps.base import StepContext
from converge.steps.catalog import default_registry
from converge.steps.host import HostOps

app = typer.Typer(help="converge: declarative node convergence for an on-prem Kubernetes cluster")

PLAN_ERRORS = (DuplicateStepID, UnknownDependencyError, CyclicDependencyError)

ConfigOpt = typer.Option(None, "--config", "-c", help="Cluster definition YAML (default cloud-config/cluster.yaml)")


def _load(config: Optional[Path]) -> ConvergeConfig:
    path = config_path(config)
    try:
        return load_config(path)
    except ConfigError as e:
        typer.secho(f"invalid configuration: {e}", fg="red", err=True)
        raise typer.Exit(1)


def _converge(
    cfg: ConvergeConfig,
    nodes: List[Node],
    *,
    dry_run: bool,
    timeout: Optional[str],
    parallel: int,
    report_path: Optional[Path],
    local: bool,
    verbose: bool,
) -> None:
    logger, run_id, log_path = init_logging(verbose=verbose)

    typer.echo("")
    typer.secho("converge run started" + (" (dry run)" if dry_run else ""), bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo(f"  Nodes    : {', '.join(n.hostname for n in nodes)}")
    typer.echo("")

    bus = build_bus(logger, run_id, verbose=verbose)
    run_ctx = new_ctx(env=cfg.environment, context=cfg.cluster.name, run_id=run_id)
    options = RunOptions(dry_run=dry_run, max_parallel=parallel, timeout=parse_duration(timeout))

    with cancel_on_sigint(threading.Event()) as cancel:
        try:
            report = converge_cluster(
                cfg,
                nodes,
                runner_factory(cfg, local_node=nodes[0].hostname if local else None),
                options,
                bus,
                registry=default_registry(bus, run_ctx),
                cancel=cancel,
                run_ctx=run_ctx,
            )
        except PLAN_ERRORS as e:
            typer.secho(f"invalid step plan: {e}", fg="red", err=True)
            raise typer.Exit(1)

    print_report(report)
    if report_path:
        report.write(report_path)
    raise typer.Exit(report.exit_code())


@app.command()
def apply(
    role: Role = typer.Option(..., "--role", help="Role the node must have in the inventory"),
    node: str = typer.Option(..., "--node", help="Inventory hostname to converge"),
    config: Optional[Path] = ConfigOpt,
    dry_run: bool = typer.Option(False, "--dry-run", help="Run checks only; report what would be applied"),
    timeout: Optional[str] = typer.Option(None, "--timeout", help="Readiness timeout (300, 300s, 5m, 1h)"),
    report: Optional[Path] = typer.Option(None, "--report", help="Write the JSON run report here"),
    local: bool = typer.Option(False, "--local", help="Converge this machine directly; other nodes (the token-issuing master) stay on SSH"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Converge a single node."""
    cfg = _load(config)
    try:
        target = cfg.node(node)
    except KeyError as e:
        typer.secho(str(e.args[0]), fg="red", err=True)
        raise typer.Exit(1)
    if target.role != role:
        typer.secho(f"node '{node}' has role {target.role.value}, not {role.value}", fg="red", err=True)
        raise typer.Exit(1)
    parse_duration(timeout)

    _converge(
        cfg, [target],
        dry_run=dry_run, timeout=timeout, parallel=1, report_path=report, local=local, verbose=verbose,
    )


@app.command()
def run(
    config: Optional[Path] = ConfigOpt,
    dry_run: bool = typer.Option(False, "--dry-run"),
    timeout: Optional[str] = typer.Option(None, "--timeout", help="Readiness timeout (300, 300s, 5m, 1h)"),
    parallel: int = typer.Option(0, "--parallel", min=0, help="Max nodes converged at once (0 = all)"),
    report: Optional[Path] = typer.Option(None, "--report"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Converge every node in the inventory: masters first, then the rest in parallel."""
    cfg = _load(config)
    parse_duration(timeout)
    _converge(
        cfg, list(cfg.nodes),
        dry_run=dry_run, timeout=timeout, parallel=parallel, report_path=report, local=False, verbose=verbose,
    )


@app.command()
def plan(
    role: Role = typer.Option(..., "--role"),
    tags: Optional[str] = typer.Option(None, "--tags", help="Comma-separated node tags to plan for"),
):
    """Print the ordered steps a node of ROLE would run."""
    reg = default_registry()
    tag_set = frozenset(t.strip() for t in (tags or "").split(",") if t.strip())
    sample = Node(hostname=f"<{role.value}>", ip="192.0.2.1", role=role, tags=tag_set)
    try:
        steps = reg.plan_for(sample).steps
    except PLAN_ERRORS as e:
        typer.secho(f"invalid step plan: {e}", fg="red", err=True)
        raise typer.Exit(1)
    for i, s in enumerate(steps, 1):
        typer.echo(f"{i:>2}. {s.id:<26} {s.description}")


@app.command()
def drift(
    node: str = typer.Option(..., "--node"),
    config: Optional[Path] = ConfigOpt,
    local: bool = typer.Option(False, "--local"),
    as_json: bool = typer.Option(False, "--json", help="Print the drift report as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run only the read-only checks for NODE and report drift."""
    cfg = _load(config)
    try:
        target = cfg.node(node)
    except KeyError as e:
        typer.secho(str(e.args[0]), fg="red", err=True)
        raise typer.Exit(1)

    logger, run_id, _ = init_logging(verbose=verbose)
    run_ctx = new_ctx(env=cfg.environment, context=cfg.cluster.name, run_id=run_id)
    bus = EventBus([])
    try:
        runner = runner_factory(cfg, local_node=node if local else None)(target)
    except ConvergeError as e:
        typer.secho(f"[{node}] {e}", fg="red", err=True)
        raise typer.Exit(exit_code_for(e.kind))

    try:
        ctx = StepContext(
            node=target,
            config=cfg,
            host=HostOps(runner, kubeconfig=cfg.cluster.kubeconfig_path),
            bus=bus,
            run_ctx=run_ctx,
        )
        result = detect_drift(default_registry().plan_for(target), ctx)
    finally:
        runner.close()

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        for e in result.entries:
            colour = {"converged": "green", "drifted": "yellow", "error": "red"}[e.state]
            line = f"  {e.step_id:<26} " + typer.style(e.state, fg=colour)
            typer.echo(line + (f"  {e.error}" if e.error else ""))
    raise typer.Exit(0 if result.converged() else 2)


if __name__ == "__main__":
    app()
