# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/cli/helper.py
from __future__ import annotations

import contextlib
import logging
import os
import re
import signal
import threading
from pathlib import Path
from typing import Iterator, Optional

import typer

from converge.config.loader import DEFAULT_CONFIG
from converge.config.models import ConvergeConfig, Node
from converge.deploy.orchestrator import RunnerFactory
from converge.observers.console import ConsoleObserver
from converge.observers.dispatcher import EventBus
from converge.observers.jsonfile import JsonFileObserver
from converge.observers.logger import LoggerObserver
from converge.report import RunReport
from converge.runner.base import CommandRunner
from converge.runner.local import LocalRunner
from converge.runner.ssh import open_ssh

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$", re.I)
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def _default_workspace_root() -> Path:
    return Path.cwd()


def workspace_root() -> Path:
    return Path(os.environ.get("WORKSPACE_ROOT", _default_workspace_root()))


def config_path(explicit: Optional[Path] = None) -> Path:
    """--config, else <WORKSPACE_ROOT>/cloud-config/cluster.yaml."""
    return explicit or workspace_root() / DEFAULT_CONFIG


def parse_duration(text: Optional[str]) -> Optional[float]:
    """``300``, ``300s``, ``5m``, ``1h`` -> seconds."""
    if text is None:
        return None
    m = _DURATION.match(text)
    if not m:
        raise typer.BadParameter(f"invalid duration '{text}' (use e.g. 300, 300s, 5m, 1h)")
    seconds = float(m.group(1)) * _UNITS[m.group(2).lower()]
    if seconds <= 0:
        raise typer.BadParameter("duration must be positive")
    return seconds


def runner_factory(cfg: ConvergeConfig, *, local_node: Optional[str] = None) -> RunnerFactory:
    """
    Runners per node. Only *local_node* (the machine converge runs on) gets a
    LocalRunner; every other node, such as the master asked for a join token,
    is reached over SSH.
    """
    command_timeout = cfg.timeouts.command_seconds

    def _make(node: Node) -> CommandRunner:
        if node.hostname == local_node:
            return LocalRunner(label=node.hostname, default_timeout=command_timeout)
        return open_ssh(node, cfg.ssh_for(node), command_timeout=command_timeout)

    return _make


def build_bus(logger: logging.Logger, run_id: str, *, verbose: bool = False) -> EventBus:
    observers = [
        LoggerObserver(logger),
        JsonFileObserver(Path.home() / ".converge/logs" / f"{run_id}.jsonl"),
    ]
    if verbose:
        observers.insert(0, ConsoleObserver())
    return EventBus(observers=observers)


@contextlib.contextmanager
def cancel_on_sigint(cancel: threading.Event) -> Iterator[threading.Event]:
    """
    First Ctrl-C requests cooperative cancellation (in-flight steps finish).
    A second one stops waiting: the run reports what finished, and the
    process exits once in-flight commands return.
    """
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):
        if cancel.is_set():
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        typer.secho("\ncancelling: waiting for in-flight steps to finish (Ctrl-C again to stop waiting)", fg="yellow")
        cancel.set()

    signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def print_report(report: RunReport) -> None:
    typer.echo("")
    for r in report.results:
        mark = {"Applied": "+", "Skipped": "=", "Failed": "!"}[r.status.value]
        detail = r.kind.value if r.kind else r.output.splitlines()[0] if r.output else ""
        typer.echo(f"  {mark} {r.node:<20} {r.step_id:<26} {r.status.value:<8} {detail}")
    for hostname in report.cancelled_nodes:
        typer.echo(f"  - {hostname:<20} {'(cancelled)':<26}")

    failures = report.failures()
    if failures:
        typer.echo("")
        typer.secho("Failures:", fg="red", bold=True)
        for r in failures:
            typer.echo(r.redacted(report.secrets).describe())

    typer.echo("")
    colour = "green" if report.exit_code() == 0 else "red"
    typer.secho(f"{report.summary()}  (exit {report.exit_code()})", fg=colour, bold=True)
