# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/deploy/orchestrator.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from converge.config.models import ConvergeConfig, Node, Role
from converge.errors import ConvergeError
from converge.observers.dispatcher import EventBus
from converge.observers.events import (
    NodeFinished,
    NodeStarted,
    RunCancelled,
    RunSummary,
    TokenIssued,
    new_ctx,
    now_ts,
    stamp,
)
from converge.report import ExecutionResult, RunReport, Status
from converge.runner.base import CommandRunner
from converge.security.tokens import ClusterJoinToken, JoinTokenBroker, issue_join_token, token_from_credential
from converge.steps.base import StepContext
from converge.steps.catalog import default_registry
from converge.steps.host import HostOps
from converge.steps.registry import Plan, StepRegistry

from .executor import execute, failed_result

log = logging.getLogger("converge")

RunnerFactory = Callable[[Node], CommandRunner]
ISSUE_TOKEN = "issue-join-token"
CONNECT = "connect"
JOIN_CREDENTIAL = "cluster.join"


@dataclass
class RunOptions:
    dry_run: bool = False
    max_parallel: int = 0              # 0 = one worker thread per node
    timeout: Optional[float] = None    # readiness timeout override, seconds
    interval: Optional[float] = None


class Orchestrator:
    """
    Converges a set of nodes: masters first (sequentially), then every other
    node in parallel. A failure halts only the node it happened on.
    """

    def __init__(
        self,
        config: ConvergeConfig,
        runner_factory: RunnerFactory,
        *,
        options: Optional[RunOptions] = None,
        bus: Optional[EventBus] = None,
        registry: Optional[StepRegistry] = None,
        broker: Optional[JoinTokenBroker] = None,
        cancel: Optional[threading.Event] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.config = config
        self.runner_factory = runner_factory
        self.options = options or RunOptions()
        self.bus = bus or EventBus([])
        self.run_ctx = run_ctx or new_ctx(env=config.environment, context=config.cluster.name)
        self.registry = registry or default_registry(self.bus, self.run_ctx)
        self.broker = broker or JoinTokenBroker()
        self.cancel = cancel or threading.Event()
        self._secrets: List[str] = []
        if config.tailscale and config.tailscale.auth_key:
            self._secrets.append(config.tailscale.auth_key.get_secret_value())
        if config.cluster.join:
            self._secrets.append(config.cluster.join.token.get_secret_value())

    # ------------------------------------------------------------------
    def _ctx(self, node: Node, runner: CommandRunner) -> StepContext:
        t = self.config.timeouts
        return StepContext(
            node=node,
            config=self.config,
            host=HostOps(runner, kubeconfig=self.config.cluster.kubeconfig_path),
            tokens=self.broker,
            bus=self.bus,
            run_ctx=self.run_ctx,
            timeout=self.options.timeout or t.readiness_seconds,
            interval=self.options.interval or t.poll_interval_seconds,
        )

    def _publish(self, token: ClusterJoinToken, issuer: str) -> None:
        self._secrets.append(token.token.get_secret_value())
        self.broker.publish(token)
        self.bus.emit(
            TokenIssued(
                issuer=issuer,
                expires_at=token.expires_at.isoformat(timespec="seconds"),
                **stamp(self.run_ctx),
            )
        )

    def _issue_token(self, node: Node, runner: CommandRunner) -> Optional[ExecutionResult]:
        """Create and publish the run's join token on *node*; a failure comes back as a result."""
        try:
            token = issue_join_token(
                runner,
                ttl_hours=self.config.cluster.token_ttl_hours,
                kubeconfig=self.config.cluster.kubeconfig_path,
            )
        except ConvergeError as e:
            log.error("[%s] could not issue join token: %s", node.hostname, e)
            return failed_result(ISSUE_TOKEN, node.hostname, e)
        self._publish(token, node.hostname)
        return None

    def _converge_node(self, plan: Plan, *, issue_token: bool = False) -> Optional[Tuple[List[ExecutionResult], bool]]:
        """
        Returns (results, finished) where finished is False when cancellation
        stopped the plan midway, or None when the node was never started.
        """
        node = plan.node
        if self.cancel.is_set():
            return None

        try:
            runner = self.runner_factory(node)
        except Exception as e:
            log.error("[%s] cannot connect: %s", node.hostname, e)
            self.bus.emit(NodeFinished(node=node.hostname, status="FAILED", failed_step=CONNECT, **stamp(self.run_ctx)))
            return [failed_result(CONNECT, node.hostname, e)], True

        try:
            self.bus.emit(NodeStarted(node=node.hostname, role=node.role.value, steps=plan.ids, **stamp(self.run_ctx)))
            results = execute(plan, self._ctx(node, runner), dry_run=self.options.dry_run, cancel=self.cancel)
            completed = len(results) == len(plan) and not any(r.failed for r in results)
            if completed and issue_token and not self.options.dry_run:
                failure = self._issue_token(node, runner)
                if failure is not None:
                    results.append(failure)
                    completed = False
        finally:
            runner.close()

        failed = next((r for r in results if r.failed), None)
        status = "FAILED" if failed else ("CONVERGED" if completed else "CANCELLED")
        self.bus.emit(
            NodeFinished(
                node=node.hostname,
                status=status,
                failed_step=failed.step_id if failed else None,
                **stamp(self.run_ctx),
            )
        )
        return results, completed or failed is not None

    def _token_without_master(self) -> List[ExecutionResult]:
        """Configured join credential if there is one, else a fresh token from the inventory master."""
        cluster = self.config.cluster
        if cluster.join:
            token = token_from_credential(
                cluster.join,
                endpoint=cluster.join.endpoint or self.config.control_plane_endpoint(),
                ttl_hours=cluster.token_ttl_hours,
            )
            self._publish(token, JOIN_CREDENTIAL)
            return []

        masters = self.config.masters()
        if not masters:
            log.warning("no master in inventory; joining nodes will have no token")
            return []
        master = masters[0]
        try:
            runner = self.runner_factory(master)
        except Exception as e:
            return [failed_result(ISSUE_TOKEN, master.hostname, e)]
        try:
            failure = self._issue_token(master, runner)
        finally:
            runner.close()
        return [failure] if failure else []

    def _converge_parallel(
        self,
        nodes: Sequence[Node],
        plans: Dict[str, Plan],
        record: Callable[[Node, Optional[Tuple[List[ExecutionResult], bool]]], None],
    ) -> None:
        workers = self.options.max_parallel or len(nodes)
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="converge")
        try:
            futures = [(n, pool.submit(self._converge_node, plans[n.hostname])) for n in nodes]
            for n, fut in futures:
                record(n, fut.result())
        finally:
            # queued nodes never start; running ones stop at their next step boundary
            pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    def run(self, nodes: Sequence[Node]) -> RunReport:
        report = RunReport(run_id=self.run_ctx["run_id"], started_at=now_ts(), dry_run=self.options.dry_run)

        # plan errors surface before any node is touched
        plans: Dict[str, Plan] = {n.hostname: self.registry.plan_for(n) for n in nodes}
        masters = [n for n in nodes if n.role == Role.MASTER]
        others = [n for n in nodes if n.role != Role.MASTER]
        needs_token = any("join-cluster" in plans[n.hostname].ids for n in others)

        recorded: Set[str] = set()

        def record(node: Node, outcome: Optional[Tuple[List[ExecutionResult], bool]]) -> None:
            recorded.add(node.hostname)
            if outcome is None:
                report.cancelled_nodes.append(node.hostname)
                return
            results, finished = outcome
            report.add(results)
            if not finished:
                report.cancelled_nodes.append(node.hostname)

        try:
            # 1) control plane
            for m in masters:
                issue = needs_token and self.broker.current is None
                record(m, self._converge_node(plans[m.hostname], issue_token=issue))

            # 2) token for a run without a master
            if needs_token and not masters and not self.options.dry_run and not self.cancel.is_set():
                report.add(self._token_without_master())

            # 3) everything else, in parallel
            if others:
                self._converge_parallel(others, plans, record)
        except KeyboardInterrupt:
            # second Ctrl-C: stop waiting and report what finished
            self.cancel.set()
            pending = [n.hostname for n in nodes if n.hostname not in recorded]
            log.warning("interrupted; not waiting for %s", ", ".join(pending) or "any node")
            report.cancelled_nodes.extend(pending)

        report.finished_at = now_ts()
        report.secrets = list(self._secrets)

        if report.cancelled_nodes:
            self.bus.emit(RunCancelled(pending_nodes=list(report.cancelled_nodes), **stamp(self.run_ctx)))
        self.bus.emit(
            RunSummary(
                applied=report.count(Status.APPLIED),
                skipped=report.count(Status.SKIPPED),
                failed=report.count(Status.FAILED),
                cancelled=len(report.cancelled_nodes),
                **stamp(self.run_ctx),
            )
        )
        log.info("run %s finished: %s", report.run_id, report.summary())
        return report


def converge_cluster(
    config: ConvergeConfig,
    nodes: Sequence[Node],
    runner_factory: RunnerFactory,
    options: Optional[RunOptions] = None,
    bus: Optional[EventBus] = None,
    **kwargs,
) -> RunReport:
    return Orchestrator(config, runner_factory, options=options, bus=bus, **kwargs).run(nodes)
