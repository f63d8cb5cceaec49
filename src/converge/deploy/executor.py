# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/deploy/executor.py
from __future__ import annotations

import logging
import threading
import time
from typing import List, Optional

from converge.errors import ConvergeError, Kind
from converge.observers.events import StepApplied, StepFailed, StepSkipped, StepStarted, now_ts
from converge.report import ExecutionResult, Status
from converge.steps.base import Step, StepContext
from converge.steps.registry import Plan

log = logging.getLogger("converge")


def failed_result(step_id: str, node: str, exc: BaseException, *, started: Optional[str] = None, duration_ms: int = 0) -> ExecutionResult:
    if isinstance(exc, ConvergeError):
        return ExecutionResult(
            step_id=step_id,
            node=node,
            status=Status.FAILED,
            kind=exc.kind,
            output=exc.stderr,
            error=str(exc),
            command=exc.command,
            exit_code=exc.exit_code,
            started_at=started or now_ts(),
            duration_ms=duration_ms,
        )
    return ExecutionResult(
        step_id=step_id,
        node=node,
        status=Status.FAILED,
        kind=Kind.UNEXPECTED,
        error=f"{type(exc).__name__}: {exc}",
        started_at=started or now_ts(),
        duration_ms=duration_ms,
    )


def run_step(step: Step, ctx: StepContext, *, dry_run: bool = False) -> ExecutionResult:
    """check, then (unless converged or dry-run) apply. Never raises for step errors."""
    node = ctx.node.hostname
    started, t0 = now_ts(), time.time()
    ctx.emit(StepStarted, node=node, step=step.id)
    log.debug("[%s] %s: checking", node, step.id)

    try:
        if step.check(ctx):
            ctx.emit(StepSkipped, node=node, step=step.id, reason=Kind.ALREADY_CONVERGED.value)
            return ExecutionResult(
                step_id=step.id,
                node=node,
                status=Status.SKIPPED,
                kind=Kind.ALREADY_CONVERGED,
                started_at=started,
                duration_ms=int((time.time() - t0) * 1000),
            )
        if dry_run:
            ctx.emit(StepSkipped, node=node, step=step.id, reason="would apply")
            return ExecutionResult(
                step_id=step.id,
                node=node,
                status=Status.SKIPPED,
                output="would apply",
                started_at=started,
                duration_ms=int((time.time() - t0) * 1000),
            )

        log.info("[%s] %s: applying (%s)", node, step.id, step.description)
        change = step.apply(ctx)
    except ConvergeError as e:
        result = failed_result(step.id, node, e, started=started, duration_ms=int((time.time() - t0) * 1000))
    except Exception as e:
        log.exception("[%s] %s: unexpected error", node, step.id)
        result = failed_result(step.id, node, e, started=started, duration_ms=int((time.time() - t0) * 1000))
    else:
        duration_ms = int((time.time() - t0) * 1000)
        ctx.emit(StepApplied, node=node, step=step.id, changes=list(change.actions), duration_ms=duration_ms)
        return ExecutionResult(
            step_id=step.id,
            node=node,
            status=Status.APPLIED,
            output="\n".join(change.actions),
            started_at=started,
            duration_ms=duration_ms,
        )

    ctx.emit(
        StepFailed,
        node=node,
        step=step.id,
        kind=result.kind.value,
        error=result.error or "",
        command=result.command,
        exit_code=result.exit_code,
    )
    log.error("[%s] %s failed (%s): %s", node, step.id, result.kind.value, result.error)
    return result


def execute(
    plan: Plan,
    ctx: StepContext,
    *,
    dry_run: bool = False,
    cancel: Optional[threading.Event] = None,
) -> List[ExecutionResult]:
    """
    Run *plan* in order on one node. Halts at the first Failed result.
    Cancellation is honoured between steps; a step already applying runs
    to completion.
    """
    results: List[ExecutionResult] = []
    for step in plan:
        if cancel is not None and cancel.is_set():
            log.warning("[%s] cancelled before %s", ctx.node.hostname, step.id)
            break
        result = run_step(step, ctx, dry_run=dry_run)
        results.append(result)
        if result.failed:
            break
    return results
