# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/report.py
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from converge.errors import ConvergeError, Kind, exit_code_for
from converge.runner.base import redact
from converge.steps.base import StepContext
from converge.steps.registry import Plan

log = logging.getLogger("converge")


class Status(str, Enum):
    SKIPPED = "Skipped"
    APPLIED = "Applied"
    FAILED = "Failed"


@dataclass
class ExecutionResult:
    step_id: str
    node: str
    status: Status
    kind: Optional[Kind] = None
    output: str = ""
    error: Optional[str] = None
    command: Optional[str] = None
    exit_code: Optional[int] = None
    started_at: Optional[str] = None
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.status == Status.FAILED

    def redacted(self, secrets: Iterable[str]) -> "ExecutionResult":
        secrets = list(secrets)
        if not secrets:
            return self
        return ExecutionResult(
            step_id=self.step_id,
            node=self.node,
            status=self.status,
            kind=self.kind,
            output=redact(self.output, secrets),
            error=redact(self.error, secrets) if self.error else self.error,
            command=redact(self.command, secrets) if self.command else self.command,
            exit_code=self.exit_code,
            started_at=self.started_at,
            duration_ms=self.duration_ms,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["kind"] = self.kind.value if self.kind else None
        return d

    def describe(self) -> str:
        """Operator-facing one-block description of a failure."""
        lines = [f"{self.node}: step '{self.step_id}' failed ({self.kind.value if self.kind else '-'}): {self.error}"]
        if self.command:
            lines.append(f"  command:   {self.command}")
        if self.exit_code is not None:
            lines.append(f"  exit code: {self.exit_code}")
        if self.output:
            lines.append("  stderr:    " + self.output.strip().replace("\n", "\n             "))
        return "\n".join(lines)


@dataclass
class RunReport:
    run_id: str
    started_at: str
    finished_at: Optional[str] = None
    dry_run: bool = False
    results: List[ExecutionResult] = field(default_factory=list)
    cancelled_nodes: List[str] = field(default_factory=list)
    secrets: List[str] = field(default_factory=list, repr=False)

    def add(self, results: Iterable[ExecutionResult]) -> None:
        self.results.extend(results)

    def count(self, status: Status) -> int:
        return sum(1 for r in self.results if r.status == status)

    def failures(self) -> List[ExecutionResult]:
        return [r for r in self.results if r.failed]

    def exit_code(self) -> int:
        for r in self.results:
            if r.failed:
                return exit_code_for(r.kind or Kind.UNEXPECTED) or 1
        if self.cancelled_nodes:
            return exit_code_for(Kind.CANCELLED)
        return 0

    def summary(self) -> str:
        s = (
            f"APPLIED={self.count(Status.APPLIED)} "
            f"SKIPPED={self.count(Status.SKIPPED)} "
            f"FAILED={self.count(Status.FAILED)}"
        )
        if self.cancelled_nodes:
            s += f" CANCELLED={len(self.cancelled_nodes)}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dry_run": self.dry_run,
            "exit_code": self.exit_code(),
            "summary": self.summary(),
            "results": [r.redacted(self.secrets).to_dict() for r in self.results],
            "cancelled_nodes": list(self.cancelled_nodes),
        }

    def to_json(self) -> str:
        return redact(json.dumps(self.to_dict(), indent=2), self.secrets)

    def write(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json() + "\n", encoding="utf-8")
        log.info("run report written to %s", path)
        return path


# ---------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------
@dataclass
class DriftEntry:
    step_id: str
    state: str                 # "converged" | "drifted" | "error"
    error: Optional[str] = None


@dataclass
class DriftReport:
    node: str
    entries: List[DriftEntry] = field(default_factory=list)

    def drifted(self) -> List[str]:
        return [e.step_id for e in self.entries if e.state != "converged"]

    def converged(self) -> bool:
        return not self.drifted()

    def to_dict(self) -> Dict[str, Any]:
        return {"node": self.node, "entries": [asdict(e) for e in self.entries]}


def detect_drift(plan: Plan, ctx: StepContext) -> DriftReport:
    """Run only the read-only checks of *plan*; nothing is applied."""
    report = DriftReport(node=plan.node.hostname)
    for step in plan:
        try:
            ok = step.check(ctx)
        except ConvergeError as e:
            report.entries.append(DriftEntry(step.id, "error", f"{e.kind.value}: {e}"))
            continue
        except Exception as e:
            log.exception("[%s] %s: check raised", plan.node.hostname, step.id)
            report.entries.append(DriftEntry(step.id, "error", f"{Kind.UNEXPECTED.value}: {e}"))
            continue
        report.entries.append(DriftEntry(step.id, "converged" if ok else "drifted"))
    return report
