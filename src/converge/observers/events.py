# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single converge invocation
    env: str          # dev/staging/prod
    context: Optional[str]  # cluster name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def now_ts() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(env: str, context: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": now_ts(),
        "run_id": run_id or str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


def stamp(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Same run context with a fresh timestamp."""
    return {**ctx, "ts": now_ts()}


# ---------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    role: str
    order: List[str]

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    role: str
    error: str


# ---------------------------------------------------------------------
# Node lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NodeStarted(BaseEvent):
    node: str
    role: str
    steps: List[str]

@dataclass(frozen=True)
class NodeFinished(BaseEvent):
    node: str
    status: str       # "CONVERGED" | "FAILED" | "CANCELLED"
    failed_step: Optional[str] = None


# ---------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepStarted(BaseEvent):
    node: str
    step: str

@dataclass(frozen=True)
class StepSkipped(BaseEvent):
    node: str
    step: str
    reason: str

@dataclass(frozen=True)
class StepApplied(BaseEvent):
    node: str
    step: str
    changes: List[str]
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    node: str
    step: str
    kind: str
    error: str
    command: Optional[str] = None
    exit_code: Optional[int] = None


# ---------------------------------------------------------------------
# Waiter lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class WaiterStarted(BaseEvent):
    node: str
    target: str
    timeout_s: float

@dataclass(frozen=True)
class WaiterSucceeded(BaseEvent):
    node: str
    target: str

@dataclass(frozen=True)
class WaiterTimedOut(BaseEvent):
    node: str
    target: str
    timeout_s: float


# ---------------------------------------------------------------------
# Join token (never carries the secret itself)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TokenIssued(BaseEvent):
    issuer: str
    expires_at: str

@dataclass(frozen=True)
class TokenRedeemed(BaseEvent):
    node: str


# ---------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunCancelled(BaseEvent):
    pending_nodes: List[str]

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    applied: int
    skipped: int
    failed: int
    cancelled: int
