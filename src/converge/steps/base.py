# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/steps/base.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from converge.config.models import ConvergeConfig, Node, Role
from converge.errors import StepTimeout
from converge.observers.dispatcher import EventBus
from converge.observers.events import WaiterStarted, WaiterSucceeded, WaiterTimedOut, stamp
from converge.security.tokens import JoinTokenBroker
from converge.steps.host import HostOps
from converge.templates.renderer import TemplateRenderer
from converge.utils.retry import poll_until

log = logging.getLogger("converge")

ALL_ROLES: FrozenSet[Role] = frozenset(Role)


@dataclass
class Change:
    """What an ``apply`` converged, as human-readable actions."""

    actions: List[str] = field(default_factory=list)

    def add(self, action: str) -> "Change":
        self.actions.append(action)
        return self

    def __bool__(self) -> bool:
        return bool(self.actions)


@dataclass
class StepContext:
    node: Node
    config: ConvergeConfig
    host: HostOps
    tokens: Optional[JoinTokenBroker] = None
    bus: Optional[EventBus] = None
    run_ctx: Dict = field(default_factory=dict)
    timeout: float = 300.0
    interval: float = 5.0
    templates: TemplateRenderer = field(default_factory=TemplateRenderer)

    def emit(self, event_cls, **fields) -> None:
        if self.bus:
            self.bus.emit(event_cls(**fields, **stamp(self.run_ctx)))

    def wait_for(self, target: str, probe: Callable[[], bool]) -> int:
        """Bounded readiness wait on an external component."""
        node = self.node.hostname
        log.info("[%s] waiting for %s (timeout %ss)", node, target, f"{self.timeout:g}")
        self.emit(WaiterStarted, node=node, target=target, timeout_s=self.timeout)
        try:
            attempts = poll_until(probe, timeout=self.timeout, interval=self.interval, describe=target)
        except StepTimeout:
            self.emit(WaiterTimedOut, node=node, target=target, timeout_s=self.timeout)
            raise
        self.emit(WaiterSucceeded, node=node, target=target)
        return attempts


CheckFn = Callable[[StepContext], bool]
ApplyFn = Callable[[StepContext], Change]


@dataclass(frozen=True)
class Step:
    """
    One idempotent unit of convergence.

    ``check`` must be read-only and repeatable; ``apply`` must be safe to
    re-run. ``roles`` limits the step to node roles and ``when`` is an
    optional extra predicate over the node (tag gating).
    """

    id: str
    description: str
    check: CheckFn
    apply: ApplyFn
    roles: FrozenSet[Role] = ALL_ROLES
    requires: Tuple[str, ...] = ()
    when: Optional[Callable[[Node], bool]] = None

    def for_role(self, role: Role) -> bool:
        return role in self.roles

    def applies_to(self, node: Node) -> bool:
        return self.for_role(node.role) and (self.when is None or self.when(node))


def tagged(tag: str) -> Callable[[Node], bool]:
    def _gate(node: Node) -> bool:
        return node.has_tag(tag)

    _gate.__name__ = f"tagged_{tag}"
    return _gate
