# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/steps/registry.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple

from converge.config.models import Node, Role
from converge.errors import CyclicDependencyError, DuplicateStepID, UnknownDependencyError
from converge.observers.dispatcher import EventBus
from converge.observers.events import PlanComputed, PlanFailed, new_ctx, stamp
from converge.steps.base import Step


@dataclass(frozen=True)
class Plan:
    node: Node
    steps: Tuple[Step, ...]

    @property
    def ids(self) -> List[str]:
        return [s.id for s in self.steps]

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)


class StepRegistry:
    def __init__(self, bus: Optional[EventBus] = None, run_ctx: Optional[dict] = None):
        self._steps: Dict[str, Step] = {}      # insertion order = registration order
        self.bus = bus
        self.run_ctx = run_ctx or new_ctx(env="dev", context=None)

    def register(self, step: Step) -> Step:
        if step.id in self._steps:
            raise DuplicateStepID(f"step id '{step.id}' is already registered")
        self._steps[step.id] = step
        return step

    def get(self, step_id: str) -> Step:
        return self._steps[step_id]

    def ids(self) -> List[str]:
        return list(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def _validate_dependencies(self) -> None:
        for s in self._steps.values():
            for d in s.requires:
                if d not in self._steps:
                    raise UnknownDependencyError(f"Step '{s.id}' depends on unknown step '{d}'")

    def _order(self, role: Role) -> List[Step]:
        """
        Stable topological sort of the steps applicable to *role*.
        Dependencies on steps that do not apply to the role are ignored;
        ties are broken by registration order.
        """
        self._validate_dependencies()

        rank = {sid: i for i, sid in enumerate(self._steps)}
        applicable = {sid: s for sid, s in self._steps.items() if s.for_role(role)}
        graph: Dict[str, Set[str]] = {
            sid: {d for d in s.requires if d in applicable} for sid, s in applicable.items()
        }
        indeg: Dict[str, int] = {sid: len(deps) for sid, deps in graph.items()}

        queue = deque(sorted((n for n, deg in indeg.items() if deg == 0), key=rank.__getitem__))
        order: List[Step] = []

        while queue:
            n = queue.popleft()
            order.append(applicable[n])
            for m, deps in graph.items():
                if n in deps:
                    indeg[m] -= 1
                    if indeg[m] == 0:
                        queue.append(m)
                        queue = deque(sorted(queue, key=rank.__getitem__))  # deterministic

        if len(order) != len(applicable):
            stuck = sorted((n for n, deg in indeg.items() if deg > 0), key=rank.__getitem__)
            raise CyclicDependencyError(f"Cyclic dependency detected among steps: {', '.join(stuck)}")
        return order

    def steps_for(self, role: Role) -> Iterator[Step]:
        """
        Lazily yield the steps for *role* in execution order.
        Emits PlanComputed / PlanFailed if the registry has an EventBus.
        """
        role = Role(role)
        try:
            order = self._order(role)
        except Exception as e:
            if self.bus:
                self.bus.emit(PlanFailed(role=role.value, error=str(e), **stamp(self.run_ctx)))
            raise
        if self.bus:
            self.bus.emit(PlanComputed(role=role.value, order=[s.id for s in order], **stamp(self.run_ctx)))
        yield from order

    def plan_for(self, node: Node) -> Plan:
        return Plan(node=node, steps=tuple(s for s in self.steps_for(node.role) if s.applies_to(node)))
