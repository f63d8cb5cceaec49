# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/steps/catalog.py
from __future__ import annotations

from typing import Optional

from converge.observers.dispatcher import EventBus
from converge.steps.cluster import INIT_CLUSTER, INSTALL_CNI, INSTALL_INGRESS, JOIN_CLUSTER
from converge.steps.network import APPLY_NETWORK_POLICIES, CONFIGURE_HOSTS, CONFIGURE_TUNNEL, CONNECT_TAILSCALE
from converge.steps.registry import StepRegistry
from converge.steps.system import INSTALL_DEPS, PREFLIGHT, PREPARE_STORAGE

# Registration order breaks ties in the topological order.
DEFAULT_STEPS = (
    PREFLIGHT,
    INSTALL_DEPS,
    CONFIGURE_HOSTS,
    INIT_CLUSTER,
    INSTALL_CNI,
    APPLY_NETWORK_POLICIES,
    INSTALL_INGRESS,
    JOIN_CLUSTER,
    PREPARE_STORAGE,
    CONNECT_TAILSCALE,
    CONFIGURE_TUNNEL,
)


def default_registry(bus: Optional[EventBus] = None, run_ctx: Optional[dict] = None) -> StepRegistry:
    reg = StepRegistry(bus=bus, run_ctx=run_ctx)
    for step in DEFAULT_STEPS:
        reg.register(step)
    return reg
