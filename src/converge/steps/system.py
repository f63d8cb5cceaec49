# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/steps/system.py
"""
Host preparation steps: capacity preflight, container runtime, kubernetes
packages, kernel settings and local storage.
"""
from __future__ import annotations

import logging
from typing import List

from converge.config.models import PackageSettings, Role
from converge.errors import PrerequisiteMissing
from converge.runner.base import shq
from converge.steps.base import Change, Step, StepContext
from converge.steps.host import HostOps

log = logging.getLogger("converge")

MODULES_FILE = "/etc/modules-load.d/k8s.conf"
SYSCTL_FILE = "/etc/sysctl.d/k8s.conf"
BOOTSTRAP_PACKAGES = ("apt-transport-https", "ca-certificates", "curl", "gpg")


# ---------------------------------------------------------------------
# preflight
# ---------------------------------------------------------------------
_GIB_KB = 1024 * 1024


def capacity_shortfalls(ctx: StepContext) -> List[str]:
    """Minimums this node misses; whole GiB, rounded down like ``free -g``."""
    host, want = ctx.host, ctx.config.preflight
    short: List[str] = []

    cpus = host.cpu_count()
    if cpus < want.min_cpus:
        short.append(f"{want.min_cpus} CPU cores required, found {cpus}")
    mem_gb = host.memory_kb() // _GIB_KB
    if mem_gb < want.min_memory_gb:
        short.append(f"{want.min_memory_gb}GB RAM required, found {mem_gb}GB")
    disk_gb = host.disk_free_kb(want.disk_path) // _GIB_KB
    if disk_gb < want.min_disk_gb:
        short.append(f"{want.min_disk_gb}GB free on {want.disk_path} required, found {disk_gb}GB")
    return short


def check_preflight(ctx: StepContext) -> bool:
    """Read-only. Passes or raises; there is nothing to apply."""
    node = ctx.node.hostname
    release = ctx.host.read_file("/etc/os-release") or ""
    if "Ubuntu" not in release:
        log.warning("[%s] not an Ubuntu host; package steps assume apt and may need changes", node)

    short = capacity_shortfalls(ctx)
    if short:
        raise PrerequisiteMissing(f"[{node}] host below minimum requirements: " + "; ".join(short))
    return True


def apply_preflight(ctx: StepContext) -> Change:
    check_preflight(ctx)
    return Change()


# ---------------------------------------------------------------------
# install-deps
# ---------------------------------------------------------------------
def _sources_line(pkgs: PackageSettings) -> str:
    return f"deb [signed-by={pkgs.keyring_path}] {pkgs.kubernetes_repo} /\n"


def _modules_content(pkgs: PackageSettings) -> str:
    return "".join(f"{m}\n" for m in pkgs.kernel_modules)


def _sysctl_content(pkgs: PackageSettings) -> str:
    return "".join(f"{k} = {v}\n" for k, v in pkgs.sysctl.items())


def _containerd_ok(host: HostOps, pkgs: PackageSettings) -> bool:
    content = host.read_file(pkgs.containerd_config_path)
    return content is not None and "SystemdCgroup = true" in content


def deps_drift(ctx: StepContext) -> List[str]:
    """Everything install-deps would change on this node (empty = converged)."""
    host, pkgs = ctx.host, ctx.config.packages
    drift: List[str] = []

    if not host.exists(pkgs.keyring_path):
        drift.append(f"missing apt keyring {pkgs.keyring_path}")
    if host.read_file(pkgs.sources_path) != _sources_line(pkgs):
        drift.append(f"apt source {pkgs.sources_path} out of date")
    missing = host.missing_packages(pkgs.packages)
    if missing:
        drift.append("packages not installed: " + ", ".join(missing))
    unheld = sorted(set(pkgs.hold) - host.held_packages())
    if unheld:
        drift.append("packages not held: " + ", ".join(unheld))

    if host.read_file(MODULES_FILE) != _modules_content(pkgs):
        drift.append(f"{MODULES_FILE} out of date")
    loaded = host.loaded_modules()
    for m in pkgs.kernel_modules:
        if m not in loaded:
            drift.append(f"kernel module {m} not loaded")

    if host.read_file(SYSCTL_FILE) != _sysctl_content(pkgs):
        drift.append(f"{SYSCTL_FILE} out of date")
    for key, want in pkgs.sysctl.items():
        if host.sysctl(key) != want:
            drift.append(f"sysctl {key} != {want}")

    if host.swap_active():
        drift.append("swap is enabled")
    if not _containerd_ok(host, pkgs):
        drift.append("containerd not configured with SystemdCgroup")
    return drift


def check_deps(ctx: StepContext) -> bool:
    drift = deps_drift(ctx)
    for d in drift:
        log.debug("[%s] install-deps drift: %s", ctx.node.hostname, d)
    return not drift


def apply_deps(ctx: StepContext) -> Change:
    host, pkgs = ctx.host, ctx.config.packages
    change = Change()

    # apt repository
    repo_missing = not host.exists(pkgs.keyring_path) or host.read_file(pkgs.sources_path) != _sources_line(pkgs)
    if repo_missing:
        host.apt_update()
        bootstrap = host.missing_packages(BOOTSTRAP_PACKAGES)
        if bootstrap:
            host.install_packages(bootstrap)
            change.add("installed " + ", ".join(bootstrap))
        if not host.exists(pkgs.keyring_path):
            host.ensure_dir(pkgs.keyring_path.rsplit("/", 1)[0])
            host.must(
                f"curl -fsSL {shq(pkgs.kubernetes_repo + 'Release.key')}"
                f" | gpg --dearmor --yes -o {shq(pkgs.keyring_path)}"
            )
            change.add(f"fetched kubernetes apt keyring to {pkgs.keyring_path}")
        if host.write_file(pkgs.sources_path, _sources_line(pkgs)):
            change.add(f"wrote {pkgs.sources_path}")

    # packages
    missing = host.missing_packages(pkgs.packages)
    if missing:
        host.apt_update()
        host.install_packages(missing)
        change.add("installed " + ", ".join(missing))
    unheld = sorted(set(pkgs.hold) - host.held_packages())
    if unheld:
        host.hold_packages(unheld)
        change.add("held " + ", ".join(unheld))

    # kernel modules
    if host.write_file(MODULES_FILE, _modules_content(pkgs)):
        change.add(f"wrote {MODULES_FILE}")
    loaded = host.loaded_modules()
    for m in pkgs.kernel_modules:
        if m not in loaded:
            host.load_module(m)
            change.add(f"loaded kernel module {m}")

    # sysctl
    if host.write_file(SYSCTL_FILE, _sysctl_content(pkgs)):
        change.add(f"wrote {SYSCTL_FILE}")
    if any(host.sysctl(k) != v for k, v in pkgs.sysctl.items()):
        host.reload_sysctl()
        change.add("reloaded sysctl settings")

    # swap
    if host.swap_active():
        host.disable_swap()
        change.add("disabled swap")

    # container runtime
    if not _containerd_ok(host, pkgs):
        cfg_path = pkgs.containerd_config_path
        host.ensure_dir(cfg_path.rsplit("/", 1)[0])
        host.must(
            "containerd config default | sed 's/SystemdCgroup = false/SystemdCgroup = true/'"
            f" > {shq(cfg_path)}"
        )
        host.systemctl("restart", "containerd")
        host.systemctl("enable", "containerd")
        change.add(f"configured containerd ({cfg_path}) with SystemdCgroup")
    return change


# ---------------------------------------------------------------------
# prepare-storage
# ---------------------------------------------------------------------
def check_storage(ctx: StepContext) -> bool:
    return ctx.host.is_dir(ctx.config.storage.path)


def apply_storage(ctx: StepContext) -> Change:
    path = ctx.config.storage.path
    change = Change()
    if ctx.host.ensure_dir(path):
        change.add(f"created {path}")
    return change


PREFLIGHT = Step(
    id="preflight",
    description="minimum CPU, memory and disk",
    check=check_preflight,
    apply=apply_preflight,
)

INSTALL_DEPS = Step(
    id="install-deps",
    description="container runtime, kubernetes packages and kernel settings",
    check=check_deps,
    apply=apply_deps,
    requires=("preflight",),
)

PREPARE_STORAGE = Step(
    id="prepare-storage",
    description="local storage directory",
    check=check_storage,
    apply=apply_storage,
    roles=frozenset({Role.STORAGE}),
    requires=("install-deps",),
)
