# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/steps/cluster.py
from __future__ import annotations

import logging
import re

from converge.config.models import Role
from converge.errors import Kind, TokenExpired, TokenUnavailable
from converge.observers.events import TokenRedeemed
from converge.runner.base import classify, shq
from converge.steps.base import Change, Step, StepContext

log = logging.getLogger("converge")

KUBELET_CONF = "/etc/kubernetes/kubelet.conf"
MASTER = frozenset({Role.MASTER})
JOINERS = frozenset({Role.WORKER, Role.STORAGE})

# kubeadm phrasing when the bootstrap token itself is gone or no longer valid.
# Discovery failures share the "couldn't validate the identity" prefix, so
# only the token-specific tail counts.
_TOKEN_REJECTED = re.compile(
    r"token id \S+ is invalid|bootstrap token.*(?:expired|not found)|token.*has expired",
    re.I,
)


# ---------------------------------------------------------------------
# init-cluster
# ---------------------------------------------------------------------
def check_init(ctx: StepContext) -> bool:
    return ctx.host.exists(ctx.config.cluster.kubeconfig_path)


def _api_ready(ctx: StepContext) -> bool:
    return ctx.host.kubectl("get --raw=/readyz", check=False).ok


def apply_init(ctx: StepContext) -> Change:
    cfg, host = ctx.config, ctx.host
    cluster = cfg.cluster
    host.require_command("kubeadm")

    cmd = " ".join(
        [
            "kubeadm init",
            f"--apiserver-advertise-address={shq(cfg.advertise_address())}",
            f"--control-plane-endpoint={shq(cfg.control_plane_endpoint())}",
            f"--pod-network-cidr={shq(cluster.pod_cidr)}",
            f"--service-cidr={shq(cluster.service_cidr)}",
            f"--kubernetes-version={shq(cluster.kubernetes_version)}",
        ]
    )
    host.must(cmd, message=f"[{ctx.node.hostname}] kubeadm init failed")
    change = Change([f"initialized control plane at {cfg.control_plane_endpoint()}"])

    if cluster.admin_user:
        user = shq(cluster.admin_user)
        host.must(
            f"home=$(getent passwd {user} | cut -d: -f6) && "
            f"install -D -m 600 -o {user} -g {user} {shq(cluster.kubeconfig_path)} \"$home/.kube/config\""
        )
        change.add(f"copied admin kubeconfig for {cluster.admin_user}")

    ctx.wait_for("kube-apiserver /readyz", lambda: _api_ready(ctx))
    return change


# ---------------------------------------------------------------------
# install-cni
# ---------------------------------------------------------------------
def check_cni(ctx: StepContext) -> bool:
    cni = ctx.config.cni
    return ctx.host.resource_exists(f"daemonset/{cni.daemonset}", cni.namespace)


def apply_cni(ctx: StepContext) -> Change:
    cfg, host = ctx.config, ctx.host
    cni = cfg.cni
    host.apply_url(cni.operator_manifest, server_side=True)
    change = Change(["applied tigera operator"])

    ctx.wait_for(
        "crd/installations.operator.tigera.io",
        lambda: host.resource_exists("crd/installations.operator.tigera.io"),
    )
    manifest = ctx.templates.render(
        "calico-installation.yaml.j2",
        {"pod_cidr": cfg.cluster.pod_cidr, "encapsulation": cni.encapsulation},
    )
    host.apply_manifest(manifest, "calico-installation")
    change.add(f"applied calico Installation (pod cidr {cfg.cluster.pod_cidr})")

    ref = f"daemonset/{cni.daemonset}"
    ctx.wait_for(
        f"{cni.namespace}/{ref} rollout",
        lambda: host.resource_exists(ref, cni.namespace) and host.rollout_ready(ref, cni.namespace),
    )
    return change


# ---------------------------------------------------------------------
# install-ingress
# ---------------------------------------------------------------------
def check_ingress(ctx: StepContext) -> bool:
    ing = ctx.config.ingress
    return ctx.host.resource_exists(f"deployment/{ing.deployment}", ing.namespace)


def apply_ingress(ctx: StepContext) -> Change:
    host, ing = ctx.host, ctx.config.ingress
    host.apply_url(ing.manifest)
    ref = f"deployment/{ing.deployment}"
    ctx.wait_for(
        f"{ing.namespace}/{ref} rollout",
        lambda: host.resource_exists(ref, ing.namespace) and host.rollout_ready(ref, ing.namespace),
    )
    return Change([f"applied ingress controller ({ing.namespace}/{ing.deployment})"])


# ---------------------------------------------------------------------
# join-cluster
# ---------------------------------------------------------------------
def check_join(ctx: StepContext) -> bool:
    return ctx.host.exists(KUBELET_CONF)


def apply_join(ctx: StepContext) -> Change:
    hostname = ctx.node.hostname
    ctx.host.require_command("kubeadm")
    if ctx.tokens is None:
        raise TokenUnavailable(f"[{hostname}] no join token broker for this run")

    token = ctx.tokens.redeem(hostname)
    ctx.emit(TokenRedeemed, node=hostname)
    secret = token.token.get_secret_value()

    res = ctx.host.run(token.join_command(), secrets=[secret])
    if not res.ok:
        err = classify(res, f"[{hostname}] kubeadm join failed")
        if err.kind == Kind.EXTERNAL_TOOL_FAILURE and _TOKEN_REJECTED.search(f"{res.stderr}\n{res.stdout}"):
            raise TokenExpired(
                f"[{hostname}] control plane rejected join token {token.token_id}",
                command=res.cmd,
                exit_code=res.rc,
                stderr=res.stderr.strip(),
            )
        raise err
    return Change([f"joined cluster at {token.endpoint}"])


INIT_CLUSTER = Step(
    id="init-cluster",
    description="kubeadm control plane",
    check=check_init,
    apply=apply_init,
    roles=MASTER,
    requires=("install-deps", "configure-hosts"),
)

INSTALL_CNI = Step(
    id="install-cni",
    description="Calico pod network",
    check=check_cni,
    apply=apply_cni,
    roles=MASTER,
    requires=("init-cluster",),
)

INSTALL_INGRESS = Step(
    id="install-ingress",
    description="NGINX ingress controller",
    check=check_ingress,
    apply=apply_ingress,
    roles=MASTER,
    requires=("apply-network-policies",),
)

JOIN_CLUSTER = Step(
    id="join-cluster",
    description="kubeadm join with the run's bootstrap token",
    check=check_join,
    apply=apply_join,
    roles=JOINERS,
    requires=("install-deps", "configure-hosts"),
)
