# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/steps/network.py
from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Tuple

from converge.config.models import Role, TailscaleSettings, TunnelSettings
from converge.errors import PrerequisiteMissing
from converge.firewall.iptables import DesiredFirewall, FirewallDiff, desired_state, diff, parse_ruleset, restore_payload
from converge.firewall.netpol import render_network_policies, spec_matches, to_yaml
from converge.runner.base import require_ok, shq
from converge.steps.base import Change, Step, StepContext, tagged

log = logging.getLogger("converge")

FORWARDING_SYSCTL = "net.ipv4.ip_forward = 1\nnet.ipv6.conf.all.forwarding = 1\n"
CLOUDFLARED_UNIT = "/etc/systemd/system/cloudflared.service"
HOSTS_FILE = "/etc/hosts"
HOSTS_BEGIN = "# BEGIN converge cluster nodes"
HOSTS_END = "# END converge cluster nodes"


# ---------------------------------------------------------------------
# configure-hosts
# ---------------------------------------------------------------------
def desired_hosts(ctx: StepContext, current: str) -> str:
    """
    *current* with the managed cluster block replaced, 127.0.1.1 pointed at
    this node, and stale unmanaged entries for inventory hostnames dropped.
    """
    nodes = ctx.config.nodes
    names = {n.hostname for n in nodes}
    block = ctx.templates.render("cluster-hosts.j2", {"nodes": nodes, "domain": ctx.config.cluster.domain})

    kept: List[str] = []
    inside = False
    for line in current.splitlines():
        marker = line.strip()
        if marker == HOSTS_BEGIN:
            inside = True
            continue
        if marker == HOSTS_END:
            inside = False
            continue
        if inside:
            continue
        fields = marker.split()
        if fields and fields[0] == "127.0.1.1":
            line = f"127.0.1.1\t{ctx.node.hostname}"
        elif fields and not fields[0].startswith("#") and names & set(fields[1:]):
            continue
        kept.append(line)

    while kept and not kept[-1].strip():
        kept.pop()
    return ("\n".join(kept) + "\n\n" if kept else "") + block


def check_hosts(ctx: StepContext) -> bool:
    host = ctx.host
    if host.current_hostname() != ctx.node.hostname:
        return False
    current = host.read_file(HOSTS_FILE)
    return current is not None and current == desired_hosts(ctx, current)


def apply_hosts(ctx: StepContext) -> Change:
    host, hostname = ctx.host, ctx.node.hostname
    change = Change()
    if host.current_hostname() != hostname:
        host.set_hostname(hostname)
        change.add(f"set hostname to {hostname}")
    if host.write_file(HOSTS_FILE, desired_hosts(ctx, host.read_file(HOSTS_FILE) or "")):
        change.add(f"wrote cluster entries to {HOSTS_FILE}")
    return change


# ---------------------------------------------------------------------
# apply-network-policies
# ---------------------------------------------------------------------
def _firewall_diff(ctx: StepContext) -> Tuple[DesiredFirewall, FirewallDiff]:
    desired = desired_state(ctx.config.firewall, ctx.config.firewall_rules_for(ctx.node))
    observed = parse_ruleset(ctx.host.iptables_rules())
    return desired, diff(desired, observed)


def _drifted_policies(ctx: StepContext) -> List[Dict]:
    if ctx.node.role != Role.MASTER:
        return []
    drifted = []
    for doc in render_network_policies(ctx.config.network_policies):
        meta = doc["metadata"]
        observed = ctx.host.get_json(f"networkpolicy/{meta['name']}", meta["namespace"])
        if observed is None or not spec_matches(doc, observed):
            drifted.append(doc)
    return drifted


def check_policies(ctx: StepContext) -> bool:
    _, d = _firewall_diff(ctx)
    if not d.empty():
        log.debug("[%s] firewall drift: %s", ctx.node.hostname, "; ".join(d.describe()))
        return False
    return not _drifted_policies(ctx)


def apply_policies(ctx: StepContext) -> Change:
    host = ctx.host
    change = Change()

    desired, d = _firewall_diff(ctx)
    if not d.empty():
        host.iptables_restore(restore_payload(desired, d))
        if ctx.config.firewall.persist:
            host.must("netfilter-persistent save")
        change.actions.extend(f"firewall: {line}" for line in d.describe())

    drifted = _drifted_policies(ctx)
    if drifted:
        host.apply_manifest(to_yaml(drifted), "network-policies")
        change.actions.extend(
            f"networkpolicy {doc['metadata']['namespace']}/{doc['metadata']['name']}" for doc in drifted
        )
    return change


# ---------------------------------------------------------------------
# connect-tailscale
# ---------------------------------------------------------------------
def _tailscale(ctx: StepContext) -> TailscaleSettings:
    return ctx.config.tailscale or TailscaleSettings()


def _tailscale_running(ctx: StepContext) -> bool:
    res = ctx.host.run("tailscale status --json")
    if not res.ok:
        return False
    try:
        return json.loads(res.stdout).get("BackendState") == "Running"
    except ValueError:
        return False


def check_tailscale(ctx: StepContext) -> bool:
    if not ctx.host.has_command("tailscale"):
        return False
    if ctx.host.read_file(_tailscale(ctx).sysctl_path) != FORWARDING_SYSCTL:
        return False
    return _tailscale_running(ctx)


def apply_tailscale(ctx: StepContext) -> Change:
    host, ts = ctx.host, _tailscale(ctx)
    host.require_command("tailscale")
    change = Change()

    if host.write_file(ts.sysctl_path, FORWARDING_SYSCTL):
        host.reload_sysctl()
        change.add(f"enabled ip forwarding ({ts.sysctl_path})")

    if not _tailscale_running(ctx):
        if ts.auth_key is None:
            raise PrerequisiteMissing(f"[{ctx.node.hostname}] tailscale.auth_key is not configured")
        key = ts.auth_key.get_secret_value()
        hostname = f"{ctx.node.hostname}{ts.hostname_suffix}"
        args = ["tailscale up", f"--authkey={shq(key)}", f"--hostname={shq(hostname)}"]
        if ts.advertise_routes:
            args.append(f"--advertise-routes={shq(','.join(ts.advertise_routes))}")
        if ts.accept_routes:
            args.append("--accept-routes")
        args.append(f"--accept-dns={'true' if ts.accept_dns else 'false'}")
        host.must(" ".join(args), secrets=[key], message=f"[{ctx.node.hostname}] tailscale up failed")
        ctx.wait_for("tailscale backend Running", lambda: _tailscale_running(ctx))
        change.add(f"connected to tailnet as {hostname}")
    return change


# ---------------------------------------------------------------------
# configure-tunnel
# ---------------------------------------------------------------------
def _tunnel(ctx: StepContext) -> TunnelSettings:
    if ctx.config.tunnel is None:
        raise PrerequisiteMissing(f"[{ctx.node.hostname}] node is tagged for a tunnel but no tunnel is configured")
    return ctx.config.tunnel


def _tunnel_id(ctx: StepContext, name: str) -> Optional[str]:
    res = require_ok(ctx.host.run("cloudflared tunnel list --output json", sudo=False))
    for t in json.loads(res.stdout or "[]") or []:
        if t.get("name") == name:
            return t.get("id")
    return None


def _credentials_source(ctx: StepContext, tunnel: TunnelSettings, tunnel_id: str) -> str:
    src_dir = tunnel.credentials_source_dir
    if src_dir.startswith("~"):
        home = require_ok(ctx.host.run('printf %s "$HOME"', sudo=False)).stdout.strip()
        src_dir = home + src_dir[1:]
    return f"{src_dir}/{tunnel_id}.json"


def _render_tunnel_config(ctx: StepContext, tunnel: TunnelSettings, tunnel_id: str) -> str:
    return ctx.templates.render(
        "cloudflared-config.yml.j2",
        {
            "tunnel_id": tunnel_id,
            "credentials_file": f"{tunnel.config_dir}/{tunnel_id}.json",
            "metrics": tunnel.metrics,
            "routes": tunnel.routes,
        },
    )


def check_tunnel(ctx: StepContext) -> bool:
    if ctx.config.tunnel is None or not ctx.host.has_command("cloudflared"):
        return False
    tunnel = ctx.config.tunnel
    tunnel_id = _tunnel_id(ctx, tunnel.name)
    if tunnel_id is None:
        return False
    if ctx.host.read_file(tunnel.config_path) != _render_tunnel_config(ctx, tunnel, tunnel_id):
        return False
    return ctx.host.exists(f"{tunnel.config_dir}/{tunnel_id}.json") and ctx.host.service_active("cloudflared")


def apply_tunnel(ctx: StepContext) -> Change:
    host = ctx.host
    tunnel = _tunnel(ctx)
    host.require_command("cloudflared")
    change = Change()

    tunnel_id = _tunnel_id(ctx, tunnel.name)
    if tunnel_id is None:
        host.must(f"cloudflared tunnel create {shq(tunnel.name)}", sudo=False)
        tunnel_id = _tunnel_id(ctx, tunnel.name)
        if tunnel_id is None:
            raise PrerequisiteMissing(f"[{ctx.node.hostname}] tunnel '{tunnel.name}' not listed after create")
        change.add(f"created tunnel {tunnel.name} ({tunnel_id})")

    creds = f"{tunnel.config_dir}/{tunnel_id}.json"
    if not host.exists(creds):
        src = _credentials_source(ctx, tunnel, tunnel_id)
        host.must(f"install -D -m 600 {shq(src)} {shq(creds)}")
        change.add(f"installed tunnel credentials {creds}")

    config_changed = host.write_file(tunnel.config_path, _render_tunnel_config(ctx, tunnel, tunnel_id))
    if config_changed:
        change.add(f"wrote {tunnel.config_path} ({len(tunnel.routes)} routes)")

    if not host.exists(CLOUDFLARED_UNIT):
        host.must(f"cloudflared --config {shq(tunnel.config_path)} service install")
        change.add("installed cloudflared service")
    elif config_changed or not host.service_active("cloudflared"):
        host.systemctl("restart", "cloudflared")
        change.add("restarted cloudflared")
    host.systemctl("enable", "cloudflared")
    return change


CONFIGURE_HOSTS = Step(
    id="configure-hosts",
    description="hostname and cluster /etc/hosts entries",
    check=check_hosts,
    apply=apply_hosts,
    requires=("preflight",),
)

APPLY_NETWORK_POLICIES = Step(
    id="apply-network-policies",
    description="default-deny host firewall and cluster NetworkPolicies",
    check=check_policies,
    apply=apply_policies,
    requires=("install-deps", "install-cni", "join-cluster"),
)

CONNECT_TAILSCALE = Step(
    id="connect-tailscale",
    description="Tailscale VPN",
    check=check_tailscale,
    apply=apply_tailscale,
    requires=("apply-network-policies",),
    when=tagged("vpn"),
)

CONFIGURE_TUNNEL = Step(
    id="configure-tunnel",
    description="Cloudflare tunnel",
    check=check_tunnel,
    apply=apply_tunnel,
    roles=frozenset({Role.MASTER}),
    requires=("install-ingress",),
    when=tagged("tunnel"),
)
