# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/firewall/iptables.py
"""
Declarative host firewall on top of iptables.

All managed allow rules live in two dedicated chains (``<PREFIX>-INPUT`` and
``<PREFIX>-OUTPUT``) hooked from the built-in INPUT/OUTPUT chains. The
default posture is carried by the built-in chain policy, so the deny is in
force before (and independent of) any allow layered on top: nothing is
appended after a terminal DROP, and allow order inside the chain does not
change the verdict.

Convergence is diff-based: ``iptables -S`` is parsed, compared with the
rendered desired state, and only a non-empty diff produces an atomic
``iptables-restore --noflush`` payload.
"""
from __future__ import annotations

import ipaddress
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from converge.config.models import AllowRule, FirewallPolicy

BUILTIN = ("INPUT", "FORWARD", "OUTPUT")
Rule = Tuple[str, ...]   # normalized ``-A CHAIN ...`` tokens


def _norm(line: str) -> Rule:
    return tuple(shlex.split(line))


def _comment(text: str) -> str:
    return f'"{text}"' if any(c.isspace() for c in text) else text


def _net(cidr: str) -> str:
    # iptables -S prints the masked network with an explicit prefix length
    return str(ipaddress.ip_network(cidr, strict=False))


@dataclass(frozen=True)
class Chains:
    input: str
    output: str

    @classmethod
    def for_prefix(cls, prefix: str) -> "Chains":
        return cls(input=f"{prefix}-INPUT", output=f"{prefix}-OUTPUT")

    def for_base(self, base: str) -> str:
        return self.input if base == "INPUT" else self.output


def render_rule(rule: AllowRule, chains: Chains) -> str:
    ingress = rule.direction == "ingress"
    parts = ["-A", chains.input if ingress else chains.output]
    if rule.cidr:
        parts += ["-s" if ingress else "-d", _net(rule.cidr)]
    if rule.interface:
        parts += ["-i" if ingress else "-o", rule.interface]
    if rule.protocol != "any":
        parts += ["-p", rule.protocol]
        if rule.port is not None:
            port = str(rule.port) if rule.port_end is None else f"{rule.port}:{rule.port_end}"
            parts += ["-m", rule.protocol, "--dport", port]
    parts += ["-m", "comment", "--comment", _comment(rule.name), "-j", "ACCEPT"]
    return " ".join(parts)


def _base_rules(chains: Chains) -> List[str]:
    return [
        f"-A {chains.input} -i lo -m comment --comment loopback -j ACCEPT",
        f"-A {chains.input} -m conntrack --ctstate RELATED,ESTABLISHED -m comment --comment established -j ACCEPT",
        f"-A {chains.output} -o lo -m comment --comment loopback -j ACCEPT",
        f"-A {chains.output} -m conntrack --ctstate RELATED,ESTABLISHED -m comment --comment established -j ACCEPT",
    ]


def hook_rule(base: str, chains: Chains) -> str:
    return f"-A {base} -m comment --comment converge -j {chains.for_base(base)}"


@dataclass
class Ruleset:
    """Filter-table state: built-in policies plus rules per chain, in order."""

    policies: Dict[str, str] = field(default_factory=dict)
    chains: Dict[str, List[Rule]] = field(default_factory=dict)

    def rules(self, chain: str) -> List[Rule]:
        return self.chains.get(chain, [])


@dataclass(frozen=True)
class DesiredFirewall:
    chains: Chains
    policies: Dict[str, str]
    rules: Dict[str, List[str]]          # managed chain -> rendered rule lines

    def as_ruleset(self) -> Ruleset:
        rs = Ruleset(policies=dict(self.policies))
        for base in ("INPUT", "OUTPUT"):
            rs.chains[base] = [_norm(hook_rule(base, self.chains))]
        for chain, lines in self.rules.items():
            rs.chains[chain] = [_norm(l) for l in lines]
        return rs


def desired_state(policy: FirewallPolicy, rules: Sequence[AllowRule]) -> DesiredFirewall:
    chains = Chains.for_prefix(policy.chain_prefix)
    lines = _base_rules(chains) + [render_rule(r, chains) for r in rules]
    return DesiredFirewall(
        chains=chains,
        policies={
            "INPUT": "DROP" if policy.default_ingress == "deny" else "ACCEPT",
            "OUTPUT": "DROP" if policy.default_egress == "deny" else "ACCEPT",
        },
        rules={
            chains.input: [l for l in lines if l.split()[1] == chains.input],
            chains.output: [l for l in lines if l.split()[1] == chains.output],
        },
    )


def parse_ruleset(text: str) -> Ruleset:
    """Parse ``iptables -S`` output for the filter table."""
    rs = Ruleset()
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        tokens = _norm(line)
        if tokens[0] == "-P" and len(tokens) >= 3:
            rs.policies[tokens[1]] = tokens[2]
            rs.chains.setdefault(tokens[1], [])
        elif tokens[0] == "-N" and len(tokens) >= 2:
            rs.chains.setdefault(tokens[1], [])
        elif tokens[0] == "-A" and len(tokens) >= 2:
            rs.chains.setdefault(tokens[1], []).append(tokens)
    return rs


@dataclass
class FirewallDiff:
    missing: List[str] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)
    policies: Dict[str, str] = field(default_factory=dict)   # chain -> desired policy
    rewrite: List[str] = field(default_factory=list)         # managed chains needing a rewrite
    hooks: List[str] = field(default_factory=list)           # base chains missing the jump

    def empty(self) -> bool:
        return not (self.missing or self.extra or self.policies or self.rewrite or self.hooks)

    def describe(self) -> List[str]:
        out = [f"add {l}" for l in self.missing] + [f"remove {l}" for l in self.extra]
        out += [f"hook {b}" for b in self.hooks]
        out += [f"policy {c} {p}" for c, p in sorted(self.policies.items())]
        return out


def diff(desired: DesiredFirewall, observed: Ruleset) -> FirewallDiff:
    d = FirewallDiff()
    for chain, lines in desired.rules.items():
        want = [_norm(l) for l in lines]
        have = observed.rules(chain)
        if want != have or chain not in observed.chains:
            d.rewrite.append(chain)
            d.missing += [" ".join(r) for r in want if r not in have]
            d.extra += [" ".join(r) for r in have if r not in want]
    for base in ("INPUT", "OUTPUT"):
        if _norm(hook_rule(base, desired.chains)) not in observed.rules(base):
            d.hooks.append(base)
    for chain, pol in desired.policies.items():
        if observed.policies.get(chain) != pol:
            d.policies[chain] = pol
    return d


def restore_payload(desired: DesiredFirewall, d: FirewallDiff) -> str:
    """
    ``iptables-restore --noflush`` input converging the managed chains.
    Declaring a user chain flushes it, so rewritten chains are replaced
    wholesale; hooks are inserted at the top of the base chain.
    """
    out = ["*filter"]
    for chain, pol in sorted(d.policies.items()):
        out.append(f":{chain} {pol} [0:0]")
    for chain in d.rewrite:
        out.append(f":{chain} - [0:0]")
    for chain in d.rewrite:
        out.extend(desired.rules[chain])
    for base in d.hooks:
        out.append(f"-I {base} 1 -m comment --comment converge -j {desired.chains.for_base(base)}")
    out.append("COMMIT")
    return "\n".join(out) + "\n"


# ---------------------------------------------------------------------
# Packet traversal simulation
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class Probe:
    direction: str = "ingress"          # ingress -> INPUT, egress -> OUTPUT
    protocol: str = "tcp"
    port: Optional[int] = None
    source: str = "0.0.0.0"
    destination: str = "0.0.0.0"
    interface: str = "eth0"
    state: str = "NEW"


def _opt(rule: Rule, flag: str) -> Optional[str]:
    try:
        return rule[rule.index(flag) + 1]
    except (ValueError, IndexError):
        return None


def _in_net(addr: str, cidr: str) -> bool:
    return ipaddress.ip_address(addr) in ipaddress.ip_network(cidr, strict=False)


def _matches(rule: Rule, probe: Probe) -> bool:
    src, dst = _opt(rule, "-s"), _opt(rule, "-d")
    if src and not _in_net(probe.source, src):
        return False
    if dst and not _in_net(probe.destination, dst):
        return False
    iface = _opt(rule, "-i") or _opt(rule, "-o")
    if iface and iface != probe.interface:
        return False
    proto = _opt(rule, "-p")
    if proto and proto != probe.protocol:
        return False
    dport = _opt(rule, "--dport")
    if dport:
        if probe.port is None:
            return False
        lo, _, hi = dport.partition(":")
        if not int(lo) <= probe.port <= int(hi or lo):
            return False
    ctstate = _opt(rule, "--ctstate")
    if ctstate and probe.state not in ctstate.split(","):
        return False
    return True


def evaluate(ruleset: Ruleset, probe: Probe) -> str:
    """Verdict (ACCEPT/DROP/REJECT) for *probe* walking the filter table."""
    base = "INPUT" if probe.direction == "ingress" else "OUTPUT"

    def walk(chain: str, depth: int) -> Optional[str]:
        if depth > 16:
            raise ValueError(f"chain jump depth exceeded at {chain}")
        for rule in ruleset.rules(chain):
            if not _matches(rule, probe):
                continue
            target = _opt(rule, "-j")
            if target in ("ACCEPT", "DROP", "REJECT"):
                return target
            if target == "RETURN":
                return None
            if target in ruleset.chains:
                verdict = walk(target, depth + 1)
                if verdict is not None:
                    return verdict
        return None

    return walk(base, 0) or ruleset.policies.get(base, "ACCEPT")
