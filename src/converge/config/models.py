# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/config/models.py
from __future__ import annotations

import ipaddress
import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator


class Role(str, Enum):
    MASTER = "master"
    WORKER = "worker"
    STORAGE = "storage"


def _check_cidr(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    ipaddress.ip_network(value, strict=False)
    return value


_PLACEHOLDER = re.compile(r"\$\{[^}]*\}")


def _check_expanded(value: Optional[SecretStr]) -> Optional[SecretStr]:
    """Reject secrets still holding a ${VAR} reference the environment did not provide."""
    if value is None:
        return value
    m = _PLACEHOLDER.search(value.get_secret_value())
    if m:
        raise ValueError(f"{m.group(0)} is not set in the environment")
    return value


# ---------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------
class SshSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: str = "ubuntu"
    port: int = 22
    key_path: Optional[Path] = None
    password: Optional[SecretStr] = None
    connect_timeout: float = 20.0
    connect_attempts: int = 5
    connect_backoff: float = 10.0
    sudo: bool = True

    @field_validator("password")
    @classmethod
    def _password_expanded(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        return _check_expanded(v)


class Node(BaseModel):
    """
    A machine participating in the cluster. Immutable once loaded.
    """
    model_config = ConfigDict(frozen=True)

    hostname: str = Field(min_length=1)
    ip: str
    role: Role
    tags: FrozenSet[str] = frozenset()
    ssh: Optional[SshSettings] = None   # per-node override of ConvergeConfig.ssh

    @field_validator("ip")
    @classmethod
    def _valid_ip(cls, v: str) -> str:
        ipaddress.ip_address(v)
        return v

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags


# ---------------------------------------------------------------------
# Cluster-wide settings
# ---------------------------------------------------------------------
class JoinCredential(BaseModel):
    """
    Join credential printed by ``kubeadm token create --print-join-command``
    on a master, handed to runs that converge joining nodes without one.
    """
    model_config = ConfigDict(frozen=True)

    token: SecretStr
    discovery_hash: str
    endpoint: Optional[str] = None      # host:port, defaults to the control plane endpoint
    expires_at: Optional[datetime] = None

    @field_validator("token")
    @classmethod
    def _valid_token(cls, v: SecretStr) -> SecretStr:
        _check_expanded(v)
        if not re.fullmatch(r"[a-z0-9]{6}\.[a-z0-9]{16}", v.get_secret_value()):
            raise ValueError("join token must look like [a-z0-9]{6}.[a-z0-9]{16}")
        return v

    @field_validator("discovery_hash")
    @classmethod
    def _valid_hash(cls, v: str) -> str:
        if not re.fullmatch(r"sha256:[0-9a-f]{64}", v):
            raise ValueError("discovery_hash must be sha256:<64 hex digits>")
        return v

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ClusterSettings(BaseModel):
    name: str = "tmc-cloud"
    advertise_address: Optional[str] = None        # defaults to the first master's ip
    control_plane_endpoint: Optional[str] = None   # host:port, defaults to <advertise_address>:6443
    pod_cidr: str = "10.244.0.0/16"
    service_cidr: str = "10.96.0.0/12"
    node_cidr: Optional[str] = None                # LAN the nodes live on, allowed through the firewall
    kubernetes_version: str = "v1.28.0"
    domain: Optional[str] = None
    kubeconfig_path: str = "/etc/kubernetes/admin.conf"
    admin_user: Optional[str] = None
    token_ttl_hours: int = Field(default=24, gt=0)
    join: Optional[JoinCredential] = None      # used when no master converges in the run

    @field_validator("pod_cidr", "service_cidr", "node_cidr")
    @classmethod
    def _valid_cidrs(cls, v: Optional[str]) -> Optional[str]:
        return _check_cidr(v)

    @field_validator("advertise_address")
    @classmethod
    def _valid_advertise(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            ipaddress.ip_address(v)
        return v


class PackageSettings(BaseModel):
    kubernetes_repo: str = "https://pkgs.k8s.io/core:/stable:/v1.28/deb/"
    keyring_path: str = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
    sources_path: str = "/etc/apt/sources.list.d/kubernetes.list"
    packages: List[str] = Field(
        default_factory=lambda: [
            "apt-transport-https",
            "ca-certificates",
            "curl",
            "gpg",
            "iptables-persistent",
            "containerd",
            "kubelet",
            "kubeadm",
            "kubectl",
        ]
    )
    hold: List[str] = Field(default_factory=lambda: ["kubelet", "kubeadm", "kubectl"])
    kernel_modules: List[str] = Field(default_factory=lambda: ["overlay", "br_netfilter"])
    sysctl: Dict[str, str] = Field(
        default_factory=lambda: {
            "net.bridge.bridge-nf-call-iptables": "1",
            "net.bridge.bridge-nf-call-ip6tables": "1",
            "net.ipv4.ip_forward": "1",
        }
    )
    containerd_config_path: str = "/etc/containerd/config.toml"


class CniSettings(BaseModel):
    operator_manifest: str = (
        "https://raw.githubusercontent.com/projectcalico/calico/v3.26.0/manifests/tigera-operator.yaml"
    )
    namespace: str = "calico-system"
    daemonset: str = "calico-node"
    encapsulation: str = "VXLANCrossSubnet"


class IngressSettings(BaseModel):
    manifest: str = (
        "https://raw.githubusercontent.com/kubernetes/ingress-nginx/"
        "controller-v1.8.1/deploy/static/provider/baremetal/deploy.yaml"
    )
    namespace: str = "ingress-nginx"
    deployment: str = "ingress-nginx-controller"


class StorageSettings(BaseModel):
    path: str = "/mnt/local-storage"


class PreflightSettings(BaseModel):
    min_cpus: int = Field(default=2, ge=1)
    min_memory_gb: int = Field(default=4, ge=0)
    min_disk_gb: int = Field(default=50, ge=0)
    disk_path: str = "/"


class TimeoutSettings(BaseModel):
    readiness_seconds: float = Field(default=300.0, gt=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    command_seconds: Optional[float] = 900.0


# ---------------------------------------------------------------------
# Firewall / network policy
# ---------------------------------------------------------------------
class AllowRule(BaseModel):
    """
    One explicit allow layered on top of the default-deny posture.
    Empty ``roles``/``tags`` means the rule applies to every node.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    direction: Literal["ingress", "egress"] = "ingress"
    protocol: Literal["tcp", "udp", "any"] = "tcp"
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    port_end: Optional[int] = Field(default=None, ge=1, le=65535)
    cidr: Optional[str] = None          # source for ingress, destination for egress
    interface: Optional[str] = None
    roles: FrozenSet[Role] = frozenset()
    tags: FrozenSet[str] = frozenset()

    @field_validator("cidr")
    @classmethod
    def _valid_cidr(cls, v: Optional[str]) -> Optional[str]:
        return _check_cidr(v)

    @model_validator(mode="after")
    def _ports_consistent(self) -> "AllowRule":
        if self.port_end is not None and self.port is None:
            raise ValueError(f"rule '{self.name}': port_end requires port")
        if self.port is not None and self.port_end is not None and self.port_end < self.port:
            raise ValueError(f"rule '{self.name}': port_end must be >= port")
        if self.port is not None and self.protocol == "any":
            raise ValueError(f"rule '{self.name}': ports require protocol tcp or udp")
        return self

    def applies_to(self, node: Node) -> bool:
        if self.roles and node.role not in self.roles:
            return False
        if self.tags and not (self.tags & node.tags):
            return False
        return True


def _default_rules() -> List[AllowRule]:
    master = frozenset({Role.MASTER})
    return [
        AllowRule(name="ssh", port=22),
        AllowRule(name="kube-apiserver", port=6443, roles=master),
        AllowRule(name="etcd", port=2379, port_end=2380, roles=master),
        AllowRule(name="kubelet", port=10250),
        AllowRule(name="kube-scheduler", port=10259, roles=master),
        AllowRule(name="kube-controller-manager", port=10257, roles=master),
        AllowRule(name="nodeports", port=30000, port_end=32767),
        AllowRule(name="http", port=80),
        AllowRule(name="https", port=443),
        AllowRule(name="calico-bgp", port=179),
        AllowRule(name="calico-vxlan", protocol="udp", port=4789),
        AllowRule(name="tailscale-wireguard", protocol="udp", port=41641, tags=frozenset({"vpn"})),
        AllowRule(name="tailscale-interface", protocol="any", interface="tailscale0", tags=frozenset({"vpn"})),
        AllowRule(name="egress-any", direction="egress", protocol="any"),
    ]


class FirewallPolicy(BaseModel):
    default_ingress: Literal["deny", "allow"] = "deny"
    default_egress: Literal["deny", "allow"] = "deny"
    chain_prefix: str = "CONVERGE"
    rules: List[AllowRule] = Field(default_factory=_default_rules)
    persist: bool = True

    @model_validator(mode="after")
    def _unique_rule_names(self) -> "FirewallPolicy":
        names = [r.name for r in self.rules]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate firewall rule names: {', '.join(dupes)}")
        return self


class NetworkPolicySettings(BaseModel):
    namespaces: List[str] = Field(default_factory=lambda: ["default"])
    allow_dns: bool = True
    allow_internet_egress: bool = True
    private_cidrs: List[str] = Field(
        default_factory=lambda: ["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"]
    )


# ---------------------------------------------------------------------
# VPN / tunnel
# ---------------------------------------------------------------------
class TailscaleSettings(BaseModel):
    auth_key: Optional[SecretStr] = None
    advertise_routes: List[str] = Field(default_factory=list)
    hostname_suffix: str = "-k8s"
    accept_routes: bool = True
    accept_dns: bool = False
    sysctl_path: str = "/etc/sysctl.d/99-tailscale.conf"

    @field_validator("auth_key")
    @classmethod
    def _auth_key_expanded(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        return _check_expanded(v)

    @field_validator("advertise_routes")
    @classmethod
    def _valid_routes(cls, v: List[str]) -> List[str]:
        for cidr in v:
            _check_cidr(cidr)
        return v


class TunnelRoute(BaseModel):
    hostname: str
    service: str


class TunnelSettings(BaseModel):
    name: str
    config_dir: str = "/etc/cloudflared"
    credentials_source_dir: str = "~/.cloudflared"
    metrics: str = "localhost:8081"
    routes: List[TunnelRoute] = Field(default_factory=list)

    @property
    def config_path(self) -> str:
        return f"{self.config_dir}/config.yml"


# ---------------------------------------------------------------------
# Root document
# ---------------------------------------------------------------------
class ConvergeConfig(BaseModel):
    environment: Literal["dev", "staging", "prod"] = "dev"
    cluster: ClusterSettings = ClusterSettings()
    packages: PackageSettings = PackageSettings()
    cni: CniSettings = CniSettings()
    ingress: IngressSettings = IngressSettings()
    firewall: FirewallPolicy = FirewallPolicy()
    network_policies: NetworkPolicySettings = NetworkPolicySettings()
    preflight: PreflightSettings = PreflightSettings()
    storage: StorageSettings = StorageSettings()
    tailscale: Optional[TailscaleSettings] = None
    tunnel: Optional[TunnelSettings] = None
    ssh: SshSettings = SshSettings()
    timeouts: TimeoutSettings = TimeoutSettings()
    nodes: List[Node] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_nodes(self) -> "ConvergeConfig":
        seen_hosts: Dict[str, Node] = {}
        seen_ips: Dict[str, Node] = {}
        for n in self.nodes:
            if n.hostname in seen_hosts:
                raise ValueError(f"duplicate hostname '{n.hostname}' in inventory")
            ip = str(ipaddress.ip_address(n.ip))
            if ip in seen_ips:
                raise ValueError(
                    f"duplicate ip {n.ip} (nodes '{seen_ips[ip].hostname}' and '{n.hostname}')"
                )
            seen_hosts[n.hostname] = n
            seen_ips[ip] = n
        return self

    @model_validator(mode="after")
    def _join_endpoint_known(self) -> "ConvergeConfig":
        c = self.cluster
        if c.join and not (c.join.endpoint or c.control_plane_endpoint or c.advertise_address or self.masters()):
            raise ValueError("cluster.join needs an endpoint when the inventory has no master")
        return self

    # Helper methods
    def by_hostname(self) -> Dict[str, Node]:
        return {n.hostname: n for n in self.nodes}

    def node(self, hostname: str) -> Node:
        try:
            return self.by_hostname()[hostname]
        except KeyError:
            raise KeyError(f"node '{hostname}' not found in inventory") from None

    def masters(self) -> List[Node]:
        return [n for n in self.nodes if n.role == Role.MASTER]

    def advertise_address(self) -> str:
        if self.cluster.advertise_address:
            return self.cluster.advertise_address
        masters = self.masters()
        if not masters:
            raise ValueError("no master node in inventory and cluster.advertise_address is unset")
        return masters[0].ip

    def control_plane_endpoint(self) -> str:
        return self.cluster.control_plane_endpoint or f"{self.advertise_address()}:6443"

    def ssh_for(self, node: Node) -> SshSettings:
        return node.ssh or self.ssh

    def firewall_rules_for(self, node: Node) -> List[AllowRule]:
        """Configured rules applicable to *node*, plus the cluster CIDR allows."""
        rules = [r for r in self.firewall.rules if r.applies_to(node)]
        rules.append(AllowRule(name="pod-network", protocol="any", cidr=self.cluster.pod_cidr))
        if self.cluster.node_cidr:
            rules.append(AllowRule(name="node-network", protocol="any", cidr=self.cluster.node_cidr))
        return rules
