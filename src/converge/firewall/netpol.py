# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/firewall/netpol.py
from __future__ import annotations

from typing import Any, Dict, List

import yaml

from converge.config.models import NetworkPolicySettings


def _policy(name: str, namespace: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
    }


def render_network_policies(settings: NetworkPolicySettings) -> List[Dict[str, Any]]:
    """
    Default-deny-all first, then the explicit allows, for every namespace.
    NetworkPolicies are additive so the deny never shadows an allow.
    """
    docs: List[Dict[str, Any]] = []
    for ns in settings.namespaces:
        docs.append(
            _policy("default-deny-all", ns, {"podSelector": {}, "policyTypes": ["Ingress", "Egress"]})
        )
        if settings.allow_dns:
            docs.append(
                _policy(
                    "allow-dns-access",
                    ns,
                    {
                        "podSelector": {},
                        "policyTypes": ["Egress"],
                        "egress": [
                            {
                                "to": [
                                    {
                                        "namespaceSelector": {
                                            "matchLabels": {"kubernetes.io/metadata.name": "kube-system"}
                                        },
                                        "podSelector": {"matchLabels": {"k8s-app": "kube-dns"}},
                                    }
                                ],
                                "ports": [
                                    {"protocol": "UDP", "port": 53},
                                    {"protocol": "TCP", "port": 53},
                                ],
                            }
                        ],
                    },
                )
            )
        if settings.allow_internet_egress:
            docs.append(
                _policy(
                    "allow-internet-egress",
                    ns,
                    {
                        "podSelector": {},
                        "policyTypes": ["Egress"],
                        "egress": [
                            {"to": [{"ipBlock": {"cidr": "0.0.0.0/0", "except": list(settings.private_cidrs)}}]}
                        ],
                    },
                )
            )
    return docs


def to_yaml(docs: List[Dict[str, Any]]) -> str:
    return yaml.safe_dump_all(docs, sort_keys=False)


def spec_matches(desired: Dict[str, Any], observed: Dict[str, Any]) -> bool:
    """Compare the spec of a rendered policy with ``kubectl get -o json`` output."""
    return desired.get("spec") == (observed or {}).get("spec")
