import yaml

from converge.config.models import NetworkPolicySettings
from converge.firewall.netpol import render_network_policies, spec_matches, to_yaml


def test_default_deny_comes_first_per_namespace():
    docs = render_network_policies(NetworkPolicySettings(namespaces=["default", "apps"]))
    names = [(d["metadata"]["namespace"], d["metadata"]["name"]) for d in docs]
    assert names == [
        ("default", "default-deny-all"),
        ("default", "allow-dns-access"),
        ("default", "allow-internet-egress"),
        ("apps", "default-deny-all"),
        ("apps", "allow-dns-access"),
        ("apps", "allow-internet-egress"),
    ]
    deny = docs[0]["spec"]
    assert deny == {"podSelector": {}, "policyTypes": ["Ingress", "Egress"]}


def test_internet_egress_excludes_private_ranges():
    docs = render_network_policies(NetworkPolicySettings(allow_dns=False))
    (egress,) = [d for d in docs if d["metadata"]["name"] == "allow-internet-egress"]
    block = egress["spec"]["egress"][0]["to"][0]["ipBlock"]
    assert block["cidr"] == "0.0.0.0/0"
    assert "192.168.0.0/16" in block["except"]


def test_allows_can_be_disabled():
    docs = render_network_policies(NetworkPolicySettings(allow_dns=False, allow_internet_egress=False))
    assert [d["metadata"]["name"] for d in docs] == ["default-deny-all"]


def test_yaml_round_trips_as_multi_document():
    docs = render_network_policies(NetworkPolicySettings())
    assert list(yaml.safe_load_all(to_yaml(docs))) == docs


def test_spec_matches_ignores_server_metadata():
    doc = render_network_policies(NetworkPolicySettings())[0]
    observed = {**doc, "metadata": {**doc["metadata"], "uid": "1234", "resourceVersion": "9"}}
    assert spec_matches(doc, observed)
    assert not spec_matches(doc, {**observed, "spec": {"podSelector": {}, "policyTypes": ["Ingress"]}})
    assert not spec_matches(doc, None)
