from unittest.mock import MagicMock

import pytest
from kubernetes import config

from pv_migrate import k8s
from pv_migrate.errors import ConfigError, LBTimeoutError, PvMigrateError

from tests.fakes import (
    FakeWatch,
    make_cluster_client,
    make_node,
    make_pod,
    make_port,
    make_service,
)


@pytest.fixture
def watch_objects(monkeypatch):
    """Make every watch replay the objects appended to the returned list."""
    objects = []
    monkeypatch.setattr(k8s.watch, "Watch", lambda: FakeWatch(objects))
    return objects


# -----------------------------------------------------------------------------
# Cluster client
# -----------------------------------------------------------------------------
def test_cluster_client_equality():
    a = k8s.ClusterClient(MagicMock(), "https://a", "ns", "/kube/config", "ctx", resolved_path="/kube/config")
    b = k8s.ClusterClient(MagicMock(), "https://a", "ns", "/kube/config", "ctx", resolved_path="/kube/config")
    c = k8s.ClusterClient(MagicMock(), "https://a", "ns", "/kube/config", "other", resolved_path="/kube/config")

    assert a == b
    assert hash(a) == hash(b)
    assert a != c


def test_resolve_kubeconfig_path(monkeypatch):
    monkeypatch.setenv("KUBECONFIG", "/env/kubeconfig")
    assert k8s.resolve_kubeconfig_path("/explicit") == "/explicit"
    assert k8s.resolve_kubeconfig_path("") == "/env/kubeconfig"

    monkeypatch.delenv("KUBECONFIG")
    assert k8s.resolve_kubeconfig_path("").endswith("/.kube/config")


def _fake_kubeconfig(monkeypatch, contexts, active):
    api_client = MagicMock()
    api_client.configuration.host = "https://cluster-a:6443"
    monkeypatch.setattr(config, "list_kube_config_contexts", lambda config_file=None: (contexts, active))
    monkeypatch.setattr(config, "new_client_from_config", lambda config_file=None, context=None: api_client)


def test_get_cluster_client_uses_context_namespace(monkeypatch):
    contexts = [
        {"name": "a", "context": {"cluster": "a", "namespace": "team-a"}},
        {"name": "b", "context": {"cluster": "b"}},
    ]
    _fake_kubeconfig(monkeypatch, contexts, contexts[0])

    cc = k8s.get_cluster_client("/kube/config")
    assert cc.namespace == "team-a"
    assert cc.host == "https://cluster-a:6443"
    assert cc.key == ("/kube/config", "")

    cc = k8s.get_cluster_client("/kube/config", "b")
    assert cc.namespace == "default"
    assert cc.context == "b"


def test_get_cluster_client_missing_context(monkeypatch):
    contexts = [{"name": "a", "context": {"cluster": "a"}}]
    _fake_kubeconfig(monkeypatch, contexts, contexts[0])

    with pytest.raises(ConfigError):
        k8s.get_cluster_client("/kube/config", "nope")


def test_get_cluster_client_bad_kubeconfig(monkeypatch):
    def broken(config_file=None):
        raise config.ConfigException("Invalid kube-config file. No configuration found.")

    monkeypatch.setattr(config, "list_kube_config_contexts", broken)
    with pytest.raises(ConfigError):
        k8s.get_cluster_client("/kube/config")


# -----------------------------------------------------------------------------
# Addresses
# -----------------------------------------------------------------------------
@pytest.mark.parametrize("host, expected", [
    ("203.0.113.5", "203.0.113.5"),
    ("lb.example.com", "lb.example.com"),
    ("::1", "[::1]"),
    ("2001:db8::10", "[2001:db8::10]"),
    ("[::1]", "[::1]"),
    ("not:an:address", "not:an:address"),
])
def test_format_ssh_target_host(host, expected):
    assert k8s.format_ssh_target_host(host) == expected


def test_service_address_prefers_hostname(watch_objects):
    watch_objects.append(make_service("svc", ingress=[{"ip": "203.0.113.5", "hostname": "lb.example.com"}]))
    assert k8s.get_service_address(make_cluster_client(), "ns1", "svc", 5) == "lb.example.com"


def test_service_address_waits_for_ingress(watch_objects):
    watch_objects.append(make_service("svc"))
    watch_objects.append(make_service("svc", ingress=[{"ip": "203.0.113.5"}]))
    assert k8s.get_service_address(make_cluster_client(), "ns1", "svc", 5) == "203.0.113.5"


def test_service_address_cluster_ip(watch_objects):
    watch_objects.append(make_service("svc", namespace="ns2", svc_type="ClusterIP"))
    assert k8s.get_service_address(make_cluster_client(), "ns2", "svc", 5) == "svc.ns2"


def test_service_address_timeout(watch_objects):
    watch_objects.append(make_service("svc"))
    with pytest.raises(LBTimeoutError):
        k8s.get_service_address(make_cluster_client(), "ns1", "svc", 0.05)


def test_find_node_port():
    svc = make_service("svc", svc_type="NodePort", ports=[
        make_port(8080, node_port=30001, name="http"),
        make_port(22, node_port=30022),
    ])
    assert k8s.find_node_port(svc) == 30022

    svc = make_service("svc", svc_type="NodePort", ports=[
        make_port(2222, node_port=30001),
        make_port(2223, node_port=30002, name="ssh"),
    ])
    assert k8s.find_node_port(svc) == 30002

    svc = make_service("svc", svc_type="NodePort", ports=[make_port(8080, node_port=30001)])
    assert k8s.find_node_port(svc) == 30001

    with pytest.raises(PvMigrateError):
        k8s.find_node_port(make_service("svc", svc_type="NodePort", ports=[]))


def test_get_node_port_waits_for_assignment(watch_objects):
    watch_objects.append(make_service("svc", svc_type="NodePort", ports=[make_port(22)]))
    watch_objects.append(make_service("svc", svc_type="NodePort", ports=[make_port(22, node_port=31000)]))
    assert k8s.get_node_port(make_cluster_client(), "ns1", "svc", 5) == 31000


def test_node_ip_of_named_node():
    cc = make_cluster_client()
    cc.core.read_node.return_value = make_node("node-1", [("Hostname", "node-1"), ("InternalIP", "10.0.0.1")])
    assert k8s.get_node_ip(cc, "node-1") == "10.0.0.1"


def test_node_ip_falls_back_to_any_node():
    cc = make_cluster_client()
    cc.core.read_node.return_value = make_node("node-1", [("Hostname", "node-1")])
    cc.core.list_node.return_value = MagicMock(items=[
        make_node("node-1", [("Hostname", "node-1")]),
        make_node("node-2", [("ExternalIP", "198.51.100.7")]),
    ])
    assert k8s.get_node_ip(cc, "node-1") == "198.51.100.7"


def test_node_ip_none_found():
    cc = make_cluster_client()
    cc.core.list_node.return_value = MagicMock(items=[make_node("node-1", [("Hostname", "node-1")])])
    with pytest.raises(PvMigrateError):
        k8s.get_node_ip(cc, "")


# -----------------------------------------------------------------------------
# Pods
# -----------------------------------------------------------------------------
def test_wait_for_pod_skips_pending(watch_objects):
    watch_objects.append(make_pod("p", phase="Pending"))
    watch_objects.append(make_pod("p", phase="Running", node_name="node-1"))
    pod = k8s.wait_for_pod(make_cluster_client(), "ns1", "job-name=x")
    assert pod.spec.node_name == "node-1"


def test_wait_for_pod_termination(watch_objects):
    watch_objects.append(make_pod("p", phase="Running"))
    watch_objects.append(make_pod("p", phase="Failed"))
    assert k8s.wait_for_pod_termination(make_cluster_client(), "ns1", "p") == "Failed"


def test_deleted_running_pod_counts_as_failed(watch_objects):
    watch_objects.append(make_pod("p", phase="Running"))
    watch_objects.append(("DELETED", make_pod("p", phase="Running")))
    assert k8s.wait_for_pod_termination(make_cluster_client(), "ns1", "p") == "Failed"


def test_deleted_pod_keeps_its_terminal_phase(watch_objects):
    watch_objects.append(("DELETED", make_pod("p", phase="Succeeded")))
    assert k8s.wait_for_pod_termination(make_cluster_client(), "ns1", "p") == "Succeeded"


def test_unknown_phase_is_terminal(watch_objects):
    watch_objects.append(make_pod("p", phase="Running"))
    watch_objects.append(make_pod("p", phase="Unknown"))
    assert k8s.wait_for_pod_termination(make_cluster_client(), "ns1", "p") == "Unknown"


def test_sshd_label_selector():
    assert k8s.sshd_label_selector("pv-migrate-abcde-src") == (
        "app.kubernetes.io/component=sshd,app.kubernetes.io/instance=pv-migrate-abcde-src"
    )
