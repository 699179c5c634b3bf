import pytest

from pv_migrate import helm

from tests.fakes import make_cluster_client


@pytest.fixture
def cluster_client():
    return make_cluster_client()


@pytest.fixture
def helm_calls(monkeypatch):
    """
    Record helm install/uninstall calls instead of running the binary.

    Each entry is ``(action, release_name, namespace, cluster_client, values)``.
    """
    calls = []

    def fake_install(cluster_client, namespace, release_name, values, **kwargs):
        calls.append(("install", release_name, namespace, cluster_client, values))

    def fake_uninstall(cluster_client, namespace, release_name, timeout=None):
        calls.append(("uninstall", release_name, namespace, cluster_client, None))

    monkeypatch.setattr(helm, "install", fake_install)
    monkeypatch.setattr(helm, "uninstall", fake_uninstall)
    return calls


@pytest.fixture
def job_waits(monkeypatch):
    """Record rsync job waits instead of watching pods."""
    waits = []

    def fake_wait(cluster_client, namespace, name, **kwargs):
        waits.append((cluster_client, namespace, name))

    monkeypatch.setattr("pv_migrate.strategy.base.wait_for_job_completion", fake_wait)
    return waits
