import io
import threading

import pytest

from pv_migrate import job
from pv_migrate.errors import JobFailedError

from tests.fakes import make_cluster_client, make_pod


@pytest.fixture
def job_pod(monkeypatch):
    """Serve a job pod whose logs are read before it reaches ``state["phase"]``."""
    state = {"phase": "Succeeded", "selectors": [], "log_read": threading.Event()}

    def fake_wait_for_pod(cluster_client, namespace, selector, timeout=120):
        state["selectors"].append(selector)
        return make_pod("pv-migrate-abcde-rsync-x1", namespace)

    def fake_termination(cluster_client, namespace, name, timeout=None):
        state["log_read"].wait(5)
        return state["phase"]

    monkeypatch.setattr(job, "wait_for_pod", fake_wait_for_pod)
    monkeypatch.setattr(job, "wait_for_pod_termination", fake_termination)
    return state


def _cluster_client(job_pod):
    cc = make_cluster_client()

    def read_log(name, namespace, **kwargs):
        job_pod["log_read"].set()
        return io.BytesIO(b"sending incremental file list\n  1,024 100%  1.00MB/s 0:00:00 (xfr#1, to-chk=0/1)\n")

    cc.core.read_namespaced_pod_log.side_effect = read_log
    return cc


def test_job_succeeds(job_pod):
    cc = _cluster_client(job_pod)
    job.wait_for_job_completion(cc, "ns1", "pv-migrate-abcde-rsync")

    assert job_pod["selectors"] == ["job-name=pv-migrate-abcde-rsync"]
    args, kwargs = cc.core.read_namespaced_pod_log.call_args
    assert args == ("pv-migrate-abcde-rsync-x1", "ns1")
    assert kwargs["follow"] is True
    assert kwargs["_preload_content"] is False


def test_job_fails_on_failed_phase(job_pod):
    job_pod["phase"] = "Failed"
    cc = _cluster_client(job_pod)

    with pytest.raises(JobFailedError) as exc:
        job.wait_for_job_completion(cc, "ns1", "pv-migrate-abcde-rsync")
    assert "ns1/pv-migrate-abcde-rsync" in str(exc.value)


def test_job_fails_when_logs_break(job_pod):
    job_pod["phase"] = "Failed"
    cc = make_cluster_client()

    def broken(name, namespace, **kwargs):
        job_pod["log_read"].set()
        raise ConnectionResetError("stream reset")

    cc.core.read_namespaced_pod_log.side_effect = broken

    with pytest.raises(JobFailedError):
        job.wait_for_job_completion(cc, "ns1", "pv-migrate-abcde-rsync")


def test_job_success_does_not_depend_on_logs(job_pod):
    cc = make_cluster_client()

    def broken(name, namespace, **kwargs):
        job_pod["log_read"].set()
        raise ConnectionResetError("stream reset")

    cc.core.read_namespaced_pod_log.side_effect = broken
    job.wait_for_job_completion(cc, "ns1", "pv-migrate-abcde-rsync")
