from pv_migrate.errors import JobFailedError
from pv_migrate.k8s import wait_for_pod, wait_for_pod_termination
from pv_migrate.log import get_logger
from pv_migrate.progress import LogTail

SUCCEEDED = "Succeeded"


def wait_for_job_completion(cluster_client, namespace, name, show_progress_bar=False, writer=None, logger=None):
    """
    Wait for the rsync job to finish while tailing its pod's logs.

    Success is decided by the pod's terminal phase only, never by the end of
    the log stream.

    :raises JobFailedError: the job pod ended in any phase but Succeeded
    """
    logger = logger or get_logger()

    pod = wait_for_pod(cluster_client, namespace, f"job-name={name}")
    pod_name = pod.metadata.name
    logger.debug(f"[~] Tailing logs of pod {namespace}/{pod_name}")

    def open_stream(since_seconds):
        kwargs = {"follow": True, "_preload_content": False}
        if since_seconds is not None:
            kwargs["since_seconds"] = since_seconds
        return cluster_client.core.read_namespaced_pod_log(pod_name, namespace, **kwargs)

    tail = LogTail(open_stream, show_progress_bar=show_progress_bar, writer=writer, logger=logger)
    tail.start()

    phase = None
    try:
        phase = wait_for_pod_termination(cluster_client, namespace, pod_name)
    finally:
        tail.mark_complete(phase == SUCCEEDED)

    if phase != SUCCEEDED:
        raise JobFailedError(namespace, name)

    logger.debug(f"[✓] Job {namespace}/{name} completed")
