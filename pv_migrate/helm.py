import math
import os
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass

import yaml

from pv_migrate.errors import InstallError, UninstallError
from pv_migrate.log import get_logger

CHART_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "chart")

HELM_BINARY = "helm"
DEFAULT_TIMEOUT_SECONDS = 60

# helm enforces --timeout itself, the process deadline only catches a hung binary
PROCESS_GRACE_SECONDS = 30


# -----------------------------------------------------------------------------
# helm process
# -----------------------------------------------------------------------------
def run_helm(args, timeout):
    """Run the helm binary and return the CompletedProcess."""
    helm = shutil.which(HELM_BINARY)
    if helm is None:
        raise FileNotFoundError(f"{HELM_BINARY} binary not found in PATH")

    # HELM_DRIVER and friends are inherited from the environment
    return subprocess.run(
        [helm, *args],
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def _duration(seconds):
    return f"{int(math.ceil(seconds))}s"


def _cluster_args(cluster_client):
    args = []
    if cluster_client.kubeconfig_path:
        args += ["--kubeconfig", cluster_client.resolved_path]
    if cluster_client.context:
        args += ["--kube-context", cluster_client.context]
    return args


def _overlay_args(values_files=(), set_values=(), set_string_values=(), set_file_values=()):
    args = []
    for path in values_files or ():
        args += ["-f", path]
    for value in set_values or ():
        args += ["--set", value]
    for value in set_string_values or ():
        args += ["--set-string", value]
    for value in set_file_values or ():
        args += ["--set-file", value]
    return args


def write_values_file(attempt_id, values):
    """Write values to a private temp file and return its path. The caller removes it."""
    fd, path = tempfile.mkstemp(prefix=f"pv-migrate-vals-{attempt_id}-", suffix=".yaml")
    with os.fdopen(fd, "w") as f:
        yaml.safe_dump(values, f, indent=2, sort_keys=False, default_flow_style=False)
    return path


# -----------------------------------------------------------------------------
# Install / uninstall
# -----------------------------------------------------------------------------
def install(cluster_client, namespace, release_name, values, timeout=DEFAULT_TIMEOUT_SECONDS,
            chart=CHART_DIR, values_files=(), set_values=(), set_string_values=(),
            set_file_values=(), attempt_id="", logger=None):
    """
    Install the chart as ``release_name`` and wait for its resources.

    ``values`` is written to a temp file and passed first, user overlays follow
    in the order values files, --set, --set-string, --set-file so the later
    ones win.

    :raises InstallError: helm failed or did not finish within the timeout
    """
    logger = logger or get_logger()

    values_file = write_values_file(attempt_id, values)
    try:
        args = [
            "install", release_name, chart,
            "--namespace", namespace,
            "--wait",
            "--timeout", _duration(timeout),
            "-f", values_file,
        ]
        args += _overlay_args(values_files, set_values, set_string_values, set_file_values)
        args += _cluster_args(cluster_client)

        logger.debug(f"[~] Installing release {namespace}/{release_name}")
        try:
            result = run_helm(args, timeout + PROCESS_GRACE_SECONDS)
        except subprocess.TimeoutExpired as e:
            raise InstallError(f"helm install of {release_name} timed out") from e
        except OSError as e:
            raise InstallError(f"failed to run helm: {e}") from e

        if result.returncode != 0:
            raise InstallError(f"failed to install release {release_name}: {result.stderr.strip()}")
    finally:
        os.remove(values_file)

    logger.debug(f"[+] Installed release {namespace}/{release_name}")


def uninstall(cluster_client, namespace, release_name, timeout=DEFAULT_TIMEOUT_SECONDS):
    """
    Uninstall a release. A release that does not exist counts as uninstalled.

    :raises UninstallError: any other helm failure
    """
    args = [
        "uninstall", release_name,
        "--namespace", namespace,
        "--wait",
        "--timeout", _duration(timeout),
    ]
    args += _cluster_args(cluster_client)

    try:
        result = run_helm(args, timeout + PROCESS_GRACE_SECONDS)
    except subprocess.TimeoutExpired as e:
        raise UninstallError(f"helm uninstall of {release_name} timed out") from e
    except OSError as e:
        raise UninstallError(f"failed to run helm: {e}") from e

    if result.returncode == 0:
        return
    if "not found" in result.stderr.lower():
        return
    raise UninstallError(f"failed to uninstall release {release_name}: {result.stderr.strip()}")


# -----------------------------------------------------------------------------
# Release tracking
# -----------------------------------------------------------------------------
@dataclass
class ReleaseRecord:
    name: str
    namespace: str
    cluster_client: object
    cleaned: bool = False


class ReleaseTracker:
    """
    Remembers every release installed during a migration so that cleanup
    removes exactly those, from the cluster they were installed on.

    Cleanup may run from a signal handler on the same thread that is already
    cleaning up, hence the re-entrant lock.
    """

    def __init__(self, timeout=DEFAULT_TIMEOUT_SECONDS, skip_cleanup=False, logger=None):
        self.timeout = timeout
        self.skip_cleanup = skip_cleanup
        self.logger = logger or get_logger()
        self._records = []
        self._lock = threading.RLock()

    @property
    def records(self):
        with self._lock:
            return list(self._records)

    def add(self, name, namespace, cluster_client):
        record = ReleaseRecord(name=name, namespace=namespace, cluster_client=cluster_client)
        with self._lock:
            self._records.append(record)
        return record

    def pending(self):
        return [r for r in self.records if not r.cleaned]

    def cleanup(self, records, logger=None):
        """Uninstall the given records, best-effort. Returns the records that failed."""
        logger = logger or self.logger
        with self._lock:
            todo = [r for r in records if not r.cleaned]
            if not todo:
                return []

            names = ", ".join(r.name for r in todo)
            if self.skip_cleanup:
                logger.info(f"[~] Skipping cleanup, releases left in place: {names}")
                for record in todo:
                    record.cleaned = True
                return []

            logger.info(f"[~] Cleaning up releases: {names}")
            failed = []
            for record in todo:
                try:
                    uninstall(record.cluster_client, record.namespace, record.name, self.timeout)
                except UninstallError as e:
                    logger.warning(f"[!] {e}")
                    failed.append(record)
                    continue
                record.cleaned = True

            if failed:
                logger.warning("[!] Cleanup failed, you might want to clean up manually")
            else:
                logger.info("[✓] Cleanup done")
            return failed

    def cleanup_all(self, logger=None):
        return self.cleanup(self.records, logger=logger)
