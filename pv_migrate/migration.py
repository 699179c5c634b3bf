import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from pv_migrate import helm
from pv_migrate.log import get_logger, with_fields
from pv_migrate.ssh import ED25519_KEY_ALGORITHM

DEFAULT_STRATEGIES = ["mount", "clusterip", "lbsvc"]
DEFAULT_HELM_TIMEOUT = 60
DEFAULT_LB_SVC_TIMEOUT = 120

RELEASE_NAME_PREFIX = "pv-migrate"
ATTEMPT_ID_LENGTH = 5


@dataclass(frozen=True)
class PVCRef:
    name: str
    namespace: str = ""
    path: str = ""
    kubeconfig_path: str = ""
    context: str = ""

    @property
    def client_key(self):
        return (self.kubeconfig_path, self.context)


@dataclass(frozen=True)
class Request:
    """Everything a migration run needs, as given by the caller."""

    source: PVCRef
    dest: PVCRef
    delete_extraneous_files: bool = False
    ignore_mounted: bool = False
    no_chown: bool = False
    show_progress_bar: bool = False
    source_mount_read_only: bool = True
    compress: bool = True
    skip_cleanup: bool = False
    key_algorithm: str = ED25519_KEY_ALGORITHM
    strategies: List[str] = field(default_factory=lambda: list(DEFAULT_STRATEGIES))
    helm_values_files: List[str] = field(default_factory=list)
    helm_set: List[str] = field(default_factory=list)
    helm_set_string: List[str] = field(default_factory=list)
    helm_set_file: List[str] = field(default_factory=list)
    dest_host_override: str = ""
    node_port: int = 0
    helm_timeout: float = DEFAULT_HELM_TIMEOUT
    lb_svc_timeout: float = DEFAULT_LB_SVC_TIMEOUT
    writer: Optional[object] = None
    logger: Optional[object] = None


class Migration:
    """
    The classified source and destination of one run, plus the release
    tracker shared by all of its attempts.
    """

    def __init__(self, source_info, dest_info, request, logger=None, chart=helm.CHART_DIR):
        self.source_info = source_info
        self.dest_info = dest_info
        self.request = request
        self.logger = logger or get_logger()
        self.chart = chart
        self.tracker = helm.ReleaseTracker(
            timeout=request.helm_timeout,
            skip_cleanup=request.skip_cleanup,
            logger=self.logger,
        )


def new_attempt_id():
    return secrets.token_hex(3)[:ATTEMPT_ID_LENGTH]


class Attempt:
    """One strategy try. Owns a fresh id and the release names derived from it."""

    def __init__(self, migration, attempt_id=None):
        self.migration = migration
        self.id = attempt_id or new_attempt_id()
        self.release_name_prefix = f"{RELEASE_NAME_PREFIX}-{self.id}"
        self.logger = with_fields(migration.logger, id=self.id)
        self.releases = []

    def record_release(self, name, namespace, cluster_client):
        self.releases.append(self.migration.tracker.add(name, namespace, cluster_client))

    def cleanup(self):
        return self.migration.tracker.cleanup(self.releases, logger=self.logger)
