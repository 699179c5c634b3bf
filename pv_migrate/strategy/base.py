from pv_migrate import helm
from pv_migrate.errors import Unaccepted
from pv_migrate.job import wait_for_job_completion
from pv_migrate.rsync import RsyncCommand
from pv_migrate.ssh import create_ssh_key_pair, private_key_mount_path

SRC_MOUNT_PATH = "/source"
DEST_MOUNT_PATH = "/dest"

SERVICE_TYPE_CLUSTER_IP = "ClusterIP"
SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"
SERVICE_TYPE_NODE_PORT = "NodePort"


class Strategy:
    """
    A way of connecting the source volume to the destination volume.

    ``run`` checks ``accepts`` first, then calls ``migrate`` and always
    uninstalls the releases the attempt recorded, whatever the outcome.
    Strategies hold no state; everything lives on the attempt.
    """

    name = None

    def accepts(self, migration):
        return True

    def migrate(self, attempt):
        raise NotImplementedError

    def run(self, attempt):
        if not self.accepts(attempt.migration):
            raise Unaccepted(f"strategy {self.name} cannot handle this migration")

        try:
            self.migrate(attempt)
        finally:
            attempt.cleanup()


# -----------------------------------------------------------------------------
# Shared helpers
# -----------------------------------------------------------------------------
def src_path(request):
    return f"{SRC_MOUNT_PATH}/{request.source.path}"


def dest_path(request):
    return f"{DEST_MOUNT_PATH}/{request.dest.path}"


def build_rsync_command(request, **kwargs):
    cmd = RsyncCommand(
        src_path=src_path(request),
        dest_path=dest_path(request),
        no_chown=request.no_chown,
        delete=request.delete_extraneous_files,
        compress=request.compress,
        **kwargs,
    )
    return cmd.build()


def pvc_mount(pvc_info, mount_path, read_only=None):
    mount = {"name": pvc_info.name, "mountPath": mount_path}
    if read_only is not None:
        mount["readOnly"] = read_only
    return mount


def generate_keys(attempt):
    """Return ``(public_key, private_key, private_key_mount_path)`` for the attempt."""
    algorithm = attempt.migration.request.key_algorithm
    attempt.logger.info("[~] Generating SSH key pair", extra={"fields": {"algorithm": algorithm}})
    public_key, private_key = create_ssh_key_pair(algorithm)
    return public_key, private_key, private_key_mount_path(algorithm)


def install_release(attempt, pvc_info, release_name, values):
    """Install the chart next to ``pvc_info`` and record the release for cleanup."""
    mig = attempt.migration
    req = mig.request

    # recorded before installing so a half-done install is cleaned up as well
    attempt.record_release(release_name, pvc_info.namespace, pvc_info.cluster_client)

    helm.install(
        pvc_info.cluster_client,
        pvc_info.namespace,
        release_name,
        values,
        timeout=max(req.helm_timeout, req.lb_svc_timeout),
        chart=mig.chart,
        values_files=req.helm_values_files,
        set_values=req.helm_set,
        set_string_values=req.helm_set_string,
        set_file_values=req.helm_set_file,
        attempt_id=attempt.id,
        logger=attempt.logger,
    )


def wait_for_rsync_job(attempt, pvc_info, release_name):
    req = attempt.migration.request
    wait_for_job_completion(
        pvc_info.cluster_client,
        pvc_info.namespace,
        f"{release_name}-rsync",
        show_progress_bar=req.show_progress_bar,
        writer=req.writer,
        logger=attempt.logger,
    )


def sshd_values(attempt, public_key, service_type=None):
    """Values for an sshd side serving the source volume."""
    mig = attempt.migration
    info = mig.source_info
    values = {
        "enabled": True,
        "namespace": info.namespace,
        "publicKey": public_key,
        "pvcMounts": [pvc_mount(info, SRC_MOUNT_PATH, mig.request.source_mount_read_only)],
        "affinity": info.affinity,
    }
    if service_type:
        values["service"] = {"type": service_type}
    return values


def rsync_values(attempt, private_key, key_mount_path, command, ssh_host, ssh_port=None):
    """Values for an rsync job pulling into the destination volume over SSH."""
    info = attempt.migration.dest_info
    values = {
        "enabled": True,
        "namespace": info.namespace,
        "privateKeyMount": True,
        "privateKey": private_key,
        "privateKeyMountPath": key_mount_path,
        "sshRemoteHost": ssh_host,
        "pvcMounts": [pvc_mount(info, DEST_MOUNT_PATH)],
        "command": command,
        "affinity": info.affinity,
    }
    if ssh_port:
        values["sshRemotePort"] = ssh_port
    return values
