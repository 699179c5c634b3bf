import os
import shutil
import subprocess
import tempfile

from pv_migrate.errors import CommandError
from pv_migrate.portforward import port_forward_to_sshd
from pv_migrate.progress import LogTail
from pv_migrate.strategy.base import (
    DEST_MOUNT_PATH,
    SRC_MOUNT_PATH,
    Strategy,
    build_rsync_command,
    generate_keys,
    install_release,
    pvc_mount,
)

SSH_BINARY = "ssh"
SSH_REVERSE_TUNNEL_PORT = 50000
PRIVATE_KEY_FILE_MODE = 0o600


def write_private_key_file(private_key):
    fd, path = tempfile.mkstemp(prefix="pv-migrate-private-key-")
    with os.fdopen(fd, "w") as f:
        f.write(private_key)
    os.chmod(path, PRIVATE_KEY_FILE_MODE)
    return path


def build_ssh_command(ssh_binary, key_file, src_port, dest_port, rsync_command):
    return [
        ssh_binary,
        "-i", key_file,
        "-p", str(src_port),
        "-R", f"{SSH_REVERSE_TUNNEL_PORT}:localhost:{dest_port}",
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "root@localhost",
        rsync_command,
    ]


def run_local_command(attempt, cmd):
    """Run ``cmd`` on this machine, feeding its output to the progress tail."""
    req = attempt.migration.request

    proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
    tail = LogTail(
        lambda since_seconds: proc.stdout,
        show_progress_bar=req.show_progress_bar,
        writer=req.writer,
        logger=attempt.logger,
        reopen=False,
    )
    tail.start()

    returncode = None
    try:
        returncode = proc.wait()
    finally:
        if returncode is None:
            proc.kill()
            proc.wait()
        tail.mark_complete(returncode == 0)

    if returncode != 0:
        raise CommandError(f"rsync over ssh exited with code {returncode}")


class Local(Strategy):
    """
    For when neither side can reach the other: both sshd pods are
    port-forwarded to this machine and the source pushes to the destination
    through a reverse tunnel of a local ssh session.
    """

    name = "local"

    def migrate(self, attempt):
        ssh_binary = shutil.which(SSH_BINARY)
        if ssh_binary is None:
            raise CommandError("ssh binary not found")

        mig = attempt.migration
        req = mig.request
        source_info = mig.source_info
        dest_info = mig.dest_info

        public_key, private_key, key_mount_path = generate_keys(attempt)

        src_release = f"{attempt.release_name_prefix}-src"
        dest_release = f"{attempt.release_name_prefix}-dest"

        install_release(attempt, source_info, src_release, {
            "sshd": {
                "enabled": True,
                "namespace": source_info.namespace,
                "publicKey": public_key,
                "privateKeyMount": True,
                "privateKey": private_key,
                "privateKeyMountPath": key_mount_path,
                "pvcMounts": [pvc_mount(source_info, SRC_MOUNT_PATH, req.source_mount_read_only)],
                "affinity": source_info.affinity,
            },
        })
        install_release(attempt, dest_info, dest_release, {
            "sshd": {
                "enabled": True,
                "namespace": dest_info.namespace,
                "publicKey": public_key,
                "pvcMounts": [pvc_mount(dest_info, DEST_MOUNT_PATH)],
                "affinity": dest_info.affinity,
            },
        })

        rsync_command = build_rsync_command(
            req,
            dest_use_ssh=True,
            dest_ssh_host="localhost",
            port=SSH_REVERSE_TUNNEL_PORT,
        )

        src_fwd = port_forward_to_sshd(source_info.cluster_client, source_info.namespace, src_release, attempt.logger)
        with src_fwd:
            dest_fwd = port_forward_to_sshd(dest_info.cluster_client, dest_info.namespace, dest_release, attempt.logger)
            with dest_fwd:
                key_file = write_private_key_file(private_key)
                try:
                    cmd = build_ssh_command(ssh_binary, key_file, src_fwd.local_port, dest_fwd.local_port, rsync_command)
                    run_local_command(attempt, cmd)
                finally:
                    os.remove(key_file)
