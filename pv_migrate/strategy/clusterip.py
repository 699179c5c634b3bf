from pv_migrate.k8s import same_cluster
from pv_migrate.strategy.base import (
    Strategy,
    build_rsync_command,
    generate_keys,
    install_release,
    rsync_values,
    sshd_values,
    wait_for_rsync_job,
)


def sshd_service_host(release_name, namespace):
    return f"{release_name}-sshd.{namespace}"


class ClusterIP(Strategy):
    """
    One release with the sshd side next to the source claim and the rsync
    job next to the destination claim, talking over in-cluster DNS.
    """

    name = "clusterip"

    def accepts(self, migration):
        return same_cluster(migration.source_info.cluster_client, migration.dest_info.cluster_client)

    def migrate(self, attempt):
        mig = attempt.migration
        req = mig.request

        public_key, private_key, key_mount_path = generate_keys(attempt)

        release_name = attempt.release_name_prefix
        ssh_host = req.dest_host_override or sshd_service_host(release_name, mig.source_info.namespace)

        command = build_rsync_command(req, src_use_ssh=True, src_ssh_host=ssh_host)
        values = {
            "rsync": rsync_values(attempt, private_key, key_mount_path, command, ssh_host),
            "sshd": sshd_values(attempt, public_key),
        }

        install_release(attempt, mig.dest_info, release_name, values)
        wait_for_rsync_job(attempt, mig.dest_info, release_name)
