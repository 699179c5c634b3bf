from pv_migrate.k8s import same_cluster
from pv_migrate.strategy.base import (
    DEST_MOUNT_PATH,
    SRC_MOUNT_PATH,
    Strategy,
    build_rsync_command,
    install_release,
    pvc_mount,
    wait_for_rsync_job,
)


def _exclusively_mounted(info):
    return bool(info.mounted_node) and not info.supports_rox and not info.supports_rwx


def determine_target_node(source_info, dest_info):
    """
    Pick the node the rsync pod must run on to mount both claims.

    A claim that is mounted and cannot be attached elsewhere wins, source
    first. Otherwise any mounted node is preferred. "" means no pin.
    """
    if _exclusively_mounted(source_info):
        return source_info.mounted_node
    if _exclusively_mounted(dest_info):
        return dest_info.mounted_node
    if source_info.mounted_node:
        return source_info.mounted_node
    return dest_info.mounted_node


class Mount(Strategy):
    """Mounts both claims into a single rsync job, no SSH involved."""

    name = "mount"

    def accepts(self, migration):
        s = migration.source_info
        d = migration.dest_info

        if not same_cluster(s.cluster_client, d.cluster_client):
            return False
        if s.namespace != d.namespace:
            return False

        same_node = s.mounted_node == d.mounted_node
        one_unmounted = not s.mounted_node or not d.mounted_node

        return same_node or one_unmounted or s.supports_rox or s.supports_rwx or d.supports_rwx

    def migrate(self, attempt):
        mig = attempt.migration
        req = mig.request
        source_info = mig.source_info
        dest_info = mig.dest_info

        release_name = attempt.release_name_prefix
        values = {
            "rsync": {
                "enabled": True,
                "namespace": source_info.namespace,
                "nodeName": determine_target_node(source_info, dest_info),
                "pvcMounts": [
                    pvc_mount(source_info, SRC_MOUNT_PATH, req.source_mount_read_only),
                    pvc_mount(dest_info, DEST_MOUNT_PATH),
                ],
                "command": build_rsync_command(req),
                "affinity": source_info.affinity,
            },
        }

        install_release(attempt, source_info, release_name, values)
        wait_for_rsync_job(attempt, source_info, release_name)
