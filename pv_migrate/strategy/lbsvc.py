from pv_migrate.k8s import format_ssh_target_host, get_service_address
from pv_migrate.strategy.base import (
    SERVICE_TYPE_LOAD_BALANCER,
    Strategy,
    build_rsync_command,
    generate_keys,
    install_release,
    rsync_values,
    sshd_values,
    wait_for_rsync_job,
)


class LoadBalancer(Strategy):
    """Exposes the source sshd through a LoadBalancer service; works across clusters."""

    name = "lbsvc"

    def migrate(self, attempt):
        mig = attempt.migration
        req = mig.request
        source_info = mig.source_info

        public_key, private_key, key_mount_path = generate_keys(attempt)

        src_release = f"{attempt.release_name_prefix}-src"
        dest_release = f"{attempt.release_name_prefix}-dest"

        install_release(attempt, source_info, src_release, {
            "sshd": sshd_values(attempt, public_key, SERVICE_TYPE_LOAD_BALANCER),
        })

        address = get_service_address(
            source_info.cluster_client,
            source_info.namespace,
            f"{src_release}-sshd",
            req.lb_svc_timeout,
        )
        attempt.logger.info(f"[+] Load balancer address: {address}")

        ssh_host = req.dest_host_override or format_ssh_target_host(address)
        command = build_rsync_command(req, src_use_ssh=True, src_ssh_host=ssh_host)

        install_release(attempt, mig.dest_info, dest_release, {
            "rsync": rsync_values(attempt, private_key, key_mount_path, command, ssh_host),
        })
        wait_for_rsync_job(attempt, mig.dest_info, dest_release)
