from pv_migrate.k8s import (
    format_ssh_target_host,
    get_node_ip,
    get_node_port,
    sshd_label_selector,
    wait_for_pod,
)
from pv_migrate.strategy.base import (
    SERVICE_TYPE_NODE_PORT,
    Strategy,
    build_rsync_command,
    generate_keys,
    install_release,
    rsync_values,
    sshd_values,
    wait_for_rsync_job,
)


def get_node_port_address(cluster_client, namespace, release_name, timeout):
    """
    Return ``(node_ip, node_port)`` for the sshd service of a release,
    preferring the node the sshd pod runs on.
    """
    node_port = get_node_port(cluster_client, namespace, f"{release_name}-sshd", timeout)
    pod = wait_for_pod(cluster_client, namespace, sshd_label_selector(release_name))
    node_ip = get_node_ip(cluster_client, pod.spec.node_name)
    return node_ip, node_port


class NodePort(Strategy):
    """Like lbsvc, but reaches the source sshd through a node IP and a NodePort."""

    name = "nodeport"

    def migrate(self, attempt):
        mig = attempt.migration
        req = mig.request
        source_info = mig.source_info

        public_key, private_key, key_mount_path = generate_keys(attempt)

        src_release = f"{attempt.release_name_prefix}-src"
        dest_release = f"{attempt.release_name_prefix}-dest"

        sshd = sshd_values(attempt, public_key, SERVICE_TYPE_NODE_PORT)
        if req.node_port:
            sshd["service"]["nodePort"] = req.node_port
        install_release(attempt, source_info, src_release, {"sshd": sshd})

        node_ip, node_port = get_node_port_address(
            source_info.cluster_client,
            source_info.namespace,
            src_release,
            req.lb_svc_timeout,
        )
        attempt.logger.info(f"[+] NodePort address: {node_ip}:{node_port}")

        ssh_host = req.dest_host_override or format_ssh_target_host(node_ip)
        command = build_rsync_command(req, src_use_ssh=True, src_ssh_host=ssh_host, port=node_port)

        install_release(attempt, mig.dest_info, dest_release, {
            "rsync": rsync_values(attempt, private_key, key_mount_path, command, ssh_host, node_port),
        })
        wait_for_rsync_job(attempt, mig.dest_info, dest_release)
