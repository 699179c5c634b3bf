import ipaddress
import os
import time

from kubernetes import client, config, watch

from pv_migrate.errors import ConfigError, LBTimeoutError, PvMigrateError

DEFAULT_KUBECONFIG = "~/.kube/config"
DEFAULT_NAMESPACE = "default"

# Upper bound for a single server-side watch; longer waits re-open the watch.
WATCH_SEGMENT_SECONDS = 60
POD_WATCH_TIMEOUT = 120

NODE_ADDRESS_TYPES = ("InternalIP", "ExternalIP")


# -----------------------------------------------------------------------------
# Cluster client
# -----------------------------------------------------------------------------
class ClusterClient:
    """
    A typed Core API handle bound to one (kubeconfig, context) pair.

    Two clients are equal when they were built from the same resolved
    kubeconfig path and the same context name. ``kubeconfig_path`` and
    ``context`` keep the values as given so they can be handed to helm.
    """

    def __init__(self, core, host, namespace, kubeconfig_path="", context="", resolved_path=None):
        self.core = core
        self.host = host
        self.namespace = namespace
        self.kubeconfig_path = kubeconfig_path
        self.context = context
        self.resolved_path = resolved_path or resolve_kubeconfig_path(kubeconfig_path)

    @property
    def key(self):
        return (self.resolved_path, self.context)

    def __eq__(self, other):
        if not isinstance(other, ClusterClient):
            return NotImplemented
        return self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        return f"ClusterClient(host={self.host!r}, kubeconfig={self.resolved_path!r}, context={self.context!r})"


def resolve_kubeconfig_path(kubeconfig_path):
    path = kubeconfig_path or os.environ.get("KUBECONFIG") or DEFAULT_KUBECONFIG
    return os.path.expanduser(path)


def get_cluster_client(kubeconfig_path="", context=""):
    """
    Load the kubeconfig and return a ClusterClient for the given context.

    An empty path falls back to $KUBECONFIG, then ~/.kube/config. An empty
    context uses the current-context of the kubeconfig.
    """
    config_file = kubeconfig_path or None
    try:
        contexts, active = config.list_kube_config_contexts(config_file=config_file)
        api_client = config.new_client_from_config(config_file=config_file, context=context or None)
    except (config.ConfigException, OSError) as e:
        raise ConfigError(f"failed to load kubeconfig: {e}") from e

    selected = active
    if context:
        selected = next((c for c in contexts or [] if c.get("name") == context), None)
        if selected is None:
            raise ConfigError(f"context {context} not found in kubeconfig")

    namespace = ((selected or {}).get("context") or {}).get("namespace") or DEFAULT_NAMESPACE

    return ClusterClient(
        core=client.CoreV1Api(api_client),
        host=api_client.configuration.host,
        namespace=namespace,
        kubeconfig_path=kubeconfig_path,
        context=context,
    )


def same_cluster(a, b):
    return a.host == b.host


# -----------------------------------------------------------------------------
# Watch helper
# -----------------------------------------------------------------------------
def watch_until(list_func, condition, timeout=None, on_deleted=None, **kwargs):
    """
    Watch the objects returned by ``list_func`` until ``condition`` returns
    something other than None, and return that value.

    A DELETED event ends the watch with ``on_deleted(obj)`` when given.

    Returns None once ``timeout`` seconds have passed. Without a timeout the
    watch is re-opened forever.
    """
    deadline = None if timeout is None else time.monotonic() + timeout

    while True:
        segment = WATCH_SEGMENT_SECONDS
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            segment = max(1, min(segment, int(remaining)))

        w = watch.Watch()
        for event in w.stream(list_func, timeout_seconds=segment, **kwargs):
            event_type = event.get("type")
            if event_type == "ERROR":
                continue
            if event_type == "DELETED" and on_deleted is not None:
                w.stop()
                return on_deleted(event["object"])
            result = condition(event["object"])
            if result is not None:
                w.stop()
                return result


# -----------------------------------------------------------------------------
# Pods
# -----------------------------------------------------------------------------
def wait_for_pod(cluster_client, namespace, label_selector, timeout=POD_WATCH_TIMEOUT):
    """Wait for a pod matching the selector to leave the Pending phase."""

    def started(pod):
        if pod.status and pod.status.phase not in (None, "Pending", "Unknown"):
            return pod
        return None

    pod = watch_until(
        cluster_client.core.list_namespaced_pod,
        started,
        timeout=timeout,
        namespace=namespace,
        label_selector=label_selector,
    )
    if pod is None:
        raise PvMigrateError(f"timed out waiting for a pod with labels {label_selector} in {namespace}")
    return pod


def wait_for_pod_termination(cluster_client, namespace, name):
    """
    Block until the pod stops running and return its last phase.

    Any phase past Pending and Running counts as terminal, Unknown included.
    A pod deleted while still running is reported as Failed.
    """

    def terminated(pod):
        phase = pod.status.phase if pod.status else None
        if phase in (None, "Pending", "Running"):
            return None
        return phase

    def deleted(pod):
        return terminated(pod) or "Failed"

    return watch_until(
        cluster_client.core.list_namespaced_pod,
        terminated,
        on_deleted=deleted,
        namespace=namespace,
        field_selector=f"metadata.name={name}",
    )


def sshd_label_selector(release_name):
    return f"app.kubernetes.io/component=sshd,app.kubernetes.io/instance={release_name}"


# -----------------------------------------------------------------------------
# Services
# -----------------------------------------------------------------------------
def get_service_address(cluster_client, namespace, name, timeout):
    """
    Wait for the service to expose an address and return it.

    For a LoadBalancer service this is the ingress hostname if present,
    otherwise the ingress IP. A ClusterIP service resolves to ``<name>.<ns>``.
    """

    def address(svc):
        if svc.spec.type == "ClusterIP":
            return f"{svc.metadata.name}.{svc.metadata.namespace}"
        lb = svc.status.load_balancer if svc.status else None
        ingress = (lb.ingress if lb else None) or []
        if ingress:
            return ingress[0].hostname or ingress[0].ip or None
        return None

    result = watch_until(
        cluster_client.core.list_namespaced_service,
        address,
        timeout=timeout,
        namespace=namespace,
        field_selector=f"metadata.name={name}",
    )
    if result is None:
        raise LBTimeoutError(f"timed out waiting for service {namespace}/{name} to get an address")
    return result


def get_node_port(cluster_client, namespace, name, timeout):
    """Wait for a NodePort service to have its node ports assigned and return the ssh one."""

    def assigned(svc):
        if svc.spec.type != "NodePort":
            return None
        ports = svc.spec.ports or []
        if ports and all(p.node_port for p in ports):
            return svc
        return None

    svc = watch_until(
        cluster_client.core.list_namespaced_service,
        assigned,
        timeout=timeout,
        namespace=namespace,
        field_selector=f"metadata.name={name}",
    )
    if svc is None:
        raise LBTimeoutError(f"timed out waiting for NodePort service {namespace}/{name}")
    return find_node_port(svc)


def find_node_port(svc):
    ports = svc.spec.ports or []
    if not ports:
        raise PvMigrateError("service has no ports defined")

    for port in ports:
        if port.name == "ssh" or port.port == 22:
            return int(port.node_port)

    return int(ports[0].node_port)


# -----------------------------------------------------------------------------
# Nodes
# -----------------------------------------------------------------------------
def _usable_address(node):
    addresses = (node.status.addresses if node.status else None) or []
    for addr in addresses:
        if addr.type in NODE_ADDRESS_TYPES:
            return addr.address
    return None


def get_node_ip(cluster_client, node_name):
    """
    Return an IP of the named node, or of any node in the cluster when the
    named one only exposes a hostname.
    """
    if node_name:
        address = _usable_address(cluster_client.core.read_node(node_name))
        if address:
            return address

    return get_any_node_ip(cluster_client)


def get_any_node_ip(cluster_client):
    for node in cluster_client.core.list_node().items:
        address = _usable_address(node)
        if address:
            return address

    raise PvMigrateError("no node with a usable IP address found")


# -----------------------------------------------------------------------------
# Addresses
# -----------------------------------------------------------------------------
def is_ipv6(host):
    try:
        return ipaddress.ip_address(host).version == 6
    except ValueError:
        return False


def format_ssh_target_host(host):
    if is_ipv6(host):
        return f"[{host}]"
    return host
