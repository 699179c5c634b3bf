import select
import socket
import threading

from kubernetes.stream import portforward

from pv_migrate.errors import PortForwardError
from pv_migrate.k8s import sshd_label_selector, wait_for_pod
from pv_migrate.log import get_logger

LOCALHOST = "127.0.0.1"
SSHD_PORT = 22
READY_TIMEOUT_SECONDS = 30
ACCEPT_TIMEOUT_SECONDS = 0.5
RELAY_BUFFER = 64 * 1024


def get_free_port():
    """Ask the kernel for an unused TCP port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((LOCALHOST, 0))
        return s.getsockname()[1]


class PortForwarder:
    """
    Forwards ``127.0.0.1:<local_port>`` to a port of a pod.

    Every accepted connection gets its own API port-forward stream. ``ready``
    is set once the local listener is bound and one stream to the pod has been
    opened, so an unreachable pod or a denied port-forward fails ``start()``.
    ``stop()`` shuts everything down.
    """

    def __init__(self, cluster_client, namespace, pod_name, local_port, remote_port=SSHD_PORT, logger=None):
        self.cluster_client = cluster_client
        self.namespace = namespace
        self.pod_name = pod_name
        self.local_port = local_port
        self.remote_port = remote_port
        self.logger = logger or get_logger()

        self.ready = threading.Event()
        self._stop = threading.Event()
        self._error = None
        self._thread = None

    def start(self, timeout=READY_TIMEOUT_SECONDS):
        self._thread = threading.Thread(
            target=self._serve,
            name=f"pv-migrate-port-forward-{self.local_port}",
            daemon=True,
        )
        self._thread.start()

        if not self.ready.wait(timeout):
            self.stop()
            raise PortForwardError(f"timed out after {timeout}s waiting for port-forward to {self.pod_name}")
        if self._error is not None:
            raise PortForwardError(f"failed to port-forward to {self.pod_name}: {self._error}")
        return self

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=READY_TIMEOUT_SECONDS)

    def __enter__(self):
        if self._thread is None:
            self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    # --- server side ---

    def _serve(self):
        try:
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((LOCALHOST, self.local_port))
            listener.listen()
            listener.settimeout(ACCEPT_TIMEOUT_SECONDS)
        except OSError as e:
            self._error = e
            self.ready.set()
            return

        try:
            self._open_remote().close()
        except Exception as e:
            listener.close()
            self._error = e
            self.ready.set()
            return

        self.ready.set()
        with listener:
            while not self._stop.is_set():
                try:
                    conn, _ = listener.accept()
                except socket.timeout:
                    continue
                threading.Thread(target=self._forward, args=(conn,), daemon=True).start()

    def _open_remote(self):
        pf = portforward(
            self.cluster_client.core.connect_get_namespaced_pod_portforward,
            self.pod_name,
            self.namespace,
            ports=str(self.remote_port),
        )
        return pf.socket(self.remote_port)

    def _forward(self, conn):
        try:
            remote = self._open_remote()
        except Exception as e:
            self.logger.warning(f"[!] Port-forward to {self.namespace}/{self.pod_name} failed: {e}")
            conn.close()
            return

        try:
            _relay(conn, remote, self._stop)
        finally:
            conn.close()
            # the forwarder closes its websocket once every port socket is closed
            remote.close()


def _relay(a, b, stop):
    peers = {a: b, b: a}
    while not stop.is_set():
        readable, _, _ = select.select(list(peers), [], [], ACCEPT_TIMEOUT_SECONDS)
        for sock in readable:
            try:
                data = sock.recv(RELAY_BUFFER)
            except OSError:
                return
            if not data:
                return
            peers[sock].sendall(data)


# -----------------------------------------------------------------------------
# sshd helper
# -----------------------------------------------------------------------------
def port_forward_to_sshd(cluster_client, namespace, release_name, logger=None):
    """Find the sshd pod of a release and forward a free local port to its port 22."""
    pod = wait_for_pod(cluster_client, namespace, sshd_label_selector(release_name))
    forwarder = PortForwarder(
        cluster_client,
        namespace,
        pod.metadata.name,
        get_free_port(),
        logger=logger,
    )
    return forwarder.start()
