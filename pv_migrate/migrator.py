import contextlib
import signal
import sys
import threading

from pv_migrate import k8s, strategy
from pv_migrate.errors import AllStrategiesFailedError, MountedError, NotWritableError, Unaccepted
from pv_migrate.log import get_logger, with_fields
from pv_migrate.migration import Attempt, Migration
from pv_migrate.pvc import new_pvc_info

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextlib.contextmanager
def cleanup_on_signal(tracker, logger):
    """
    Uninstall every tracked release and exit with status 1 on SIGINT/SIGTERM.

    Handlers can only be installed from the main thread; elsewhere this is a
    no-op and the attempts' own cleanup is all there is.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        logger.warning(f"[!] Received {signal.Signals(signum).name}, cleaning up")
        tracker.cleanup_all()
        sys.exit(1)

    previous = {sig: signal.signal(sig, handler) for sig in HANDLED_SIGNALS}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


class Migrator:
    """
    Runs a migration request by trying the requested strategies in order
    until one of them succeeds.
    """

    def __init__(self, get_cluster_client=k8s.get_cluster_client,
                 get_strategies=strategy.get_strategies_for_names):
        self._get_cluster_client = get_cluster_client
        self._get_strategies = get_strategies

    def run(self, request):
        logger = request.logger or get_logger()

        strategies = self._get_strategies(request.strategies)
        mig = self.build_migration(request, logger)

        check_mounted(mig, logger)
        check_writable(mig)

        with cleanup_on_signal(mig.tracker, logger):
            try:
                for name, strat in strategies:
                    if self._try_strategy(mig, name, strat):
                        return
            finally:
                mig.tracker.cleanup_all()

        raise AllStrategiesFailedError()

    def _try_strategy(self, mig, name, strat):
        attempt = Attempt(mig)
        attempt.logger = with_fields(attempt.logger, strategy=name)
        logger = attempt.logger

        logger.info(f"[~] Attempting migration with strategy {name}")
        try:
            strat.run(attempt)
        except Unaccepted:
            logger.info("[=] This strategy cannot handle this migration, will try the next one")
            return False
        except Exception as e:
            logger.warning(f"[!] Migration failed with this strategy, will try the next one: {e}")
            return False

        logger.info("[✓] Migration succeeded")
        return True

    def build_migration(self, request, logger):
        src = request.source
        dest = request.dest

        source_client = self._get_cluster_client(src.kubeconfig_path, src.context)
        if dest.client_key == src.client_key:
            dest_client = source_client
        else:
            dest_client = self._get_cluster_client(dest.kubeconfig_path, dest.context)

        source_ns = src.namespace or source_client.namespace
        dest_ns = dest.namespace or dest_client.namespace

        logger.info(f"[=] Source PVC {source_ns}/{src.name}, destination PVC {dest_ns}/{dest.name}")

        source_info = new_pvc_info(source_client, source_ns, src.name)
        dest_info = new_pvc_info(dest_client, dest_ns, dest.name)

        return Migration(source_info, dest_info, request, logger=logger)


def check_mounted(mig, logger):
    for info in (mig.source_info, mig.dest_info):
        if not info.mounted_node:
            continue
        if not mig.request.ignore_mounted:
            raise MountedError(info.mounted_node, info.name)
        logger.info(
            f"[~] PVC {info.namespace}/{info.name} is mounted to node {info.mounted_node}, ignoring..."
        )


def check_writable(mig):
    dest = mig.dest_info
    if not dest.supports_rwo and not dest.supports_rwx:
        raise NotWritableError(
            f"destination pvc {dest.namespace}/{dest.name} is not writable, "
            "it supports neither ReadWriteOnce nor ReadWriteMany"
        )
