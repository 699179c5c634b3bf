import argparse
import re
import sys

from kubernetes.client.exceptions import ApiException

from pv_migrate import __version__, log
from pv_migrate.errors import PvMigrateError
from pv_migrate.migration import (
    DEFAULT_HELM_TIMEOUT,
    DEFAULT_LB_SVC_TIMEOUT,
    DEFAULT_STRATEGIES,
    PVCRef,
    Request,
)
from pv_migrate.migrator import Migrator
from pv_migrate.ssh import ED25519_KEY_ALGORITHM, KEY_ALGORITHMS

NODE_PORT_MIN = 30000
NODE_PORT_MAX = 32767

DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
DURATION_UNITS = {"h": 3600, "m": 60, "s": 1, "ms": 0.001}


# -----------------------------------------------------------------------------
# Argument types
# -----------------------------------------------------------------------------
def parse_duration(value):
    """Parse ``90``, ``90s``, ``2m`` or ``1h30m`` into seconds."""
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in DURATION_RE.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(value):
        raise argparse.ArgumentTypeError(f"invalid duration: {value}")
    return total


def parse_list(value):
    return [item.strip() for item in value.split(",") if item.strip()]


# -----------------------------------------------------------------------------
# Parse CLI
# -----------------------------------------------------------------------------
def build_parser():
    parser = argparse.ArgumentParser(
        prog="pv-migrate",
        description="📦 pv-migrate: copy the contents of one PersistentVolumeClaim to another.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate = subparsers.add_parser(
        "migrate",
        help="Migrate data from one Kubernetes PersistentVolumeClaim to another",
        epilog="""
Examples:
  pv-migrate migrate old-pvc new-pvc -n ns1 -N ns1
  pv-migrate migrate old-pvc new-pvc -n ns1 -N ns2 --strategies clusterip
  pv-migrate migrate old-pvc new-pvc -k ~/.kube/a -K ~/.kube/b --strategies lbsvc,local
""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    migrate.add_argument("source", help="Source PVC name")
    migrate.add_argument("dest", help="Destination PVC name")

    migrate.add_argument("--log-level", default="info", choices=log.LEVELS, help="Log level")
    migrate.add_argument("--log-format", default=log.FORMAT_TEXT, choices=log.FORMATS, help="Log format")

    migrate.add_argument("-k", "--source-kubeconfig", default="", help="Path of the kubeconfig file of the source PVC")
    migrate.add_argument("-c", "--source-context", default="", help="Context in the kubeconfig file of the source PVC")
    migrate.add_argument("-n", "--source-namespace", default="", help="Namespace of the source PVC")
    migrate.add_argument("-p", "--source-path", default="", help="The filesystem path to migrate in the source PVC")

    migrate.add_argument("-K", "--dest-kubeconfig", default="", help="Path of the kubeconfig file of the destination PVC")
    migrate.add_argument("-C", "--dest-context", default="", help="Context in the kubeconfig file of the destination PVC")
    migrate.add_argument("-N", "--dest-namespace", default="", help="Namespace of the destination PVC")
    migrate.add_argument("-P", "--dest-path", default="", help="The filesystem path to migrate in the destination PVC")

    migrate.add_argument("-d", "--dest-delete-extraneous-files", action="store_true",
                         help="Delete extraneous files on the destination by using rsync's '--delete' flag")
    migrate.add_argument("-i", "--ignore-mounted", action="store_true",
                         help="Do not fail if the source or destination PVC is mounted")
    migrate.add_argument("-o", "--no-chown", action="store_true", help="Omit chown during rsync")
    migrate.add_argument("-x", "--skip-cleanup", action="store_true", help="Do not clean up after migration")
    migrate.add_argument("-b", "--no-progress-bar", action="store_true", help="Do not display a progress bar")
    migrate.add_argument("-R", "--source-mount-read-only", action=argparse.BooleanOptionalAction, default=True,
                         help="Mount the source PVC in ReadOnly mode")
    migrate.add_argument("--compress", action=argparse.BooleanOptionalAction, default=True,
                         help="Compress data during migration ('-z' flag of rsync)")

    migrate.add_argument("-s", "--strategies", type=parse_list, default=list(DEFAULT_STRATEGIES),
                         help=f"Comma-separated list of strategies in order (default: {','.join(DEFAULT_STRATEGIES)})")
    migrate.add_argument("-a", "--ssh-key-algorithm", default=ED25519_KEY_ALGORITHM, choices=KEY_ALGORITHMS,
                         help="SSH key algorithm to be used")
    migrate.add_argument("-H", "--dest-host-override", default="",
                         help="Override the host the rsync job connects to, for the clusterip, lbsvc and nodeport strategies")
    migrate.add_argument("--nodeport-port", type=int, default=0,
                         help=f"Fixed NodePort for the nodeport strategy ({NODE_PORT_MIN}-{NODE_PORT_MAX})")
    migrate.add_argument("--lbsvc-timeout", type=parse_duration, default=DEFAULT_LB_SVC_TIMEOUT,
                         help="Timeout for the load balancer service to get an address (e.g. 2m)")

    migrate.add_argument("-t", "--helm-timeout", type=parse_duration, default=DEFAULT_HELM_TIMEOUT,
                         help="Install/uninstall timeout for helm releases (e.g. 1m)")
    migrate.add_argument("-f", "--helm-values", action="append", default=[],
                         help="Extra values file for the chart, can be repeated")
    migrate.add_argument("--helm-set", action="append", default=[],
                         help="Set chart values on the command line, can be repeated")
    migrate.add_argument("--helm-set-string", action="append", default=[],
                         help="Set chart STRING values on the command line, can be repeated")
    migrate.add_argument("--helm-set-file", action="append", default=[],
                         help="Set chart values from files, can be repeated")

    return parser


def parse_args(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.nodeport_port and not NODE_PORT_MIN <= args.nodeport_port <= NODE_PORT_MAX:
        parser.error(
            f"invalid NodePort port {args.nodeport_port}: must be between {NODE_PORT_MIN}-{NODE_PORT_MAX}"
        )

    return args


def build_request(args, logger, stream=None):
    stream = stream or sys.stderr
    show_progress_bar = (
        not args.no_progress_bar
        and args.log_format == log.FORMAT_TEXT
        and stream.isatty()
    )

    return Request(
        source=PVCRef(
            name=args.source,
            namespace=args.source_namespace,
            path=args.source_path,
            kubeconfig_path=args.source_kubeconfig,
            context=args.source_context,
        ),
        dest=PVCRef(
            name=args.dest,
            namespace=args.dest_namespace,
            path=args.dest_path,
            kubeconfig_path=args.dest_kubeconfig,
            context=args.dest_context,
        ),
        delete_extraneous_files=args.dest_delete_extraneous_files,
        ignore_mounted=args.ignore_mounted,
        no_chown=args.no_chown,
        show_progress_bar=show_progress_bar,
        source_mount_read_only=args.source_mount_read_only,
        compress=args.compress,
        skip_cleanup=args.skip_cleanup,
        key_algorithm=args.ssh_key_algorithm,
        strategies=args.strategies,
        helm_values_files=args.helm_values,
        helm_set=args.helm_set,
        helm_set_string=args.helm_set_string,
        helm_set_file=args.helm_set_file,
        dest_host_override=args.dest_host_override,
        node_port=args.nodeport_port,
        helm_timeout=args.helm_timeout,
        lb_svc_timeout=args.lbsvc_timeout,
        writer=stream,
        logger=logger,
    )


# -----------------------------------------------------------------------------
# Main
# -----------------------------------------------------------------------------
def main(argv=None, migrator=None):
    args = parse_args(argv)
    logger = log.configure(args.log_level, args.log_format)

    request = build_request(args, logger)
    migrator = migrator or Migrator()

    logger.info("🚀 Starting migration")
    try:
        migrator.run(request)
    except (PvMigrateError, ApiException) as e:
        logger.error(f"[x] migration failed: {e}")
        return 1

    logger.info("✅ Migration completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
