"""Exceptions raised by pv-migrate."""


class PvMigrateError(Exception):
    """Base exception for pv-migrate."""

    pass


class ConfigError(PvMigrateError):
    """Raised when no usable kubeconfig or context can be loaded."""

    pass


class NotFoundError(PvMigrateError):
    """Raised when a PVC does not exist."""

    def __init__(self, namespace, name):
        self.namespace = namespace
        self.name = name
        super().__init__(f"pvc {namespace}/{name} not found")


class UnsupportedError(PvMigrateError):
    """Raised when a PVC can never be mounted by the migration pod."""

    pass


class MountedError(PvMigrateError):
    """Raised when a PVC is mounted and ignore-mounted is not requested."""

    def __init__(self, node, claim):
        self.node = node
        self.claim = claim
        super().__init__(
            "PVC is mounted to a node and ignore-mounted is not requested: "
            f"node: {node} claim {claim}"
        )


class NotWritableError(PvMigrateError):
    """Raised when the destination PVC supports neither RWO nor RWX."""

    pass


class UnknownStrategyError(PvMigrateError):
    def __init__(self, name):
        self.name = name
        super().__init__(f"strategy not found: {name}")


class Unaccepted(PvMigrateError):
    """Raised by a strategy that cannot handle the given migration."""

    pass


class InstallError(PvMigrateError):
    pass


class UninstallError(PvMigrateError):
    pass


class JobFailedError(PvMigrateError):
    def __init__(self, namespace, name):
        self.namespace = namespace
        self.name = name
        super().__init__(f"job {namespace}/{name} failed")


class LBTimeoutError(PvMigrateError):
    pass


class PortForwardError(PvMigrateError):
    pass


class CommandError(PvMigrateError):
    pass


class AllStrategiesFailedError(PvMigrateError):
    def __init__(self):
        super().__init__("all strategies failed for this migration")
