from pv_migrate.errors import UnknownStrategyError
from pv_migrate.migration import DEFAULT_STRATEGIES
from pv_migrate.strategy.base import Strategy
from pv_migrate.strategy.clusterip import ClusterIP
from pv_migrate.strategy.lbsvc import LoadBalancer
from pv_migrate.strategy.local import Local
from pv_migrate.strategy.mount import Mount
from pv_migrate.strategy.nodeport import NodePort

MOUNT = Mount.name
CLUSTER_IP = ClusterIP.name
LOAD_BALANCER = LoadBalancer.name
NODE_PORT = NodePort.name
LOCAL = Local.name

ALL_STRATEGIES = [MOUNT, CLUSTER_IP, LOAD_BALANCER, NODE_PORT, LOCAL]

NAME_TO_STRATEGY = {
    MOUNT: Mount(),
    CLUSTER_IP: ClusterIP(),
    LOAD_BALANCER: LoadBalancer(),
    NODE_PORT: NodePort(),
    LOCAL: Local(),
}


def get_strategies_for_names(names):
    """Return ``[(name, strategy), ...]`` in the given order."""
    strategies = []
    for name in names:
        strategy = NAME_TO_STRATEGY.get(name)
        if strategy is None:
            raise UnknownStrategyError(name)
        strategies.append((name, strategy))
    return strategies


__all__ = [
    "ALL_STRATEGIES",
    "DEFAULT_STRATEGIES",
    "NAME_TO_STRATEGY",
    "Strategy",
    "get_strategies_for_names",
]
