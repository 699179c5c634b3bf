from kubernetes.client.exceptions import ApiException

from pv_migrate.errors import NotFoundError, UnsupportedError

RWO = "ReadWriteOnce"
ROX = "ReadOnlyMany"
RWX = "ReadWriteMany"
RWOP = "ReadWriteOncePod"

PREFERRED_AFFINITY_WEIGHT = 100


class PVCInfo:
    """
    A claim together with what the migration needs to know about it: the
    cluster it lives in, the node it is mounted on ("" when unmounted), its
    access modes and the affinity values for the pod that will mount it.
    """

    def __init__(self, cluster_client, claim, mounted_node="", supports_rwo=False,
                 supports_rox=False, supports_rwx=False, affinity=None):
        self.cluster_client = cluster_client
        self.claim = claim
        self.mounted_node = mounted_node
        self.supports_rwo = supports_rwo
        self.supports_rox = supports_rox
        self.supports_rwx = supports_rwx
        self.affinity = affinity

    @property
    def name(self):
        return self.claim.metadata.name

    @property
    def namespace(self):
        return self.claim.metadata.namespace


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------
def new_pvc_info(cluster_client, namespace, name):
    """
    Fetch the claim ``namespace/name`` and classify it.

    :raises NotFoundError: the claim does not exist
    :raises UnsupportedError: the claim is ReadWriteOncePod and already mounted
    """
    try:
        claim = cluster_client.core.read_namespaced_persistent_volume_claim(name, namespace)
    except ApiException as e:
        if e.status == 404:
            raise NotFoundError(namespace, name) from e
        raise

    modes = (claim.spec.access_modes if claim.spec else None) or []
    supports_rwo = RWO in modes or RWOP in modes
    supports_rox = ROX in modes
    supports_rwx = RWX in modes
    read_write_once_pod = RWOP in modes

    mounted_node = find_mounted_node(cluster_client, namespace, name)

    if read_write_once_pod and mounted_node:
        raise UnsupportedError(
            f"pvc {namespace}/{name} is mounted to a pod and has ReadWriteOncePod "
            "access mode, it cannot be mounted to the migration pod"
        )

    required = not supports_rox and not supports_rwx

    return PVCInfo(
        cluster_client=cluster_client,
        claim=claim,
        mounted_node=mounted_node,
        supports_rwo=supports_rwo,
        supports_rox=supports_rox,
        supports_rwx=supports_rwx,
        affinity=build_affinity(mounted_node, required),
    )


def find_mounted_node(cluster_client, namespace, name):
    """Return the node of the first pod using the claim, or "" if none does."""
    pods = cluster_client.core.list_namespaced_pod(namespace).items
    for pod in pods:
        for vol in pod.spec.volumes or []:
            pvc_claim = getattr(vol, "persistent_volume_claim", None)
            if pvc_claim and pvc_claim.claim_name == name:
                return pod.spec.node_name or ""
    return ""


def build_affinity(node_name, required):
    if not node_name:
        return None

    term = {
        "matchFields": [
            {
                "key": "metadata.name",
                "operator": "In",
                "values": [node_name],
            }
        ]
    }

    if required:
        return {
            "nodeAffinity": {
                "requiredDuringSchedulingIgnoredDuringExecution": {
                    "nodeSelectorTerms": [term],
                }
            }
        }

    return {
        "nodeAffinity": {
            "preferredDuringSchedulingIgnoredDuringExecution": [
                {
                    "weight": PREFERRED_AFFINITY_WEIGHT,
                    "preference": term,
                }
            ]
        }
    }
