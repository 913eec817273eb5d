"""
Label and annotation keys stamped on delegation jobs and gated pods.

Written by the job factory, read back by cluster/convert.py. Jobs are listed
by OWNER_NAME_LABEL and then split by OWNER_UID_LABEL, so a pod recreated
under the same name never adopts its predecessor's jobs but can still clean
them up.
"""

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "kube-cache"
COMPONENT_LABEL = "app.kubernetes.io/component"
COMPONENT_VALUE = "dataset-fetcher"

OWNER_UID_LABEL = "kube-cache.io/owner-uid"
OWNER_NAME_LABEL = "kube-cache.io/owner-name"
ATTEMPT_LABEL = "kube-cache.io/attempt"
DATASET_KEY_LABEL = "kube-cache.io/dataset-key"

DATASET_REF_ANNOTATION = "kube-cache.io/dataset"
TARGET_NODE_ANNOTATION = "kube-cache.io/target-node"
OWNER_NAME_ANNOTATION = "kube-cache.io/owner-name"

# Written on the gated pod before each job create, so the attempt count and
# backoff anchor survive the job being garbage-collected.
POD_ATTEMPT_ANNOTATION = "kube-cache.io/delegation-attempt"
POD_FAILED_AT_ANNOTATION = "kube-cache.io/last-failure-at"

HOSTNAME_LABEL = "kubernetes.io/hostname"
NODE_CACHE_LABEL_PREFIX = "cache.kube-cache.io/"
NODE_CACHE_READY_VALUE = "ready"

MANAGED_JOB_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"


def label_value(text: str) -> str:
    """Clamp a string to a valid label value (≤ 63 chars, alphanumeric ends)."""
    return text[:63].strip("-_.")


def owner_name_selector(name: str) -> str:
    """
    Label selector for every delegation job of any pod named `name` in a
    namespace. Matches earlier incarnations too, so they can be cleaned up.
    """
    return f"{MANAGED_JOB_SELECTOR},{OWNER_NAME_LABEL}={label_value(name)}"


def hostname_selector(hostname: str) -> str:
    """Label selector for the node(s) carrying kubernetes.io/hostname=`hostname`."""
    return f"{HOSTNAME_LABEL}={hostname}"
