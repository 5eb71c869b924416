"""Naming conventions for host-side interfaces and endpoint profiles.

All modules that construct veth or profile names MUST use these functions so
the names match what the policy agent on the node expects.
"""

import hashlib

# Host-side veth prefix
VETH_PREFIX = "cali"

# Linux interface names are limited to 15 characters
VETH_HASH_LEN = 11

# Profile name prefix for namespace-scoped policy
NAMESPACE_PROFILE_PREFIX = "k8s_ns."

# Label recording the pod's namespace
NAMESPACE_LABEL = "calico/k8s_ns"


def veth_name_for_workload(workload: str) -> str:
    """Generate the host-side veth name for a workload.

    Format: cali{sha1(workload)[:11]}
    """
    digest = hashlib.sha1(workload.encode()).hexdigest()
    return f"{VETH_PREFIX}{digest[:VETH_HASH_LEN]}"


def namespace_profile(namespace: str) -> str:
    """Profile name shared by all pods in a namespace (e.g., 'k8s_ns.team-a')."""
    return f"{NAMESPACE_PROFILE_PREFIX}{namespace}"
