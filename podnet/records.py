"""Workload endpoint record construction.

Everything here is pure: no I/O, and the same inputs always give an equal
record.
"""

from __future__ import annotations

from dataclasses import replace

from podnet.errors import EmptyAllocationError
from podnet.models import AllocationResult, AttachRequest, IPConfig, WorkloadRecord
from podnet.naming import namespace_profile
from podnet.schemas import NetworkConfig, PolicyMode


def profile_names(conf: NetworkConfig, namespace: str) -> list[str]:
    """Profiles for a new endpoint.

    Namespace-scoped policy groups pods by namespace; otherwise the network
    name is the profile.
    """
    if conf.policy_mode is PolicyMode.NAMESPACE_SCOPED:
        return [namespace_profile(namespace)]
    return [conf.name]


def build_workload_record(
    request: AttachRequest,
    allocation: AllocationResult,
    profiles: list[str],
) -> WorkloadRecord:
    """Create the endpoint record for a freshly allocated pod.

    Args:
        request: Attach request supplying node, orchestrator, workload and
            the container interface name
        allocation: Result of the address source
        profiles: Profile names for the endpoint

    Raises:
        EmptyAllocationError: If the allocation holds no IP networks
    """
    if not allocation.ips:
        raise EmptyAllocationError(
            f"Address source returned no IP networks for {request.identity.workload}"
        )
    return WorkloadRecord(
        name=request.interface_name,
        node=request.node,
        orchestrator=request.orchestrator,
        workload=request.identity.workload,
        profiles=list(profiles),
        ip_networks=list(allocation.ip_networks),
    )


def result_from_record(record: WorkloadRecord) -> AllocationResult:
    """Rebuild an allocation result from an existing endpoint (restart path).

    Gateways are not stored on endpoints, so the result carries addresses only.
    """
    return AllocationResult(ips=[IPConfig(address=net) for net in record.ip_networks])


def with_labels(record: WorkloadRecord, labels: dict[str, str]) -> WorkloadRecord:
    return replace(record, labels=dict(labels))


def with_interface(record: WorkloadRecord, mac: str, interface_name: str) -> WorkloadRecord:
    """Return a copy with refreshed host-side interface details."""
    return replace(record, mac=mac, interface_name=interface_name)
