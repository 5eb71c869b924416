"""Data model for the attach path: requests, allocation results, endpoint records."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Union

IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class WorkloadIdentity:
    """Namespace-scoped identity of a pod."""

    namespace: str
    name: str

    @property
    def workload(self) -> str:
        """Workload id as stored on endpoints (e.g., 'team-a.web-7')."""
        return f"{self.namespace}.{self.name}"


@dataclass(frozen=True)
class PriorRecord:
    """Attach state when an endpoint already exists (container/node restart)."""

    record: WorkloadRecord


@dataclass(frozen=True)
class NoPriorRecord:
    """Attach state for a pod seen for the first time."""


AttachState = Union[PriorRecord, NoPriorRecord]


@dataclass(frozen=True)
class AttachRequest:
    """Immutable input to a single attach."""

    identity: WorkloadIdentity
    orchestrator: str
    node: str
    interface_name: str
    payload: bytes
    container_id: str = ""
    netns: str = ""
    cni_args: str = ""
    prior_record: WorkloadRecord | None = None

    @property
    def state(self) -> AttachState:
        if self.prior_record is not None:
            return PriorRecord(self.prior_record)
        return NoPriorRecord()

    def plugin_env(self) -> dict[str, str]:
        """CNI environment handed through to IPAM plugins."""
        return {
            "CNI_CONTAINERID": self.container_id,
            "CNI_NETNS": self.netns,
            "CNI_IFNAME": self.interface_name,
            "CNI_ARGS": self.cni_args,
        }


@dataclass(frozen=True)
class IPConfig:
    """One assigned address with its prefix length and optional gateway."""

    address: IPInterface
    gateway: IPAddress | None = None

    @property
    def version(self) -> int:
        return self.address.version

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ip": str(self.address)}
        if self.gateway is not None:
            data["gateway"] = str(self.gateway)
        return data


@dataclass
class AllocationResult:
    """Addresses produced by an address source."""

    ips: list[IPConfig] = field(default_factory=list)
    dns: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_plugin_output(cls, data: dict[str, Any]) -> AllocationResult:
        """Parse an IPAM plugin result.

        Accepts both the legacy shape ({"ip4": {...}, "ip6": {...}}) and the
        list shape ({"ips": [{"address": ..., "gateway": ...}]}).

        Raises:
            ValueError: If an address or gateway does not parse
        """
        ips: list[IPConfig] = []
        for key in ("ip4", "ip6"):
            entry = data.get(key)
            if entry:
                ips.append(_parse_ip_entry(entry.get("ip"), entry.get("gateway")))
        for entry in data.get("ips") or []:
            ips.append(_parse_ip_entry(entry.get("address"), entry.get("gateway")))
        return cls(ips=ips, dns=dict(data.get("dns") or {}))

    @property
    def ip_networks(self) -> list[IPInterface]:
        return [ip.address for ip in self.ips]

    @property
    def gateways(self) -> list[IPAddress]:
        return [ip.gateway for ip in self.ips if ip.gateway is not None]

    def to_cni(self) -> dict[str, Any]:
        """Render the result the way the container runtime expects it."""
        result: dict[str, Any] = {}
        for ip in self.ips:
            key = "ip4" if ip.version == 4 else "ip6"
            # Legacy result format has one slot per family
            result.setdefault(key, ip.to_dict())
        if self.dns:
            result["dns"] = self.dns
        return result


def _parse_ip_entry(address: str | None, gateway: str | None) -> IPConfig:
    if not address:
        raise ValueError("IP entry without an address")
    return IPConfig(
        address=ipaddress.ip_interface(address),
        gateway=ipaddress.ip_address(gateway) if gateway else None,
    )


@dataclass
class WorkloadRecord:
    """Network identity of a pod as stored in the datastore.

    Keyed by (node, orchestrator, workload, name). `name` is the interface
    name inside the container; `interface_name` is the host-side veth.
    """

    name: str
    node: str
    orchestrator: str
    workload: str
    profiles: list[str] = field(default_factory=list)
    ip_networks: list[IPInterface] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    mac: str | None = None
    interface_name: str = ""
    revision: str | None = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.node, self.orchestrator, self.workload, self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "node": self.node,
            "orchestrator": self.orchestrator,
            "workload": self.workload,
            "profiles": list(self.profiles),
            "ip_networks": [str(net) for net in self.ip_networks],
            "labels": dict(self.labels),
            "mac": self.mac,
            "interface_name": self.interface_name,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkloadRecord:
        return cls(
            name=data["name"],
            node=data["node"],
            orchestrator=data["orchestrator"],
            workload=data["workload"],
            profiles=list(data.get("profiles", [])),
            ip_networks=[ipaddress.ip_interface(net) for net in data.get("ip_networks", [])],
            labels=dict(data.get("labels", {})),
            mac=data.get("mac"),
            interface_name=data.get("interface_name", ""),
            revision=data.get("revision"),
        )
