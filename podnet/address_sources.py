"""Address source selection.

Exactly one source runs per attach, picked by the network config:

- DELEGATED_PLUGIN: exec the configured IPAM plugin with the raw payload
- HOST_LOCAL_NODE_CIDR: host-local IPAM with the subnet replaced by the
  node's pod CIDR
- ANNOTATION_DERIVED: read the address an external controller wrote to the
  pod's annotations (no plugin call, nothing to release)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from podnet.errors import ConfigurationError, NotFoundError
from podnet.ipam import AddressClaim
from podnet.models import AllocationResult
from podnet.schemas import AddressSource

if TYPE_CHECKING:
    from podnet.attach import AttachContext


@dataclass
class SourceOutcome:
    """Allocation plus the claim to release if the attach later fails."""

    allocation: AllocationResult
    claim: AddressClaim | None = None


async def _run_plugin(ctx: AttachContext, payload: bytes) -> SourceOutcome:
    plugin_type = ctx.conf.ipam.type
    env = ctx.request.plugin_env()
    ctx.log.debug(f"Calling IPAM plugin {plugin_type}")
    allocation = await ctx.allocator.allocate(plugin_type, payload, env)
    ctx.log.debug(f"IPAM plugin returned: {allocation}")
    return SourceOutcome(allocation=allocation, claim=AddressClaim(plugin_type, payload, env))


async def _from_delegated_plugin(ctx: AttachContext) -> SourceOutcome:
    return await _run_plugin(ctx, ctx.request.payload)


def rewrite_subnet(payload: bytes, subnet: str) -> bytes:
    """Return the payload with ipam.subnet replaced.

    Raises:
        ConfigurationError: If the payload has no ipam object
    """
    try:
        data = json.loads(payload)
        data["ipam"]["subnet"] = subnet
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise ConfigurationError(f"Cannot set ipam.subnet in network config: {e}") from e
    return json.dumps(data).encode()


async def _from_node_cidr(ctx: AttachContext) -> SourceOutcome:
    try:
        pod_cidr = await ctx.client.fetch_node_address_block(ctx.request.node)
    except NotFoundError as e:
        raise ConfigurationError(e.message) from e
    ctx.log.info(f"Fetched podCidr {pod_cidr}")
    payload = rewrite_subnet(ctx.request.payload, pod_cidr)
    ctx.log.debug(f"Passing podCidr {pod_cidr} to host-local IPAM")
    return await _run_plugin(ctx, payload)


async def _from_annotations(ctx: AttachContext) -> SourceOutcome:
    allocation = await ctx.client.fetch_annotation_derived_address(ctx.request.identity.workload)
    ctx.log.debug(f"Parsed IP info from pod annotations: {allocation}")
    return SourceOutcome(allocation=allocation)


_HANDLERS: dict[AddressSource, Callable[[AttachContext], Awaitable[SourceOutcome]]] = {
    AddressSource.DELEGATED_PLUGIN: _from_delegated_plugin,
    AddressSource.HOST_LOCAL_NODE_CIDR: _from_node_cidr,
    AddressSource.ANNOTATION_DERIVED: _from_annotations,
}

_unhandled = set(AddressSource) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No handler for address sources: {sorted(s.value for s in _unhandled)}")


async def select_address(ctx: AttachContext) -> SourceOutcome:
    """Run the address source selected by the network config."""
    source = ctx.conf.address_source
    ctx.log.debug(f"Using address source {source.value}")
    return await _HANDLERS[source](ctx)
