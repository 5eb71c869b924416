"""Attach orchestration.

Sequences the pieces of a pod network attach:

    PriorRecord (restart)    -> rebuild result from endpoint -> wire -> persist
    NoPriorRecord (fresh)    -> identity client -> address source -> build record
                                -> labels (namespace policy) -> wire -> persist

Once an address source has claimed an address, every failure releases it
exactly once before the error propagates. A successful persist commits the
claim. The restart path and annotation-derived addresses hold no claim.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from podnet.address_sources import select_address
from podnet.errors import AttachError, LabelFetchError, PersistenceError, WiringError
from podnet.identity import ClusterIdentityClient, build_identity_client
from podnet.ipam import AddressAllocator, AddressClaim, release_allocation
from podnet.logging_config import workload_logger
from podnet.models import AllocationResult, AttachRequest, PriorRecord, WorkloadRecord
from podnet.naming import veth_name_for_workload
from podnet.records import (
    build_workload_record,
    profile_names,
    result_from_record,
    with_interface,
    with_labels,
)
from podnet.schemas import NetworkConfig, PolicyMode
from podnet.store import WorkloadEndpointStore
from podnet.wiring import InterfaceWiring, parse_mac

logger = logging.getLogger(__name__)


@dataclass
class AttachContext:
    """Per-attach state handed to address sources and helpers."""

    request: AttachRequest
    conf: NetworkConfig
    allocator: AddressAllocator
    log: logging.LoggerAdapter
    client: ClusterIdentityClient | None = None


@asynccontextmanager
async def hold_claim(
    allocator: AddressAllocator,
    claim: AddressClaim | None,
    log: logging.LoggerAdapter,
) -> AsyncIterator[None]:
    """Release `claim` if the block raises; leaving the block normally commits it."""
    if claim is None:
        yield
        return
    try:
        yield
    except (Exception, asyncio.CancelledError):
        await release_allocation(allocator, claim, log)
        raise


class AttachOrchestrator:
    """Attaches pods to the network."""

    def __init__(
        self,
        allocator: AddressAllocator,
        wiring: InterfaceWiring,
        store: WorkloadEndpointStore,
        identity_factory: Callable[[NetworkConfig], ClusterIdentityClient] = build_identity_client,
    ):
        self.allocator = allocator
        self.wiring = wiring
        self.store = store
        self.identity_factory = identity_factory

    async def attach(self, request: AttachRequest, conf: NetworkConfig) -> AllocationResult:
        """Attach a pod and return the addresses it was given.

        Raises:
            AttachError: Subclass describing which step failed; check
                `retriable` to decide whether to re-run the attach later
        """
        log = workload_logger(
            request.identity.workload,
            orchestrator=request.orchestrator,
            node=request.node,
        )
        log.info("Extracted identifiers for attach")
        ctx = AttachContext(request=request, conf=conf, allocator=self.allocator, log=log)

        state = request.state
        if isinstance(state, PriorRecord):
            return await self._attach_existing(ctx, state.record)
        return await self._attach_new(ctx)

    async def _attach_existing(self, ctx: AttachContext, record: WorkloadRecord) -> AllocationResult:
        # Container or node restart: the network namespace was recreated but
        # the endpoint (and its addresses) survived. Labels are kept current
        # by the policy controller, so they are not refetched here.
        allocation = result_from_record(record)
        ctx.log.debug(f"Created result from existing endpoint: {allocation}")
        record = await self._wire(ctx, record, allocation)
        await self._persist(ctx, record)
        return allocation

    async def _attach_new(self, ctx: AttachContext) -> AllocationResult:
        ctx.client = self.identity_factory(ctx.conf)
        ctx.log.debug("Created Kubernetes client")

        outcome = await select_address(ctx)
        async with hold_claim(self.allocator, outcome.claim, ctx.log):
            request = ctx.request
            record = build_workload_record(
                request,
                outcome.allocation,
                profile_names(ctx.conf, request.identity.namespace),
            )
            ctx.log.info(f"Populated endpoint {record.to_dict()}")

            # Only namespace-scoped policy needs labels, so plain mode works
            # without read access to pods.
            if ctx.conf.policy_mode is PolicyMode.NAMESPACE_SCOPED:
                record = with_labels(record, await self._fetch_labels(ctx))

            record = await self._wire(ctx, record, outcome.allocation)
            await self._persist(ctx, record)
        return outcome.allocation

    async def _fetch_labels(self, ctx: AttachContext) -> dict[str, str]:
        identity = ctx.request.identity
        try:
            labels = await ctx.client.fetch_labels(identity.namespace, identity.name)
        except AttachError as e:
            raise LabelFetchError(f"Failed to fetch labels for pod {identity.workload}: {e.message}") from e
        except Exception as e:
            raise LabelFetchError(f"Failed to fetch labels for pod {identity.workload}: {e}") from e
        ctx.log.info(f"Fetched K8s labels {labels}")
        return labels

    async def _wire(
        self,
        ctx: AttachContext,
        record: WorkloadRecord,
        allocation: AllocationResult,
    ) -> WorkloadRecord:
        ips = ", ".join(str(net) for net in record.ip_networks)
        ctx.log.info(f"Using IPs: {ips}")

        host_veth = veth_name_for_workload(ctx.request.identity.workload)
        try:
            host_interface, container_mac = await self.wiring.setup(
                ctx.request, ctx.conf, allocation, host_veth
            )
        except WiringError as e:
            ctx.log.error(f"Error setting up networking: {e}")
            raise
        except Exception as e:
            ctx.log.error(f"Error setting up networking: {e}")
            raise WiringError(f"Error setting up networking: {e}") from e

        mac = parse_mac(container_mac)
        record = with_interface(record, mac=mac, interface_name=host_interface or host_veth)
        ctx.log.info(f"Added MAC {mac} and interface {record.interface_name} to endpoint")
        return record

    async def _persist(self, ctx: AttachContext, record: WorkloadRecord) -> WorkloadRecord:
        try:
            stored = await self.store.apply(record)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to write endpoint to datastore: {e}") from e
        ctx.log.info("Wrote updated endpoint to datastore")
        return stored
