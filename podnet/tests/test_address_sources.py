from __future__ import annotations

import json
import logging

import pytest

from podnet.address_sources import rewrite_subnet, select_address
from podnet.attach import AttachContext
from podnet.errors import ConfigurationError
from podnet.schemas import AddressSource, NetworkConfig
from podnet.tests.conftest import make_payload, make_request
from podnet.tests.fakes import FakeAllocator, FakeIdentityClient, allocation


def _ctx(payload: bytes, client=None, allocator=None) -> AttachContext:
    return AttachContext(
        request=make_request(payload),
        conf=NetworkConfig.from_payload(payload),
        allocator=allocator or FakeAllocator(),
        log=logging.LoggerAdapter(logging.getLogger("test"), {}),
        client=client or FakeIdentityClient(),
    )


def test_rewrite_subnet_keeps_other_keys() -> None:
    payload = make_payload(ipam={"type": "host-local", "subnet": "usePodCidr", "routes": [{"dst": "0.0.0.0/0"}]})
    data = json.loads(rewrite_subnet(payload, "10.20.0.0/24"))
    assert data["ipam"] == {"type": "host-local", "subnet": "10.20.0.0/24", "routes": [{"dst": "0.0.0.0/0"}]}
    assert data["name"] == "k8s-pod-network"


def test_rewrite_subnet_without_ipam_block() -> None:
    with pytest.raises(ConfigurationError):
        rewrite_subnet(b'{"name": "net"}', "10.20.0.0/24")


@pytest.mark.asyncio
async def test_delegated_plugin_claims_original_payload() -> None:
    payload = make_payload()
    ctx = _ctx(payload)

    outcome = await select_address(ctx)

    assert ctx.conf.address_source is AddressSource.DELEGATED_PLUGIN
    assert outcome.claim.plugin_type == "calico-ipam"
    assert outcome.claim.payload == payload
    assert outcome.claim.env == ctx.request.plugin_env()


@pytest.mark.asyncio
async def test_node_cidr_claims_rewritten_payload() -> None:
    payload = make_payload(ipam={"type": "host-local", "subnet": "USEPODCIDR"})
    allocator = FakeAllocator()
    ctx = _ctx(payload, client=FakeIdentityClient(pod_cidr="10.20.0.0/24"), allocator=allocator)

    outcome = await select_address(ctx)

    ((_, sent, _),) = allocator.allocate_calls
    assert json.loads(sent)["ipam"]["subnet"] == "10.20.0.0/24"
    assert outcome.claim.payload == sent


@pytest.mark.asyncio
async def test_annotations_hold_no_claim() -> None:
    annotated = allocation("10.5.6.7/24")
    allocator = FakeAllocator()
    ctx = _ctx(make_payload(ipam={"type": "pod-annotations"}),
               client=FakeIdentityClient(annotated=annotated), allocator=allocator)

    outcome = await select_address(ctx)

    assert outcome.allocation is annotated
    assert outcome.claim is None
    assert allocator.allocate_calls == []
