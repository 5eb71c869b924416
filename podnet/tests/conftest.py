from __future__ import annotations

import json

import pytest

from podnet.config import settings
from podnet.models import AttachRequest, WorkloadIdentity


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Keep endpoint state and plugin lookups inside the test's temp directory."""
    monkeypatch.setattr(settings, "state_path", str(tmp_path / "state"))
    monkeypatch.setattr(settings, "cni_path", str(tmp_path / "bin"))
    monkeypatch.delenv("CNI_PATH", raising=False)
    yield


def make_payload(**overrides) -> bytes:
    conf = {
        "cniVersion": "0.2.0",
        "name": "k8s-pod-network",
        "type": "calico",
        "ipam": {"type": "calico-ipam"},
    }
    conf.update(overrides)
    return json.dumps(conf).encode()


def make_request(payload: bytes | None = None, **kwargs) -> AttachRequest:
    defaults = dict(
        identity=WorkloadIdentity(namespace="team-a", name="web-7"),
        orchestrator="k8s",
        node="node-1",
        interface_name="eth0",
        payload=payload if payload is not None else make_payload(),
        container_id="c0ffee",
        netns="/var/run/netns/web-7",
        cni_args="IgnoreUnknown=1;K8S_POD_NAMESPACE=team-a;K8S_POD_NAME=web-7",
    )
    defaults.update(kwargs)
    return AttachRequest(**defaults)
