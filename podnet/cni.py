"""CNI invocation arguments.

The container runtime passes pod identity in CNI_ARGS as a semicolon
separated list of KEY=VALUE pairs, e.g.:

    IgnoreUnknown=1;K8S_POD_NAMESPACE=team-a;K8S_POD_NAME=web-7;K8S_POD_INFRA_CONTAINER_ID=abc
"""

from __future__ import annotations

from typing import Mapping

from pydantic import BaseModel

from podnet.errors import ValidationError
from podnet.models import AttachRequest, WorkloadIdentity, WorkloadRecord

ORCHESTRATOR_K8S = "k8s"

_TRUTHY = {"1", "true", "yes", "on"}


class K8sArgs(BaseModel):
    """Kubernetes pod identity from CNI_ARGS."""
    IgnoreUnknown: bool = False
    K8S_POD_NAMESPACE: str = ""
    K8S_POD_NAME: str = ""
    K8S_POD_INFRA_CONTAINER_ID: str = ""


def parse_k8s_args(cni_args: str) -> K8sArgs:
    """Parse a CNI_ARGS string.

    Unknown keys are rejected unless IgnoreUnknown is set.

    Raises:
        ValidationError: On malformed pairs or unexpected keys
    """
    pairs: dict[str, str] = {}
    for item in filter(None, (part.strip() for part in (cni_args or "").split(";"))):
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValidationError(f"Invalid CNI_ARGS pair {item!r}")
        pairs[key] = value

    ignore_unknown = pairs.get("IgnoreUnknown", "").lower() in _TRUTHY
    known = set(K8sArgs.model_fields)
    unknown = sorted(set(pairs) - known)
    if unknown and not ignore_unknown:
        raise ValidationError(f"Unknown CNI_ARGS keys: {', '.join(unknown)}")

    return K8sArgs(
        IgnoreUnknown=ignore_unknown,
        **{k: v for k, v in pairs.items() if k in known and k != "IgnoreUnknown"},
    )


def build_attach_request(
    environ: Mapping[str, str],
    payload: bytes,
    node: str,
    prior_record: WorkloadRecord | None = None,
) -> AttachRequest:
    """Build an attach request from the CNI environment and stdin payload.

    Raises:
        ValidationError: If the pod namespace/name or interface name is missing
    """
    cni_args = environ.get("CNI_ARGS", "")
    k8s_args = parse_k8s_args(cni_args)
    if not k8s_args.K8S_POD_NAMESPACE or not k8s_args.K8S_POD_NAME:
        raise ValidationError("CNI_ARGS must include K8S_POD_NAMESPACE and K8S_POD_NAME")

    interface_name = environ.get("CNI_IFNAME", "")
    if not interface_name:
        raise ValidationError("CNI_IFNAME is required")

    return AttachRequest(
        identity=WorkloadIdentity(
            namespace=k8s_args.K8S_POD_NAMESPACE,
            name=k8s_args.K8S_POD_NAME,
        ),
        orchestrator=ORCHESTRATOR_K8S,
        node=node,
        interface_name=interface_name,
        payload=payload,
        container_id=environ.get("CNI_CONTAINERID", ""),
        netns=environ.get("CNI_NETNS", ""),
        cni_args=cni_args,
        prior_record=prior_record,
    )
