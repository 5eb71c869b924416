"""Cluster identity client.

Read-only queries against the Kubernetes API for the data the attach path
needs: pod labels, the node's pod CIDR, and addresses written to pod
annotations by an external IPAM controller.

The kubernetes client is synchronous; calls run in a worker thread so the
attach coroutine never blocks the event loop.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from typing import Any

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from podnet.errors import (
    ConfigurationError,
    NotFoundError,
    RetryableError,
    ValidationError,
)
from podnet.models import AllocationResult, IPConfig
from podnet.naming import NAMESPACE_LABEL
from podnet.schemas import NetworkConfig

logger = logging.getLogger(__name__)

# Annotations written by the external IPAM controller
IPAM_IP_ANNOTATION = "network.tess.io/allocated_ip"
IPAM_GATEWAY_ANNOTATION = "network.tess.io/allocated_gateway"
IPAM_NETMASK_ANNOTATION = "network.tess.io/allocated_mask"


class ClusterIdentityClient:
    """Namespace-scoped pod and node metadata from the cluster API."""

    def __init__(self, core_api: Any, node_name_override: str = ""):
        self.core_api = core_api
        self.node_name_override = node_name_override

    async def _call(self, what: str, func, **kwargs) -> Any:
        """Run a blocking API call, translating failures.

        404 becomes NotFoundError; any other API or transport failure means
        the cluster is unusable from here and becomes ConfigurationError.
        """
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"{what} not found") from e
            raise ConfigurationError(f"Kubernetes API error reading {what}: {e.status} {e.reason}") from e
        except (Urllib3HTTPError, OSError) as e:
            raise ConfigurationError(f"Kubernetes API unreachable reading {what}: {e}") from e

    async def fetch_labels(self, namespace: str, name: str) -> dict[str, str]:
        """Return the pod's labels plus a label recording its namespace.

        Raises:
            NotFoundError: If the pod does not exist
        """
        pod = await self._call(
            f"pod {namespace}/{name}",
            self.core_api.read_namespaced_pod,
            name=name,
            namespace=namespace,
        )
        labels = dict(pod.metadata.labels or {})
        labels[NAMESPACE_LABEL] = namespace
        return labels

    async def fetch_node_address_block(self, node_name: str) -> str:
        """Return the pod CIDR assigned to a node.

        The `kubernetes.node_name` network config setting takes precedence
        over the name passed in (normally the host name).

        Raises:
            NotFoundError: If the node does not exist or has no pod CIDR
        """
        node_name = self.node_name_override or node_name
        node = await self._call(f"node {node_name}", self.core_api.read_node, name=node_name)
        pod_cidr = node.spec.pod_cidr if node.spec else None
        if not pod_cidr:
            raise NotFoundError(f"No podCidr for node {node_name}")
        return pod_cidr

    async def fetch_annotation_derived_address(self, workload: str) -> AllocationResult:
        """Build an allocation from the address annotations on a pod.

        Args:
            workload: Workload id in the form '<namespace>.<name>'

        Raises:
            ValidationError: If the workload id is malformed or an annotation
                value does not parse
            RetryableError: If the IPAM controller has not written the
                annotations yet
        """
        parts = workload.split(".")
        if len(parts) != 2 or not all(parts):
            raise ValidationError(f"Invalid workload {workload!r}")
        namespace, pod_name = parts

        pod = await self._call(
            f"pod {namespace}/{pod_name}",
            self.core_api.read_namespaced_pod,
            name=pod_name,
            namespace=namespace,
        )
        annotations = pod.metadata.annotations or {}
        if not annotations.get(IPAM_IP_ANNOTATION):
            raise RetryableError(
                f"IP annotations for pod {namespace}/{pod_name} not available yet"
            )
        logger.debug(f"Pod {namespace}/{pod_name} annotations: {annotations}")
        return AllocationResult(ips=[_ip_config_from_annotations(workload, annotations)])


def _ip_config_from_annotations(workload: str, annotations: dict[str, str]) -> IPConfig:
    ip = annotations[IPAM_IP_ANNOTATION]
    mask = annotations.get(IPAM_NETMASK_ANNOTATION) or "255.255.255.255"
    gateway = annotations.get(IPAM_GATEWAY_ANNOTATION)
    try:
        return IPConfig(
            address=ipaddress.IPv4Interface(f"{ip}/{mask}"),
            gateway=ipaddress.IPv4Address(gateway) if gateway else None,
        )
    except ValueError as e:
        raise ValidationError(f"Malformed address annotations on {workload}: {e}") from e


def _api_server(conf: NetworkConfig) -> str:
    # Earlier configs carried the full '/api/v1/' path; keep only scheme/host/port
    server = conf.policy.k8s_api_root.split("/api/")[0]
    if conf.kubernetes.k8s_api_root:
        server = conf.kubernetes.k8s_api_root
    return server


def build_identity_client(conf: NetworkConfig) -> ClusterIdentityClient:
    """Create a cluster identity client from the network configuration.

    Connection settings come from the kubeconfig named in the `kubernetes`
    block, overridden by any values given explicitly in the `policy` block.
    `kubernetes.k8s_api_root` wins over `policy.k8s_api_root`.

    Raises:
        ConfigurationError: If the kubeconfig cannot be loaded or no API
            server is configured
    """
    configuration = k8s_client.Configuration()
    kubeconfig = conf.kubernetes.kubeconfig
    if kubeconfig:
        try:
            k8s_config.load_kube_config(
                config_file=kubeconfig,
                client_configuration=configuration,
                persist_config=False,
            )
        except (ConfigException, OSError) as e:
            raise ConfigurationError(f"Failed to load kubeconfig {kubeconfig}: {e}") from e

    server = _api_server(conf)
    if server:
        configuration.host = server
    elif not kubeconfig:
        raise ConfigurationError("No Kubernetes API server configured (set kubeconfig or k8s_api_root)")

    policy = conf.policy
    if policy.k8s_client_certificate:
        configuration.cert_file = policy.k8s_client_certificate
    if policy.k8s_client_key:
        configuration.key_file = policy.k8s_client_key
    if policy.k8s_certificate_authority:
        configuration.ssl_ca_cert = policy.k8s_certificate_authority
    if policy.k8s_auth_token:
        configuration.api_key = {"authorization": f"Bearer {policy.k8s_auth_token}"}

    logger.debug(f"Kubernetes API server {configuration.host}")
    core_api = k8s_client.CoreV1Api(k8s_client.ApiClient(configuration))
    return ClusterIdentityClient(core_api, node_name_override=conf.kubernetes.node_name)
