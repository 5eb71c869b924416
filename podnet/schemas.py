"""Network configuration schema.

The network configuration arrives on stdin as JSON. Only the keys the attach
path reads are modelled here; the raw payload is forwarded to the IPAM
plugin unchanged (apart from the pod CIDR rewrite).
"""

import json
from enum import Enum

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from podnet.errors import ConfigurationError

# IPAM plugin types/values with special handling
HOST_LOCAL_IPAM = "host-local"
USE_POD_CIDR = "usepodcidr"
POD_ANNOTATIONS_IPAM = "pod-annotations"
K8S_POLICY = "k8s"


class AddressSource(str, Enum):
    """Where the pod's address comes from."""
    DELEGATED_PLUGIN = "delegated-plugin"
    HOST_LOCAL_NODE_CIDR = "host-local-with-node-cidr"
    ANNOTATION_DERIVED = "annotation-derived"


class PolicyMode(str, Enum):
    """How endpoint profiles are assigned."""
    PLAIN = "plain"
    NAMESPACE_SCOPED = "namespace-scoped"


class IPAMConfig(BaseModel):
    """The `ipam` block."""
    type: str = ""
    subnet: str = ""


class PolicyConfig(BaseModel):
    """The `policy` block (also carries legacy API connection overrides)."""
    type: str = ""
    k8s_api_root: str = ""
    k8s_auth_token: str = ""
    k8s_client_certificate: str = ""
    k8s_client_key: str = ""
    k8s_certificate_authority: str = ""


class KubernetesConfig(BaseModel):
    """The `kubernetes` block."""
    kubeconfig: str = ""
    k8s_api_root: str = ""
    node_name: str = ""


class NetworkConfig(BaseModel):
    """Parsed network configuration for one attach."""
    name: str
    type: str = ""
    cni_version: str = Field("", alias="cniVersion")
    log_level: str = ""
    ipam: IPAMConfig = Field(default_factory=IPAMConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)

    @property
    def address_source(self) -> AddressSource:
        if self.ipam.type == HOST_LOCAL_IPAM and self.ipam.subnet.lower() == USE_POD_CIDR:
            return AddressSource.HOST_LOCAL_NODE_CIDR
        if self.ipam.type == POD_ANNOTATIONS_IPAM:
            return AddressSource.ANNOTATION_DERIVED
        return AddressSource.DELEGATED_PLUGIN

    @property
    def policy_mode(self) -> PolicyMode:
        if self.policy.type == K8S_POLICY:
            return PolicyMode.NAMESPACE_SCOPED
        return PolicyMode.PLAIN

    @classmethod
    def from_payload(cls, payload: bytes) -> "NetworkConfig":
        """Parse the raw stdin payload.

        Raises:
            ConfigurationError: If the payload is not valid network config JSON
        """
        try:
            return cls.model_validate(json.loads(payload))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Network config is not valid JSON: {e}") from e
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid network config: {e}") from e
