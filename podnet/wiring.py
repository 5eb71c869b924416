"""Interface wiring contract.

The veth/namespace setup itself lives outside this package. The attach path
only needs the host interface name and the container-side MAC back.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from podnet.errors import WiringError

if TYPE_CHECKING:
    from podnet.models import AllocationResult, AttachRequest
    from podnet.schemas import NetworkConfig

_MAC_RE = re.compile(r"^[0-9a-fA-F]{2}([:-])[0-9a-fA-F]{2}(\1[0-9a-fA-F]{2}){4}$")


class InterfaceWiring(ABC):
    """Creates (or recreates) the pod's veth pair and configures addresses."""

    @abstractmethod
    async def setup(
        self,
        request: AttachRequest,
        conf: NetworkConfig,
        allocation: AllocationResult,
        host_interface: str,
    ) -> tuple[str, str]:
        """Wire the pod interface.

        Returns:
            Tuple of (host_interface_name, container_mac)
        """


def parse_mac(value: str) -> str:
    """Normalize a 48-bit MAC address to lowercase colon form.

    Raises:
        WiringError: If the value is not a MAC address
    """
    value = (value or "").strip()
    if not _MAC_RE.match(value):
        raise WiringError(f"Error parsing MAC ({value!r})")
    return value.replace("-", ":").lower()
