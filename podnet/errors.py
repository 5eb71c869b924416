"""Error taxonomy for the attach path.

Every error carries a ``retriable`` flag so the invoking layer can tell a
condition worth re-running the whole attach for (annotations not yet written
by the IPAM controller) from a hard failure.
"""

from __future__ import annotations


class AttachError(Exception):
    """Base exception for pod attach failures."""

    def __init__(self, message: str, retriable: bool = False):
        super().__init__(message)
        self.message = message
        self.retriable = retriable


class ConfigurationError(AttachError):
    """Cluster connection is invalid or unreachable, or the node has no pod CIDR."""


class ValidationError(AttachError):
    """Malformed workload identifier, CNI arguments or annotation value."""


class NotFoundError(AttachError):
    """A pod or node the attach depends on does not exist."""


class AllocationError(AttachError):
    """The IPAM plugin failed; no address is held on our behalf."""

    def __init__(self, message: str, plugin: str | None = None, code: int | None = None):
        super().__init__(message, retriable=False)
        self.plugin = plugin
        self.code = code


class RetryableError(AttachError):
    """Address annotations are not populated yet; retry the attach later."""

    def __init__(self, message: str):
        super().__init__(message, retriable=True)


class LabelFetchError(AttachError):
    """Pod labels could not be fetched after an address was claimed."""


class WiringError(AttachError):
    """Interface setup failed after an address was claimed."""


class PersistenceError(AttachError):
    """Writing the workload endpoint to the datastore failed."""


class ConflictError(PersistenceError):
    """The endpoint was modified concurrently (stale revision)."""


class EmptyAllocationError(AttachError):
    """The address source returned no IP networks."""
