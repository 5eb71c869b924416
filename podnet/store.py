"""Workload endpoint datastore.

`WorkloadEndpointStore` is the contract the attach path writes through.
`FileEndpointStore` keeps endpoints in a JSON file on the node, which is
enough for single-node setups and tests; cluster datastores implement the
same contract.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from podnet.config import settings
from podnet.errors import ConflictError, PersistenceError
from podnet.models import WorkloadRecord

logger = logging.getLogger(__name__)

STATE_FILE = "workload_endpoints.json"
STATE_VERSION = 1


class WorkloadEndpointStore(ABC):
    """Control-plane store for workload endpoints."""

    @abstractmethod
    async def apply(self, record: WorkloadRecord) -> WorkloadRecord:
        """Create or replace an endpoint, returning the stored copy.

        Implementations must reject writes carrying a stale revision.
        """

    @abstractmethod
    async def get(self, node: str, orchestrator: str, workload: str, name: str) -> WorkloadRecord | None:
        """Return the endpoint for a key, or None."""


def _key_str(key: tuple[str, str, str, str]) -> str:
    return "/".join(key)


class FileEndpointStore(WorkloadEndpointStore):
    """Endpoint store persisted to a JSON file.

    Writes go to a temp file that is renamed over the state file, so a crash
    mid-write leaves the previous state intact.
    """

    def __init__(self, state_dir: str | Path | None = None):
        state_dir = Path(state_dir or settings.state_path)
        self._state_file = state_dir / STATE_FILE
        self._records: dict[str, WorkloadRecord] | None = None
        self._lock = asyncio.Lock()

    @property
    def state_file(self) -> Path:
        return self._state_file

    def _read_state(self) -> dict[str, WorkloadRecord]:
        if not self._state_file.exists():
            logger.info("No persisted endpoint state found, starting fresh")
            return {}
        try:
            with open(self._state_file, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise PersistenceError(f"Failed to read endpoint state {self._state_file}: {e}") from e

        version = data.get("version", STATE_VERSION)
        if version != STATE_VERSION:
            logger.warning(f"Unknown endpoint state version {version}, attempting load anyway")
        return {
            key: WorkloadRecord.from_dict(entry)
            for key, entry in data.get("endpoints", {}).items()
        }

    def _write_state(self, records: dict[str, WorkloadRecord]) -> None:
        state: dict[str, Any] = {
            "version": STATE_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "endpoints": {key: record.to_dict() for key, record in records.items()},
        }
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._state_file.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(state, f, indent=2)
        tmp_path.rename(self._state_file)

    async def _load(self) -> dict[str, WorkloadRecord]:
        if self._records is None:
            self._records = await asyncio.to_thread(self._read_state)
        return self._records

    async def apply(self, record: WorkloadRecord) -> WorkloadRecord:
        if not record.ip_networks:
            raise PersistenceError(f"Refusing to store endpoint {record.workload} without IP networks")
        if not record.interface_name:
            raise PersistenceError(f"Refusing to store endpoint {record.workload} without an interface name")

        async with self._lock:
            records = await self._load()
            key = _key_str(record.key)
            existing = records.get(key)

            if existing is not None and record.revision is not None and record.revision != existing.revision:
                raise ConflictError(
                    f"Endpoint {key} was modified concurrently "
                    f"(revision {record.revision}, stored {existing.revision})"
                )

            current = int(existing.revision or 0) if existing is not None else 0
            stored = replace(record, revision=str(current + 1))
            updated = {**records, key: stored}
            try:
                await asyncio.to_thread(self._write_state, updated)
            except OSError as e:
                raise PersistenceError(f"Failed to write endpoint state: {e}") from e
            self._records = updated

        logger.debug(f"Stored endpoint {key} at revision {stored.revision}")
        return replace(stored)

    async def get(self, node: str, orchestrator: str, workload: str, name: str) -> WorkloadRecord | None:
        async with self._lock:
            records = await self._load()
        found = records.get(_key_str((node, orchestrator, workload, name)))
        return replace(found) if found is not None else None
