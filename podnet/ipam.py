"""IPAM plugin invocation.

IPAM plugins are executables found on CNI_PATH. They are run with the CNI
environment, the network configuration on stdin, and print a result (or an
error object) on stdout. A DEL call with the same configuration releases
whatever the ADD call claimed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from podnet.config import settings
from podnet.errors import AllocationError
from podnet.models import AllocationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddressClaim:
    """An address held by an IPAM plugin, released by re-sending the same payload."""

    plugin_type: str
    payload: bytes
    env: dict[str, str] = field(default_factory=dict)


class AddressAllocator(ABC):
    """IPAM plugin contract."""

    @abstractmethod
    async def allocate(self, plugin_type: str, payload: bytes, env: dict[str, str]) -> AllocationResult:
        """Claim addresses; raises AllocationError on failure."""

    @abstractmethod
    async def release(self, plugin_type: str, payload: bytes, env: dict[str, str]) -> None:
        """Release what allocate() claimed for the same payload."""


class ExecPluginAllocator(AddressAllocator):
    """Runs IPAM plugin binaries using the CNI exec protocol."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout if timeout is not None else settings.plugin_timeout

    def find_plugin(self, plugin_type: str, env: dict[str, str]) -> Path:
        """Locate a plugin binary on CNI_PATH.

        Raises:
            AllocationError: If the plugin name is unsafe or no executable is found
        """
        if not plugin_type or "/" in plugin_type or plugin_type.startswith("."):
            raise AllocationError(f"Invalid IPAM plugin type {plugin_type!r}", plugin=plugin_type)

        search_path = env.get("CNI_PATH") or os.environ.get("CNI_PATH") or settings.cni_path
        for directory in search_path.split(os.pathsep):
            if not directory:
                continue
            candidate = Path(directory) / plugin_type
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
        raise AllocationError(
            f"IPAM plugin {plugin_type} not found in {search_path}", plugin=plugin_type
        )

    async def _exec(self, command: str, plugin_type: str, payload: bytes, env: dict[str, str]) -> str:
        binary = self.find_plugin(plugin_type, env)
        proc_env = {**os.environ, **env, "CNI_COMMAND": command}
        proc_env.setdefault("CNI_PATH", settings.cni_path)

        logger.debug(f"Running IPAM plugin {binary} ({command})")
        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
            )
        except OSError as e:
            raise AllocationError(f"Failed to run IPAM plugin {plugin_type}: {e}", plugin=plugin_type) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(input=payload), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await _kill(process)
            raise AllocationError(
                f"IPAM plugin {plugin_type} {command} timed out after {self.timeout}s",
                plugin=plugin_type,
            ) from e
        except asyncio.CancelledError:
            await _kill(process)
            raise

        out = stdout.decode(errors="replace")
        if process.returncode:
            raise _plugin_error(plugin_type, command, out, stderr.decode(errors="replace"))
        return out

    async def allocate(self, plugin_type: str, payload: bytes, env: dict[str, str]) -> AllocationResult:
        out = await self._exec("ADD", plugin_type, payload, env)
        try:
            data = json.loads(out)
        except json.JSONDecodeError as e:
            raise AllocationError(f"IPAM plugin {plugin_type} returned invalid JSON: {e}", plugin=plugin_type) from e
        if isinstance(data, dict) and "code" in data and "msg" in data:
            raise AllocationError(
                f"IPAM plugin {plugin_type} failed: {data['msg']}",
                plugin=plugin_type,
                code=data.get("code"),
            )
        try:
            return AllocationResult.from_plugin_output(data)
        except (ValueError, AttributeError, TypeError) as e:
            raise AllocationError(f"IPAM plugin {plugin_type} returned a bad result: {e}", plugin=plugin_type) from e

    async def release(self, plugin_type: str, payload: bytes, env: dict[str, str]) -> None:
        await self._exec("DEL", plugin_type, payload, env)


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


def _plugin_error(plugin_type: str, command: str, stdout: str, stderr: str) -> AllocationError:
    code = None
    message = stderr.strip() or stdout.strip()
    try:
        data = json.loads(stdout)
        if isinstance(data, dict) and "msg" in data:
            code = data.get("code")
            message = data["msg"]
            if data.get("details"):
                message = f"{message}: {data['details']}"
    except json.JSONDecodeError:
        pass
    return AllocationError(f"IPAM plugin {plugin_type} {command} failed: {message}", plugin=plugin_type, code=code)


async def release_allocation(
    allocator: AddressAllocator,
    claim: AddressClaim,
    log: logging.Logger | logging.LoggerAdapter,
) -> bool:
    """Best-effort release of a claimed address.

    Failures are logged and never raised, so the error that caused the
    release is the one the caller sees.

    Returns:
        True if the plugin confirmed the release
    """
    log.info(f"Releasing IP allocation via {claim.plugin_type}")
    try:
        await allocator.release(claim.plugin_type, claim.payload, claim.env)
    except Exception as e:
        log.error(f"Failed to release IP allocation via {claim.plugin_type}: {e}")
        return False
    return True
