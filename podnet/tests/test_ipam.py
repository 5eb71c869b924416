"""Tests for IPAM plugin exec using small shell-script plugins."""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import stat
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from podnet.errors import AllocationError
from podnet.ipam import AddressClaim, ExecPluginAllocator, release_allocation


def _write_plugin(bin_dir: Path, name: str, body: str) -> Path:
    bin_dir.mkdir(parents=True, exist_ok=True)
    plugin = bin_dir / name
    plugin.write_text("#!/bin/sh\n" + body)
    plugin.chmod(plugin.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return plugin


RECORDING_PLUGIN = """\
dir=$(dirname "$0")
cat > "$dir/stdin-$CNI_COMMAND"
echo "$CNI_COMMAND $CNI_CONTAINERID $CNI_IFNAME" >> "$dir/calls"
if [ "$CNI_COMMAND" = "ADD" ]; then
  echo '{"cniVersion": "0.2.0", "ip4": {"ip": "10.20.0.5/24", "gateway": "10.20.0.1"}}'
fi
"""


@pytest.fixture
def bin_dir(tmp_path) -> Path:
    return tmp_path / "bin"


@pytest.fixture
def env(bin_dir) -> dict[str, str]:
    return {
        "CNI_CONTAINERID": "c0ffee",
        "CNI_NETNS": "/var/run/netns/x",
        "CNI_IFNAME": "eth0",
        "CNI_ARGS": "",
        "CNI_PATH": str(bin_dir),
    }


class TestExecPluginAllocator:

    @pytest.mark.asyncio
    async def test_add_parses_result_and_passes_payload(self, bin_dir, env):
        _write_plugin(bin_dir, "host-local", RECORDING_PLUGIN)
        allocator = ExecPluginAllocator(timeout=10)

        result = await allocator.allocate("host-local", b'{"name": "net"}', env)

        assert result.ip_networks == [ipaddress.ip_interface("10.20.0.5/24")]
        assert result.gateways == [ipaddress.ip_address("10.20.0.1")]
        assert (bin_dir / "stdin-ADD").read_bytes() == b'{"name": "net"}'
        assert (bin_dir / "calls").read_text().split() == ["ADD", "c0ffee", "eth0"]

    @pytest.mark.asyncio
    async def test_release_runs_del(self, bin_dir, env):
        _write_plugin(bin_dir, "host-local", RECORDING_PLUGIN)
        allocator = ExecPluginAllocator(timeout=10)

        await allocator.release("host-local", b'{"name": "net"}', env)

        assert (bin_dir / "stdin-DEL").read_bytes() == b'{"name": "net"}'

    @pytest.mark.asyncio
    async def test_list_shaped_result(self, bin_dir, env):
        _write_plugin(
            bin_dir,
            "ipam-v3",
            "cat > /dev/null\n"
            "echo '{\"ips\": [{\"address\": \"fd00::5/64\", \"gateway\": \"fd00::1\"}]}'\n",
        )
        result = await ExecPluginAllocator(timeout=10).allocate("ipam-v3", b"{}", env)
        assert result.ip_networks == [ipaddress.ip_interface("fd00::5/64")]

    @pytest.mark.asyncio
    async def test_error_object_on_failure(self, bin_dir, env):
        _write_plugin(
            bin_dir,
            "failing",
            "cat > /dev/null\n"
            "echo '{\"code\": 11, \"msg\": \"no addresses available\"}'\n"
            "exit 1\n",
        )
        with pytest.raises(AllocationError, match="no addresses available") as exc_info:
            await ExecPluginAllocator(timeout=10).allocate("failing", b"{}", env)
        assert exc_info.value.code == 11
        assert exc_info.value.plugin == "failing"

    @pytest.mark.asyncio
    async def test_invalid_json(self, bin_dir, env):
        _write_plugin(bin_dir, "garbage", "cat > /dev/null\necho not-json\n")
        with pytest.raises(AllocationError, match="invalid JSON"):
            await ExecPluginAllocator(timeout=10).allocate("garbage", b"{}", env)

    @pytest.mark.asyncio
    async def test_missing_plugin(self, env):
        with pytest.raises(AllocationError, match="not found"):
            await ExecPluginAllocator(timeout=10).allocate("does-not-exist", b"{}", env)

    @pytest.mark.asyncio
    async def test_timeout(self, bin_dir, env):
        _write_plugin(bin_dir, "slow", "exec sleep 5\n")
        with pytest.raises(AllocationError, match="timed out"):
            await ExecPluginAllocator(timeout=0.2).allocate("slow", b"{}", env)

    @pytest.mark.asyncio
    async def test_unexecutable_binary(self, bin_dir, env):
        bin_dir.mkdir(parents=True, exist_ok=True)
        broken = bin_dir / "broken"
        broken.write_bytes(b"\x7fNOTELF garbage")
        broken.chmod(broken.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        with pytest.raises(AllocationError, match="Failed to run IPAM plugin broken") as exc_info:
            await ExecPluginAllocator(timeout=5).allocate("broken", b"{}", env)
        assert exc_info.value.plugin == "broken"

    @pytest.mark.asyncio
    async def test_cancel_kills_plugin(self, bin_dir, env):
        _write_plugin(bin_dir, "hang", 'echo $$ > "$(dirname "$0")/pid"\nexec sleep 30\n')
        task = asyncio.create_task(ExecPluginAllocator(timeout=60).allocate("hang", b"{}", env))

        pid_file = bin_dir / "pid"
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)
        pid = int(pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.parametrize("plugin_type", ["", "../evil", "/usr/bin/env", ".hidden"])
    def test_rejects_unsafe_plugin_names(self, plugin_type, env):
        with pytest.raises(AllocationError):
            ExecPluginAllocator().find_plugin(plugin_type, env)


class TestReleaseAllocation:

    @pytest.mark.asyncio
    async def test_release_success(self):
        allocator = MagicMock()
        allocator.release = AsyncMock(return_value=None)
        claim = AddressClaim("host-local", b"{}", {"CNI_CONTAINERID": "x"})

        assert await release_allocation(allocator, claim, logging.getLogger("test")) is True
        allocator.release.assert_awaited_once_with("host-local", b"{}", {"CNI_CONTAINERID": "x"})

    @pytest.mark.asyncio
    async def test_release_failure_is_logged_not_raised(self, caplog):
        allocator = MagicMock()
        allocator.release = AsyncMock(side_effect=AllocationError("plugin exploded"))
        claim = AddressClaim("host-local", b"{}")

        with caplog.at_level(logging.ERROR):
            released = await release_allocation(allocator, claim, logging.getLogger("test"))

        assert released is False
        assert "plugin exploded" in caplog.text
