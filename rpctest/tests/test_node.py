"""
Tests for node processes and the subprocess control.
"""

import asyncio
import sys

import pytest

from rpctest import executable
from rpctest.config import NodeConfig
from rpctest.errors import ExecutableNotFoundError
from rpctest.node import NodeProcess, SubprocessNodeControl, find_free_port

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh scripts")


@pytest.fixture
def config(tmp_path) -> NodeConfig:
    return NodeConfig(data_dir=tmp_path / "node0", rpc_port=18443, p2p_port=18444)


def write_script(path, body: str):
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(0o755)
    return path


def test_build_args(config):
    control = SubprocessNodeControl(extra_args=["-txindex=1"])
    config.extra_args = ["-debug=net"]

    args = control.build_args(config)

    assert "-chain=regtest" in args
    assert f"-datadir={config.data_dir}" in args
    assert "-rpcport=18443" in args
    assert "-port=18444" in args
    assert "-rpcuser=rpctest" in args
    assert args[-2:] == ["-txindex=1", "-debug=net"]


def test_find_free_port():
    port = find_free_port()
    assert 0 < port <= 65535


class TestNodeProcess:
    @pytest.mark.asyncio
    async def test_wait_exited(self):
        process = NodeProcess("node0", pid=1)

        assert not await process.wait_exited(0.01)

        asyncio.get_running_loop().call_later(0.01, process.mark_exited, 1, "boom")
        assert await process.wait_exited(1.0)
        assert process.exit_code == 1
        assert process.stderr_tail == "boom"


class TestSubprocessNodeControl:
    @pytest.mark.asyncio
    async def test_missing_executable(self, monkeypatch, config):
        monkeypatch.setattr(executable.shutil, "which", lambda name: None)

        with pytest.raises(ExecutableNotFoundError):
            await SubprocessNodeControl().start(config)

    @posix_only
    @pytest.mark.asyncio
    async def test_exit_is_reported_with_stderr(self, tmp_path, config):
        script = write_script(tmp_path / "node", "echo 'Error: bad option' >&2\nexit 3")
        control = SubprocessNodeControl(executable=script)

        process = await control.start(config)

        assert await process.wait_exited(5.0)
        assert process.exit_code == 3
        assert process.stderr_tail == "Error: bad option"
        assert not control.is_alive(process)
        assert config.data_dir.is_dir()

    @posix_only
    @pytest.mark.asyncio
    async def test_stop_terminates(self, tmp_path, config):
        script = write_script(tmp_path / "node", "exec sleep 30")
        control = SubprocessNodeControl(executable=script)
        process = await control.start(config)
        assert control.is_alive(process)

        await control.stop(process)

        assert await process.wait_exited(5.0)
        assert process.exit_code != 0
