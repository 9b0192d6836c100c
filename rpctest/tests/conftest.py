"""
Pytest configuration and fixtures for rpctest tests.

FakeNodeControl stands in for bitcoind processes: each "process" is a
FakeNode that comes online after a short delay and can be made to hang,
crash or ignore shutdown requests.
"""

from __future__ import annotations

import asyncio
import itertools
import shutil
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from loguru import logger
from rtwallet.testing import FakeNode

from rpctest.config import HarnessSettings, NodeConfig
from rpctest.executable import reset_executable_path
from rpctest.lifecycle import LifecycleManager
from rpctest.node import NodeControl, NodeProcess


class FakeNodeControl(NodeControl):
    def __init__(self, startup_delay: float = 0.02):
        self.startup_delay = startup_delay
        self.never_ready = False
        self.crash_on_start: tuple[int, str] | None = None
        self.ignore_stop = False
        self.nodes: dict[Path, FakeNode] = {}
        self.processes: dict[int, NodeProcess] = {}
        self.killed: list[int] = []
        self._pids = itertools.count(1000)
        self._node_for_pid: dict[int, FakeNode] = {}

    def rpc_factory(self, config: NodeConfig) -> FakeNode:
        node = FakeNode(name=config.data_dir.name)
        node.online = False
        self.nodes[config.data_dir] = node
        return node

    async def start(self, config: NodeConfig) -> NodeProcess:
        node = self.nodes[config.data_dir]
        process = NodeProcess(name=config.data_dir.name, pid=next(self._pids))
        self.processes[process.pid] = process
        self._node_for_pid[process.pid] = node
        loop = asyncio.get_running_loop()

        if self.crash_on_start is not None:
            loop.call_later(self.startup_delay, process.mark_exited, *self.crash_on_start)
        elif not self.never_ready:
            loop.call_later(self.startup_delay, setattr, node, "online", True)
        return process

    async def stop(self, process: NodeProcess) -> None:
        if not self.ignore_stop:
            self._exit(process, 0)

    async def kill(self, process: NodeProcess) -> None:
        self.killed.append(process.pid)
        self._exit(process, -9)

    def crash(self, process: NodeProcess, exit_code: int = 139, stderr: str = "") -> None:
        self._exit(process, exit_code, stderr)

    def _exit(self, process: NodeProcess, exit_code: int, stderr: str = "") -> None:
        self._node_for_pid[process.pid].online = False
        process.mark_exited(exit_code, stderr)


@pytest.fixture
def settings() -> HarnessSettings:
    return HarnessSettings(
        startup_timeout=1.0,
        startup_base_delay=0.01,
        startup_max_delay=0.05,
        stop_grace_period=0.2,
        rpc_recheck_timeout=0.1,
        sync_timeout=1.0,
        poll_interval=0.01,
    )


@pytest.fixture
def control() -> FakeNodeControl:
    return FakeNodeControl()


@pytest_asyncio.fixture
async def manager(
    control: FakeNodeControl, settings: HarnessSettings
) -> AsyncGenerator[LifecycleManager, None]:
    manager = LifecycleManager(control=control, settings=settings, rpc_factory=control.rpc_factory)
    yield manager
    await manager.stop_all()
    for handle in manager.handles:
        shutil.rmtree(handle.config.data_dir, ignore_errors=True)


@pytest.fixture(autouse=True)
def fresh_executable_cache():
    reset_executable_path()
    yield
    reset_executable_path()


@pytest.fixture
def log_messages():
    """Capture loguru messages of WARNING and above"""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)
