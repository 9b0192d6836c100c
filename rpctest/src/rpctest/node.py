"""
Node processes: the control interface, a subprocess implementation, and
the handle the lifecycle manager keeps for each node.
"""

from __future__ import annotations

import asyncio
import socket
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from loguru import logger
from rtwallet.backends.base import NodeRPC
from rtwallet.models import NetworkType

from rpctest.config import NodeConfig
from rpctest.executable import node_executable_path

# Lines of stderr kept for crash reports
STDERR_TAIL_LINES = 20

CHAIN_NAMES = {
    NetworkType.MAINNET: "main",
    NetworkType.TESTNET: "test",
    NetworkType.SIGNET: "signet",
    NetworkType.REGTEST: "regtest",
}


class NodeState(str, Enum):
    UNSTARTED = "unstarted"
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"


class NodeProcess:
    """
    A launched node process.

    Exit is signalled through `exited`; controls call mark_exited once the
    process is gone.
    """

    def __init__(self, name: str, pid: int | None = None):
        self.name = name
        self.pid = pid
        self.exit_code: int | None = None
        self.stderr_tail = ""
        self.exited = asyncio.Event()

    def mark_exited(self, exit_code: int | None, stderr_tail: str = "") -> None:
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.exited.set()

    async def wait_exited(self, timeout: float) -> bool:
        """Wait up to timeout for the process to exit, True if it did"""
        try:
            await asyncio.wait_for(self.exited.wait(), timeout)
        except TimeoutError:
            return False
        return True


class NodeControl(ABC):
    """Starts and stops node processes."""

    @abstractmethod
    async def start(self, config: NodeConfig) -> NodeProcess:
        """Launch a node process"""

    @abstractmethod
    async def stop(self, process: NodeProcess) -> None:
        """Request a graceful shutdown, without waiting for it"""

    @abstractmethod
    async def kill(self, process: NodeProcess) -> None:
        """Terminate the process immediately"""

    def is_alive(self, process: NodeProcess) -> bool:
        return not process.exited.is_set()


class SubprocessNodeControl(NodeControl):
    """
    Runs bitcoind as a child process.

    stderr is drained by a watcher task that records the tail for crash
    reports and marks the process exited.
    """

    def __init__(self, executable: Path | None = None, extra_args: list[str] | None = None):
        self.executable = executable
        self.extra_args = extra_args or []
        self._processes: dict[int, asyncio.subprocess.Process] = {}
        self._watchers: set[asyncio.Task] = set()

    def build_args(self, config: NodeConfig) -> list[str]:
        args = [
            f"-chain={CHAIN_NAMES[config.network]}",
            f"-datadir={config.data_dir}",
            f"-port={config.p2p_port}",
            f"-rpcport={config.rpc_port}",
            f"-rpcbind={config.rpc_host}",
            f"-rpcallowip={config.rpc_host}",
            f"-rpcuser={config.rpc_user}",
            f"-rpcpassword={config.rpc_password}",
            "-server=1",
            "-listen=1",
            "-discover=0",
            "-dnsseed=0",
            "-listenonion=0",
            "-disablewallet=1",
            "-printtoconsole=0",
        ]
        return args + self.extra_args + config.extra_args

    async def start(self, config: NodeConfig) -> NodeProcess:
        executable = node_executable_path(self.executable)
        config.data_dir.mkdir(parents=True, exist_ok=True)

        proc = await asyncio.create_subprocess_exec(
            str(executable),
            *self.build_args(config),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        process = NodeProcess(name=config.data_dir.name, pid=proc.pid)
        self._processes[proc.pid] = proc

        watcher = asyncio.create_task(self._watch(process, proc))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

        logger.info(f"Launched node process {proc.pid} (datadir {config.data_dir})")
        return process

    async def _watch(self, process: NodeProcess, proc: asyncio.subprocess.Process) -> None:
        tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        if proc.stderr is not None:
            async for line in proc.stderr:
                tail.append(line.decode(errors="replace").rstrip())
        exit_code = await proc.wait()
        self._processes.pop(proc.pid, None)
        logger.debug(f"Node process {proc.pid} exited with code {exit_code}")
        process.mark_exited(exit_code, "\n".join(tail))

    async def stop(self, process: NodeProcess) -> None:
        proc = self._processes.get(process.pid or -1)
        if proc is not None and proc.returncode is None:
            # bitcoind shuts down cleanly on SIGTERM
            proc.terminate()

    async def kill(self, process: NodeProcess) -> None:
        proc = self._processes.get(process.pid or -1)
        if proc is not None and proc.returncode is None:
            proc.kill()


@dataclass(eq=False)
class NodeHandle:
    """A node under harness control, from start until stop"""

    name: str
    config: NodeConfig
    rpc: NodeRPC
    state: NodeState = NodeState.UNSTARTED
    process: NodeProcess | None = None
    peers: set[NodeHandle] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    stopping: bool = False

    def __str__(self) -> str:
        return f"{self.name} ({self.state.value})"


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a currently unused TCP port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
        return sock.getsockname()[1]
    finally:
        sock.close()
