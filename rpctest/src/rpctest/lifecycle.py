"""
Node lifecycle: start, peer, mine and stop node processes.

Each handle moves Unstarted -> Running -> Stopped, or Running -> Crashed
when its process exits on its own. Start and stop are serialised per
handle; different handles are independent and may start in parallel.
"""

from __future__ import annotations

import asyncio
import itertools
import random
import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path

import httpx
from loguru import logger
from rtwallet.backends.base import NodeRPC
from rtwallet.backends.bitcoin_core import BitcoinCoreRPC
from rtwallet.wallet.service import MemWallet

from rpctest.config import HarnessSettings, NodeConfig, get_settings
from rpctest.errors import (
    InvalidNodeStateError,
    NodeCrashedError,
    StartupTimeoutError,
    TimedOutError,
)
from rpctest.log import setup_logging
from rpctest.node import (
    NodeControl,
    NodeHandle,
    NodeState,
    SubprocessNodeControl,
    find_free_port,
)
from rpctest.sync import HeightSyncPoint, SyncController, poll_until

# Time a killed process gets to be reaped
KILL_WAIT = 5.0


class LifecycleManager:
    """
    Owns the node handles of one test process.

    Args:
        control: Launches and stops node processes
        settings: Harness settings, read from the environment by default
        rpc_factory: Builds the RPC client for a node config
    """

    def __init__(
        self,
        control: NodeControl | None = None,
        settings: HarnessSettings | None = None,
        rpc_factory: Callable[[NodeConfig], NodeRPC] | None = None,
    ):
        self.settings = settings or get_settings()
        if self.settings.configure_logging:
            setup_logging(self.settings.log_level)
        self.control = control or SubprocessNodeControl(
            self.settings.node_binary, self.settings.extra_args
        )
        self.rpc_factory = rpc_factory or self._default_rpc
        self.handles: list[NodeHandle] = []
        self._names = itertools.count()
        self._dir_ids = itertools.count()
        self._exit_watchers: set[asyncio.Task] = set()

    def _default_rpc(self, config: NodeConfig) -> NodeRPC:
        return BitcoinCoreRPC(
            rpc_url=config.rpc_url,
            rpc_user=config.rpc_user,
            rpc_password=config.rpc_password,
            timeout=self.settings.rpc_timeout,
        )

    def new_node_config(self, base_dir: Path | None = None) -> NodeConfig:
        """A config with a fresh data directory and free ports"""
        if base_dir is None:
            data_dir = Path(tempfile.mkdtemp(prefix="rpctest-"))
        else:
            data_dir = base_dir / f"node{next(self._dir_ids)}"
        return NodeConfig(
            data_dir=data_dir,
            rpc_port=find_free_port(),
            p2p_port=find_free_port(),
            rpc_user=self.settings.rpc_user,
            rpc_password=self.settings.rpc_password,
            network=self.settings.network,
        )

    async def start(self, config: NodeConfig | None = None, name: str | None = None) -> NodeHandle:
        """Launch a node and wait until its RPC endpoint answers"""
        config = config or self.new_node_config()
        handle = NodeHandle(
            name=name or f"node{next(self._names)}",
            config=config,
            rpc=self.rpc_factory(config),
        )
        self.handles.append(handle)

        async with handle.lock:
            if handle.state != NodeState.UNSTARTED:
                raise InvalidNodeStateError(f"Cannot start {handle}")

            logger.info(f"Starting {handle.name} (rpc {config.rpc_url})")
            handle.process = await self.control.start(config)

            try:
                await self._wait_for_rpc(handle)
            except (StartupTimeoutError, NodeCrashedError):
                handle.state = NodeState.CRASHED
                await self._kill(handle)
                await handle.rpc.close()
                raise

            handle.state = NodeState.RUNNING
            watcher = asyncio.create_task(self._watch_exit(handle))
            self._exit_watchers.add(watcher)
            watcher.add_done_callback(self._exit_watchers.discard)

        logger.info(f"{handle.name} is running")
        return handle

    async def start_many(self, count: int) -> list[NodeHandle]:
        """Start count nodes in parallel"""
        return list(await asyncio.gather(*(self.start() for _ in range(count))))

    async def _wait_for_rpc(self, handle: NodeHandle) -> None:
        """Bounded retry with exponential backoff until the node answers RPC"""
        assert handle.process is not None
        process = handle.process
        timeout = self.settings.startup_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        delay = self.settings.startup_base_delay

        for attempt in itertools.count(1):
            if not self.control.is_alive(process):
                raise NodeCrashedError(handle.name, process.exit_code, process.stderr_tail)
            if await handle.rpc.ping():
                logger.debug(f"{handle.name} RPC reachable after {attempt} attempt(s)")
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.error(f"{handle.name} RPC not reachable after {timeout:.1f}s")
                raise StartupTimeoutError(handle.name, timeout)

            # Wakes early if the process dies while we back off
            await process.wait_exited(min(delay + random.uniform(0, delay / 2), remaining))
            delay = min(delay * 2, self.settings.startup_max_delay)

    async def _watch_exit(self, handle: NodeHandle) -> None:
        assert handle.process is not None
        await handle.process.exited.wait()
        if handle.state == NodeState.RUNNING and not handle.stopping:
            handle.state = NodeState.CRASHED
            logger.error(
                f"{handle.name} exited unexpectedly with code {handle.process.exit_code}\n"
                f"{handle.process.stderr_tail}"
            )

    def ensure_running(self, handle: NodeHandle) -> None:
        """Raise unless handle is running, reporting a crash with its exit info"""
        process = handle.process
        if handle.state == NodeState.RUNNING and process is not None:
            if self.control.is_alive(process):
                return
            handle.state = NodeState.CRASHED

        if handle.state == NodeState.CRASHED and process is not None:
            raise NodeCrashedError(handle.name, process.exit_code, process.stderr_tail)
        raise InvalidNodeStateError(f"{handle} is not running")

    async def check_reachable(self, handle: NodeHandle) -> None:
        """
        Recheck a running node after an RPC call failed to reach it.

        Retries ping for rpc_recheck_timeout seconds. A node whose process is
        alive but whose RPC stays unreachable is marked crashed.
        """
        self.ensure_running(handle)
        assert handle.process is not None
        process = handle.process
        timeout = self.settings.rpc_recheck_timeout

        async def reachable() -> bool:
            self.ensure_running(handle)
            return await handle.rpc.ping()

        try:
            await poll_until(f"{handle.name} RPC", reachable, timeout, self.settings.poll_interval)
        except TimedOutError as e:
            handle.state = NodeState.CRASHED
            logger.error(f"{handle.name} RPC unreachable for {timeout:.1f}s, marking it crashed")
            raise NodeCrashedError(handle.name, process.exit_code, process.stderr_tail) from e

    async def connect(self, a: NodeHandle, b: NodeHandle, timeout: float | None = None) -> None:
        """Make a connect to b and wait until the peer shows up"""
        self.ensure_running(a)
        self.ensure_running(b)

        target = b.config.p2p_address
        try:
            await a.rpc.add_node(target)
        except httpx.TransportError:
            await self.check_reachable(a)
            raise

        async def connected() -> bool:
            return target in await a.rpc.get_peer_addresses()

        await poll_until(
            f"{a.name} to connect to {b.name}",
            connected,
            timeout or self.settings.sync_timeout,
            self.settings.poll_interval,
        )
        a.peers.add(b)
        b.peers.add(a)
        logger.info(f"Connected {a.name} -> {b.name}")

    def connected_nodes(self, handle: NodeHandle) -> list[NodeHandle]:
        """Running nodes reachable from handle through peer connections"""
        seen = {handle}
        queue = [handle]
        while queue:
            for peer in queue.pop().peers:
                if peer not in seen and peer.state == NodeState.RUNNING:
                    seen.add(peer)
                    queue.append(peer)
        seen.discard(handle)
        return sorted(seen, key=lambda h: h.name)

    def sync_controller(
        self, handle: NodeHandle, wallet: MemWallet | None = None
    ) -> SyncController:
        return SyncController(
            handle.rpc,
            peers=[peer.rpc for peer in self.connected_nodes(handle)],
            wallet=wallet,
            timeout=self.settings.sync_timeout,
            poll_interval=self.settings.poll_interval,
        )

    async def mine(
        self,
        handle: NodeHandle,
        count: int,
        address: str,
        timeout: float | None = None,
    ) -> list[str]:
        """
        Mine count blocks paying the coinbase to address.

        Returns once the node and every connected peer agree on the new tip.
        """
        self.ensure_running(handle)
        try:
            block_hashes = await handle.rpc.generate_blocks(count, address)
            best = await handle.rpc.get_best_block()
        except httpx.TransportError:
            await self.check_reachable(handle)
            raise

        await self.sync_controller(handle).wait_for(HeightSyncPoint(best.height), timeout)
        logger.info(f"Mined {len(block_hashes)} block(s) on {handle.name}, height {best.height}")
        return block_hashes

    async def stop(self, handle: NodeHandle) -> None:
        """
        Ask the node to shut down, killing it after the grace period.

        A forced kill is only logged as a warning.
        """
        async with handle.lock:
            if handle.state == NodeState.UNSTARTED:
                handle.state = NodeState.STOPPED
                await handle.rpc.close()
                return
            if handle.state == NodeState.STOPPED:
                return

            process = handle.process
            assert process is not None
            handle.stopping = True

            if self.control.is_alive(process):
                logger.info(f"Stopping {handle.name}")
                await self.control.stop(process)
                grace = self.settings.stop_grace_period
                if not await process.wait_exited(grace):
                    logger.warning(f"{handle.name} did not exit within {grace:.1f}s, killing it")
                    await self._kill(handle)
            elif handle.state == NodeState.RUNNING:
                # Exited on its own before the exit watcher noticed
                handle.state = NodeState.CRASHED

            if handle.state != NodeState.CRASHED:
                handle.state = NodeState.STOPPED
            for peer in handle.peers:
                peer.peers.discard(handle)
            handle.peers.clear()
            await handle.rpc.close()

    async def _kill(self, handle: NodeHandle) -> None:
        process = handle.process
        if process is None or not self.control.is_alive(process):
            return
        await self.control.kill(process)
        if not await process.wait_exited(KILL_WAIT):
            logger.warning(f"{handle.name} still running after kill")

    async def stop_all(self, handles: Sequence[NodeHandle] | None = None) -> None:
        targets = list(handles) if handles is not None else list(self.handles)
        await asyncio.gather(*(self.stop(handle) for handle in targets))
