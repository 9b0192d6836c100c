"""
Blocking waits for node and wallet state.

Every wait polls at a fixed interval until its condition holds or its own
timeout elapses. A timeout only ends that wait; the nodes are untouched.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum

import httpx
from loguru import logger
from rtwallet.backends.base import NodeRPC
from rtwallet.wallet.service import MemWallet

from rpctest.errors import TimedOutError

DEFAULT_SYNC_TIMEOUT = 60.0
DEFAULT_POLL_INTERVAL = 0.1


class SyncState(str, Enum):
    PENDING = "pending"
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"


class JoinType(str, Enum):
    BLOCKS = "blocks"
    MEMPOOLS = "mempools"


@dataclass(frozen=True)
class HeightSyncPoint:
    """Best block at or above height, with every peer on the same tip"""

    height: int

    def __str__(self) -> str:
        return f"height >= {self.height}"


@dataclass(frozen=True)
class MempoolSyncPoint:
    txid: str

    def __str__(self) -> str:
        return f"mempool containing {self.txid}"


@dataclass(frozen=True)
class BalanceSyncPoint:
    """Wallet balance (optionally of one address) at or above amount"""

    amount: int
    min_confirmations: int = 0
    address: str | None = None

    def __str__(self) -> str:
        owner = self.address or "wallet"
        return f"{owner} balance >= {self.amount} ({self.min_confirmations} conf)"


SyncPoint = HeightSyncPoint | MempoolSyncPoint | BalanceSyncPoint


async def poll_until(
    description: str,
    condition: Callable[[], Awaitable[bool]],
    timeout: float,
    poll_interval: float,
) -> None:
    """
    Await condition every poll_interval seconds until it returns True.

    Connection failures count as "not yet". Raises TimedOutError once
    timeout elapses.
    """
    try:
        async with asyncio.timeout(timeout):
            while True:
                try:
                    if await condition():
                        return
                except httpx.TransportError as e:
                    logger.debug(f"Poll for {description} failed, retrying: {e}")
                await asyncio.sleep(poll_interval)
    except TimeoutError as e:
        logger.warning(f"Timed out after {timeout:.1f}s waiting for {description}")
        raise TimedOutError(description, timeout) from e


class SyncController:
    """
    Waits until a node, its peers and optionally a wallet reach a sync point.

    Args:
        rpc: The node the sync points refer to
        peers: Nodes that must agree on the best block for height sync points
        wallet: Wallet refreshed before each poll of a balance sync point
    """

    def __init__(
        self,
        rpc: NodeRPC,
        peers: Sequence[NodeRPC] = (),
        wallet: MemWallet | None = None,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.rpc = rpc
        self.peers = list(peers)
        self.wallet = wallet
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def check(self, point: SyncPoint) -> SyncState:
        """Evaluate a sync point once"""
        if isinstance(point, HeightSyncPoint):
            satisfied = await self._check_height(point)
        elif isinstance(point, MempoolSyncPoint):
            satisfied = point.txid in await self.rpc.get_raw_mempool()
        elif isinstance(point, BalanceSyncPoint):
            satisfied = await self._check_balance(point)
        else:
            raise TypeError(f"Unknown sync point: {point!r}")
        return SyncState.SATISFIED if satisfied else SyncState.PENDING

    async def _check_height(self, point: HeightSyncPoint) -> bool:
        best = await self.rpc.get_best_block()
        if best.height < point.height:
            return False
        for peer in self.peers:
            if await peer.get_best_block() != best:
                return False
        return True

    async def _check_balance(self, point: BalanceSyncPoint) -> bool:
        assert self.wallet is not None
        await self.wallet.sync()
        balance = self.wallet.balance(point.address, point.min_confirmations)
        return balance >= point.amount

    async def wait_for(
        self,
        point: SyncPoint,
        timeout: float | None = None,
        poll_interval: float | None = None,
        raise_on_timeout: bool = True,
    ) -> SyncState:
        """
        Block until point is satisfied.

        Raises TimedOutError after timeout, or returns SyncState.TIMED_OUT when
        raise_on_timeout is False.
        """
        if isinstance(point, BalanceSyncPoint) and self.wallet is None:
            raise ValueError("Balance sync points need a wallet")

        timeout = self.timeout if timeout is None else timeout
        interval = self.poll_interval if poll_interval is None else poll_interval

        async def satisfied() -> bool:
            return await self.check(point) == SyncState.SATISFIED

        try:
            await poll_until(str(point), satisfied, timeout, interval)
        except TimedOutError:
            if raise_on_timeout:
                raise
            return SyncState.TIMED_OUT

        logger.debug(f"Reached {point}")
        return SyncState.SATISFIED


async def join_nodes(
    nodes: Sequence[NodeRPC],
    join_type: JoinType,
    timeout: float = DEFAULT_SYNC_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> None:
    """Wait until all nodes share the same best block, or the same mempool"""
    if len(nodes) < 2:
        return

    if join_type == JoinType.BLOCKS:

        async def converged() -> bool:
            tips = [await node.get_best_block() for node in nodes]
            return all(tip == tips[0] for tip in tips)

    else:

        async def converged() -> bool:
            mempools = [await node.get_raw_mempool() for node in nodes]
            return all(mempool == mempools[0] for mempool in mempools)

    description = f"{len(nodes)} nodes to agree on {join_type.value}"
    await poll_until(description, converged, timeout, poll_interval)
