"""
Base node RPC interface and chain notification types.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import httpx

from rtwallet.wallet.models import Outpoint

# Default interval between chain polls when following the node (seconds)
DEFAULT_NOTIFICATION_INTERVAL = 0.5


class RPCError(ValueError):
    """JSON-RPC error object returned by the node."""

    def __init__(self, code: int | str, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


@dataclass(frozen=True)
class BestBlock:
    height: int
    hash: str


@dataclass
class ChainTransaction:
    """Transaction as seen by the wallet: spent outpoints and paid addresses"""

    txid: str
    inputs: list[Outpoint] = field(default_factory=list)
    outputs: list[tuple[str | None, int]] = field(default_factory=list)
    is_coinbase: bool = False


@dataclass
class ChainBlock:
    height: int
    hash: str
    prev_hash: str
    transactions: list[ChainTransaction] = field(default_factory=list)


@dataclass
class BlockConnected:
    height: int
    hash: str
    prev_hash: str
    transactions: list[ChainTransaction] = field(default_factory=list)


@dataclass
class BlockDisconnected:
    height: int
    hash: str


@dataclass
class TxAccepted:
    """Transaction accepted to the mempool (unconfirmed)"""

    transaction: ChainTransaction


@dataclass
class TxRemoved:
    """Transaction left the mempool without being mined (evicted, conflicted or reorged out)"""

    txid: str


ChainNotification = BlockConnected | BlockDisconnected | TxAccepted | TxRemoved


class NodeRPC(ABC):
    """
    Abstract node RPC client.
    The harness and wallet drive the node exclusively through these calls.
    """

    @abstractmethod
    async def get_best_block(self) -> BestBlock:
        """Get current chain tip height and hash"""

    @abstractmethod
    async def get_block_hash(self, height: int) -> str:
        """Get block hash for given height on the active chain"""

    @abstractmethod
    async def get_block(self, block_hash: str) -> ChainBlock:
        """Get a block with its transactions"""

    @abstractmethod
    async def get_raw_transaction(self, txid: str) -> ChainTransaction | None:
        """Get a transaction by txid, None if unknown"""

    @abstractmethod
    async def generate_blocks(self, count: int, address: str) -> list[str]:
        """Mine blocks paying the coinbase to address, returns block hashes"""

    @abstractmethod
    async def get_raw_mempool(self) -> set[str]:
        """Get txids currently in the mempool"""

    @abstractmethod
    async def send_raw_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid. Raises RPCError on rejection"""

    @abstractmethod
    async def add_node(self, address: str) -> None:
        """Ask the node to connect to a peer at host:port"""

    @abstractmethod
    async def get_peer_addresses(self) -> list[str]:
        """Get host:port of every connected peer"""

    async def ping(self) -> bool:
        """Return True if the RPC endpoint answers"""
        try:
            await self.get_best_block()
            return True
        except (httpx.HTTPError, RPCError):
            return False

    async def subscribe_chain_notifications(
        self,
        start_height: int = 0,
        poll_interval: float = DEFAULT_NOTIFICATION_INTERVAL,
    ) -> AsyncIterator[ChainNotification]:
        """
        Follow the node's chain from start_height.

        The sequence is infinite; calling this again restarts from scratch
        with an independent cursor.
        """
        from rtwallet.backends.notifier import ChainNotifier

        notifier = ChainNotifier(self, start_height=start_height)
        while True:
            for notification in await notifier.poll():
                yield notification
            await asyncio.sleep(poll_interval)

    async def close(self) -> None:
        """Close RPC connection"""
        pass
