"""
Chain notifications derived by polling a node.

The node has no push channel we rely on, so the notifier keeps its own
view of the active chain (height -> hash) and diffs it against the node on
every poll. It emits disconnects for blocks that left the active chain,
connects for new blocks, accepts for new mempool transactions and removals
for transactions that vanished without being mined.
"""

from __future__ import annotations

from loguru import logger

from rtwallet.backends.base import (
    BlockConnected,
    BlockDisconnected,
    ChainNotification,
    NodeRPC,
    TxAccepted,
    TxRemoved,
)


class ChainNotifier:
    def __init__(self, rpc: NodeRPC, start_height: int = 0):
        self.rpc = rpc
        self.start_height = start_height
        self._chain: dict[int, str] = {}
        self._block_txids: dict[int, list[str]] = {}
        self._seen_mempool: set[str] = set()

    @property
    def tip_height(self) -> int:
        return max(self._chain) if self._chain else self.start_height - 1

    @property
    def tip_hash(self) -> str | None:
        return self._chain.get(self.tip_height)

    async def poll(self) -> list[ChainNotification]:
        """Return every notification needed to bring a follower up to date"""
        notifications: list[ChainNotification] = []

        # Read the mempool before the chain: a transaction missing from it
        # is then either in a block connected below or really gone
        mempool = await self.rpc.get_raw_mempool()
        best = await self.rpc.get_best_block()
        unmined: set[str] = set()
        mined: set[str] = set()

        # Unwind our blocks until we reach one that is still on the active chain
        height = self.tip_height
        while height in self._chain:
            if height <= best.height:
                if await self.rpc.get_block_hash(height) == self._chain[height]:
                    break
            block_hash = self._chain.pop(height)
            unmined.update(self._block_txids.pop(height, []))
            logger.debug(f"Block {height} ({block_hash[:16]}...) left the active chain")
            notifications.append(BlockDisconnected(height=height, hash=block_hash))
            height -= 1

        for next_height in range(height + 1, best.height + 1):
            block_hash = await self.rpc.get_block_hash(next_height)
            block = await self.rpc.get_block(block_hash)
            parent = self._chain.get(next_height - 1)
            if parent is not None and block.prev_hash != parent:
                # The chain moved under us, the next poll unwinds the fork
                logger.debug(f"Chain changed while connecting height {next_height}, retrying")
                break

            self._chain[next_height] = block.hash
            self._block_txids[next_height] = [
                tx.txid for tx in block.transactions if not tx.is_coinbase
            ]
            mined.update(tx.txid for tx in block.transactions)
            notifications.append(
                BlockConnected(
                    height=next_height,
                    hash=block.hash,
                    prev_hash=block.prev_hash,
                    transactions=block.transactions,
                )
            )

        for txid in sorted(mempool - self._seen_mempool - mined):
            tx = await self.rpc.get_raw_transaction(txid)
            if tx is None:
                # Evicted between the two calls
                continue
            self._seen_mempool.add(txid)
            notifications.append(TxAccepted(transaction=tx))

        for txid in sorted((self._seen_mempool | unmined) - mempool - mined):
            logger.debug(f"Transaction {txid} left the mempool without being mined")
            notifications.append(TxRemoved(txid=txid))
        self._seen_mempool = (self._seen_mempool & mempool) - mined

        if notifications:
            logger.debug(
                f"Chain poll produced {len(notifications)} notification(s), "
                f"tip now {self.tip_height}"
            )
        return notifications
