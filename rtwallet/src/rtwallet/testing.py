"""
In-memory node for unit tests.

FakeNode implements NodeRPC over a simulated chain and mempool. It accepts
transactions built by the wallet, mines blocks with a coinbase paying the
requested address and can reorganise its chain on demand.
"""

from __future__ import annotations

import hashlib
import itertools

import httpx
from loguru import logger

from rtwallet.backends.base import BestBlock, ChainBlock, ChainTransaction, NodeRPC, RPCError
from rtwallet.models import REGTEST_PARAMS, ChainParams
from rtwallet.wallet.address import scriptpubkey_to_address
from rtwallet.wallet.models import Outpoint
from rtwallet.wallet.transaction import TransactionParseError, deserialize_transaction

COINBASE_SUBSIDY = 50 * 100_000_000

# Bitcoin Core RPC error codes
RPC_INVALID_PARAMETER = -8
RPC_DESERIALIZATION_ERROR = -22
RPC_VERIFY_REJECTED = -26
RPC_VERIFY_ALREADY_IN_CHAIN = -27


def _fake_hash(*parts: object) -> str:
    return hashlib.sha256("/".join(str(p) for p in parts).encode()).hexdigest()


class FakeNode(NodeRPC):
    """
    Simulated node holding its chain and mempool in memory.

    Set `online` to False to make every call fail like an unreachable
    endpoint.
    """

    def __init__(self, params: ChainParams = REGTEST_PARAMS, name: str = "fake"):
        self.params = params
        self.name = name
        self.online = True
        self.closed = False
        self.reject_reason: str | None = None
        self.peers: list[str] = []
        self.mempool: dict[str, ChainTransaction] = {}
        self._nonce = itertools.count()
        genesis = ChainBlock(height=0, hash=_fake_hash(name, "genesis"), prev_hash="00" * 32)
        self.blocks: list[ChainBlock] = [genesis]

    def _check_online(self) -> None:
        if not self.online:
            raise httpx.ConnectError(f"{self.name} is not reachable")

    @property
    def height(self) -> int:
        return len(self.blocks) - 1

    def _transactions(self) -> list[ChainTransaction]:
        txs = [tx for block in self.blocks for tx in block.transactions]
        return txs + list(self.mempool.values())

    def _utxos(self) -> dict[Outpoint, tuple[str | None, int]]:
        unspent: dict[Outpoint, tuple[str | None, int]] = {}
        for tx in self._transactions():
            for outpoint in tx.inputs:
                unspent.pop(outpoint, None)
            for vout, output in enumerate(tx.outputs):
                unspent[(tx.txid, vout)] = output
        return unspent

    async def get_best_block(self) -> BestBlock:
        self._check_online()
        tip = self.blocks[-1]
        return BestBlock(height=tip.height, hash=tip.hash)

    async def get_block_hash(self, height: int) -> str:
        self._check_online()
        if not 0 <= height <= self.height:
            raise RPCError(RPC_INVALID_PARAMETER, "Block height out of range")
        return self.blocks[height].hash

    async def get_block(self, block_hash: str) -> ChainBlock:
        self._check_online()
        for block in self.blocks:
            if block.hash == block_hash:
                return block
        raise RPCError(-5, "Block not found")

    async def get_raw_transaction(self, txid: str) -> ChainTransaction | None:
        self._check_online()
        for tx in self._transactions():
            if tx.txid == txid:
                return tx
        return None

    async def generate_blocks(self, count: int, address: str) -> list[str]:
        self._check_online()
        return [self.mine_block(address).hash for _ in range(count)]

    def mine_block(self, address: str | None) -> ChainBlock:
        """Mine one block with a coinbase to address and every mempool transaction"""
        tip = self.blocks[-1]
        height = tip.height + 1
        nonce = next(self._nonce)
        coinbase = ChainTransaction(
            txid=_fake_hash(self.name, "coinbase", height, nonce),
            outputs=[(address, COINBASE_SUBSIDY)],
            is_coinbase=True,
        )
        block = ChainBlock(
            height=height,
            hash=_fake_hash(self.name, tip.hash, height, nonce),
            prev_hash=tip.hash,
            transactions=[coinbase, *self.mempool.values()],
        )
        self.mempool.clear()
        self.blocks.append(block)
        return block

    def disconnect_blocks(self, count: int = 1, keep_transactions: bool = True) -> None:
        """Drop the top count blocks, optionally returning their transactions to the mempool"""
        for _ in range(count):
            if len(self.blocks) == 1:
                raise ValueError("Cannot disconnect the genesis block")
            block = self.blocks.pop()
            logger.debug(f"{self.name}: disconnected block {block.height}")
            if keep_transactions:
                for tx in block.transactions:
                    if not tx.is_coinbase:
                        self.mempool[tx.txid] = tx

    def adopt_chain(self, other: FakeNode) -> None:
        """Take over another node's chain and mempool, as a peer would"""
        self.blocks = list(other.blocks)
        self.mempool = dict(other.mempool)

    async def get_raw_mempool(self) -> set[str]:
        self._check_online()
        return set(self.mempool)

    async def send_raw_transaction(self, tx_hex: str) -> str:
        self._check_online()
        if self.reject_reason is not None:
            raise RPCError(RPC_VERIFY_REJECTED, self.reject_reason)

        try:
            raw = deserialize_transaction(bytes.fromhex(tx_hex))
        except (TransactionParseError, ValueError) as e:
            raise RPCError(RPC_DESERIALIZATION_ERROR, "TX decode failed") from e

        txid = raw.txid
        if any(tx.txid == txid for tx in self._transactions()):
            raise RPCError(RPC_VERIFY_ALREADY_IN_CHAIN, "Transaction already known")

        utxos = self._utxos()
        inputs = [(inp.txid, inp.vout) for inp in raw.inputs]
        if any(outpoint not in utxos for outpoint in inputs):
            raise RPCError(RPC_VERIFY_REJECTED, "bad-txns-inputs-missingorspent")

        self.mempool[txid] = ChainTransaction(
            txid=txid,
            inputs=inputs,
            outputs=[
                (scriptpubkey_to_address(out.script, self.params), out.value)
                for out in raw.outputs
            ],
        )
        return txid

    async def add_node(self, address: str) -> None:
        self._check_online()
        if address not in self.peers:
            self.peers.append(address)

    async def get_peer_addresses(self) -> list[str]:
        self._check_online()
        return list(self.peers)

    async def close(self) -> None:
        self.closed = True
