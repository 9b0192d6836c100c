"""
In-memory HD wallet driven by a node's RPC interface.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence

from loguru import logger

from rtwallet.backends.base import NodeRPC, RPCError
from rtwallet.backends.notifier import ChainNotifier
from rtwallet.constants import DEFAULT_DUST_THRESHOLD, DEFAULT_FEE_RATE
from rtwallet.errors import BroadcastError
from rtwallet.models import ChainParams
from rtwallet.wallet.keyring import KeyRing
from rtwallet.wallet.ledger import UTXOLedger
from rtwallet.wallet.models import DerivedKey, SignedTransaction, TrackedOutput
from rtwallet.wallet.tx_builder import TransactionBuilder


class MemWallet:
    """
    Test wallet holding keys and outputs in process memory only.

    Addresses come from the key ring, outputs are learned by following the
    node's chain, and transactions are built and signed locally.
    """

    def __init__(
        self,
        seed: bytes,
        rpc: NodeRPC,
        params: ChainParams,
        fee_rate: int = DEFAULT_FEE_RATE,
        dust_threshold: int = DEFAULT_DUST_THRESHOLD,
    ):
        self.rpc = rpc
        self.params = params
        self.fee_rate = fee_rate
        self.keyring = KeyRing(seed, params)
        self.ledger = UTXOLedger(self.keyring.is_mine, params.coinbase_maturity)
        self.builder = TransactionBuilder(self.keyring, self.ledger, dust_threshold)
        self._notifier = ChainNotifier(rpc)
        self._sync_lock = asyncio.Lock()

        logger.info(f"Initialized in-memory wallet for {params.network.value}")

    def new_address(self) -> str:
        return self.keyring.new_address()

    def private_key_for(self, address: str) -> DerivedKey:
        return self.keyring.private_key_for(address)

    @property
    def synced_height(self) -> int:
        return self.ledger.tip_height

    async def sync(self) -> int:
        """Catch the ledger up with the node's current chain and mempool"""
        async with self._sync_lock:
            notifications = await self._notifier.poll()
            for notification in notifications:
                self.ledger.ingest(notification)
        return self.ledger.tip_height

    def balance(self, address: str | None = None, min_confirmations: int = 0) -> int:
        return self.ledger.balance(address, min_confirmations)

    def confirmed_balance(self) -> int:
        return self.ledger.balance(min_confirmations=1)

    def spendable_outputs(self, min_confirmations: int = 0) -> list[TrackedOutput]:
        return self.ledger.spendable_outputs(min_confirmations)

    def create_transaction(
        self,
        outputs: Sequence[tuple[str, int]],
        fee_rate: int | None = None,
        min_confirmations: int = 1,
    ) -> SignedTransaction:
        rate = self.fee_rate if fee_rate is None else fee_rate
        return self.builder.create(outputs, rate, min_confirmations)

    async def send_outputs(
        self,
        outputs: Sequence[tuple[str, int]],
        fee_rate: int | None = None,
        min_confirmations: int = 1,
    ) -> str:
        """
        Create a transaction and broadcast it.

        If the node rejects it the consumed outputs are unlocked again.
        """
        tx = self.create_transaction(outputs, fee_rate, min_confirmations)
        try:
            txid = await self.rpc.send_raw_transaction(tx.hex())
        except RPCError as e:
            logger.error(f"Node rejected transaction {tx.txid}: {e.message}")
            self.ledger.unlock(tx.inputs)
            raise BroadcastError(tx.txid, e.message) from e

        return txid

    def unlock_outputs(self, outputs: Iterable[TrackedOutput]) -> None:
        self.ledger.unlock(outputs)
