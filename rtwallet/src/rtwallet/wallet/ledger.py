"""
In-memory UTXO ledger fed by chain notifications.

Every applied block keeps an undo record with the previous state of each
output it touched, so a disconnect restores exactly what the block changed.
Notifications may arrive twice, out of order or reversed.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace

from loguru import logger

from rtwallet.backends.base import (
    BlockConnected,
    BlockDisconnected,
    ChainNotification,
    ChainTransaction,
    TxAccepted,
    TxRemoved,
)
from rtwallet.errors import OutputAlreadySpentError
from rtwallet.wallet.models import Outpoint, PendingSpend, TrackedOutput


@dataclass
class _BlockUndo:
    hash: str
    prev_hash: str
    txids: list[str] = field(default_factory=list)
    # Inputs spending outputs we did not know when the block was applied
    unknown_inputs: list[tuple[Outpoint, str]] = field(default_factory=list)
    created: list[Outpoint] = field(default_factory=list)
    confirmed: list[tuple[Outpoint, int | None]] = field(default_factory=list)
    spent: list[tuple[Outpoint, bool, str | None]] = field(default_factory=list)
    settled: list[PendingSpend] = field(default_factory=list)


class UTXOLedger:
    """
    Tracks outputs paying the wallet's addresses and their spend status.

    All access goes through `lock`. The transaction builder holds it across
    coin selection and mark_spent so two builds never pick the same output.
    """

    def __init__(self, is_mine: Callable[[str | None], bool], coinbase_maturity: int = 100):
        self.is_mine = is_mine
        self.coinbase_maturity = coinbase_maturity
        self.lock = threading.RLock()
        self._outputs: dict[Outpoint, TrackedOutput] = {}
        self._blocks: dict[int, _BlockUndo] = {}
        self._pending: dict[str, PendingSpend] = {}
        self._mined: dict[str, int] = {}

    @property
    def tip_height(self) -> int:
        with self.lock:
            return max(self._blocks) if self._blocks else -1

    @property
    def tip_hash(self) -> str | None:
        with self.lock:
            return self._blocks[max(self._blocks)].hash if self._blocks else None

    def ingest(self, notification: ChainNotification) -> None:
        with self.lock:
            if isinstance(notification, BlockConnected):
                self._connect_block(notification)
            elif isinstance(notification, BlockDisconnected):
                self._disconnect_block(notification)
            elif isinstance(notification, TxAccepted):
                self._accept_transaction(notification.transaction)
            elif isinstance(notification, TxRemoved):
                self._remove_transaction(notification.txid)
            else:
                raise TypeError(f"Unknown notification: {notification!r}")

    def _connect_block(self, block: BlockConnected) -> None:
        known = self._blocks.get(block.height)
        if known is not None and known.hash == block.hash:
            return

        parent = self._blocks.get(block.height - 1)
        child = self._blocks.get(block.height + 1)
        if known is not None or (parent is not None and parent.hash != block.prev_hash):
            # We missed the disconnect of the branch this block replaces
            self._unwind_from(block.height)
        elif child is not None and child.prev_hash != block.hash:
            self._unwind_from(block.height + 1)

        undo = _BlockUndo(hash=block.hash, prev_hash=block.prev_hash)
        for tx in block.transactions:
            self._apply_transaction(tx, block.height, undo)
        self._blocks[block.height] = undo

        # A block arriving late may create outputs that later blocks spend
        if undo.created and block.height < self.tip_height:
            self._settle_unknown_inputs(block.height, set(undo.created))

    def _unwind_from(self, height: int) -> None:
        for h in sorted((h for h in self._blocks if h >= height), reverse=True):
            self._unwind(h)

    def _settle_unknown_inputs(self, height: int, created: set[Outpoint]) -> None:
        for later_height in sorted(h for h in self._blocks if h > height):
            later = self._blocks[later_height]
            for outpoint, spender in list(later.unknown_inputs):
                if outpoint not in created:
                    continue
                tracked = self._outputs[outpoint]
                later.spent.append((outpoint, tracked.spent, tracked.spent_by))
                later.unknown_inputs.remove((outpoint, spender))
                tracked.spent = True
                tracked.spent_by = spender

    def _disconnect_block(self, block: BlockDisconnected) -> None:
        known = self._blocks.get(block.height)
        if known is None or known.hash != block.hash:
            logger.debug(f"Ignoring disconnect of unknown block {block.height} {block.hash}")
            return

        self._unwind_from(block.height)

    def _apply_transaction(self, tx: ChainTransaction, height: int, undo: _BlockUndo) -> None:
        undo.txids.append(tx.txid)
        self._mined[tx.txid] = height

        for outpoint in tx.inputs:
            tracked = self._outputs.get(outpoint)
            if tracked is None:
                undo.unknown_inputs.append((outpoint, tx.txid))
                continue
            undo.spent.append((outpoint, tracked.spent, tracked.spent_by))
            tracked.spent = True
            tracked.spent_by = tx.txid

        pending = self._pending.pop(tx.txid, None)
        if pending is not None:
            undo.settled.append(pending)

        for vout, (address, amount) in enumerate(tx.outputs):
            if not self.is_mine(address):
                continue
            outpoint = (tx.txid, vout)
            tracked = self._outputs.get(outpoint)
            if tracked is None:
                self._outputs[outpoint] = TrackedOutput(
                    txid=tx.txid,
                    vout=vout,
                    amount=amount,
                    address=address,
                    height=height,
                    is_coinbase=tx.is_coinbase,
                )
                undo.created.append(outpoint)
            elif tracked.height != height:
                undo.confirmed.append((outpoint, tracked.height))
                tracked.height = height

    def _unwind(self, height: int) -> None:
        undo = self._blocks.pop(height)
        logger.debug(f"Unwinding block {height} ({undo.hash})")

        for txid in undo.txids:
            if self._mined.get(txid) == height:
                del self._mined[txid]

        for pending in undo.settled:
            self._pending[pending.txid] = pending

        for outpoint, was_spent, spent_by in reversed(undo.spent):
            tracked = self._outputs.get(outpoint)
            if tracked is not None:
                tracked.spent = was_spent
                tracked.spent_by = spent_by

        for outpoint, previous_height in undo.confirmed:
            self._outputs[outpoint].height = previous_height

        for outpoint in undo.created:
            tracked = self._outputs[outpoint]
            if tracked.seen_in_mempool:
                tracked.height = None
            else:
                del self._outputs[outpoint]

    def _accept_transaction(self, tx: ChainTransaction) -> None:
        for outpoint in tx.inputs:
            tracked = self._outputs.get(outpoint)
            if tracked is None:
                continue
            if tracked.spent and tracked.spent_by != tx.txid:
                logger.warning(
                    f"Mempool transaction {tx.txid} spends {tracked} "
                    f"already spent by {tracked.spent_by}"
                )
            tracked.spent = True
            tracked.spent_by = tx.txid

        for vout, (address, amount) in enumerate(tx.outputs):
            if not self.is_mine(address):
                continue
            outpoint = (tx.txid, vout)
            tracked = self._outputs.get(outpoint)
            if tracked is None:
                tracked = TrackedOutput(
                    txid=tx.txid,
                    vout=vout,
                    amount=amount,
                    address=address,
                    is_coinbase=tx.is_coinbase,
                )
                self._outputs[outpoint] = tracked
            tracked.seen_in_mempool = True

    def _remove_transaction(self, txid: str) -> None:
        """Forget a transaction the node dropped without mining it"""
        if txid in self._mined:
            logger.debug(f"Ignoring removal of mined transaction {txid}")
            return

        # The node saw it, so a local spend was broadcast and is now void
        if self._pending.pop(txid, None) is not None:
            logger.info(f"Transaction {txid} left the mempool unmined, releasing its inputs")

        for tracked in self._outputs.values():
            if tracked.spent_by == txid:
                tracked.spent = False
                tracked.spent_by = None

        dropped = [
            outpoint
            for outpoint, tracked in self._outputs.items()
            if tracked.txid == txid and tracked.height is None
        ]
        for outpoint in dropped:
            del self._outputs[outpoint]

    def _is_spendable(self, output: TrackedOutput, min_confirmations: int, tip: int) -> bool:
        if output.spent:
            return False
        if output.confirmations(tip) < min_confirmations:
            return False
        return output.is_mature(tip, self.coinbase_maturity)

    def spendable_outputs(self, min_confirmations: int = 0) -> list[TrackedOutput]:
        """Unspent, mature outputs with at least min_confirmations (0 includes unconfirmed)"""
        with self.lock:
            tip = self.tip_height
            return [
                replace(output)
                for output in self._outputs.values()
                if self._is_spendable(output, min_confirmations, tip)
            ]

    def balance(self, address: str | None = None, min_confirmations: int = 0) -> int:
        """Sum of spendable amounts, for one address or the whole wallet"""
        with self.lock:
            return sum(
                output.amount
                for output in self.spendable_outputs(min_confirmations)
                if address is None or output.address == address
            )

    def outputs(self) -> list[TrackedOutput]:
        """Every tracked output, spent or not"""
        with self.lock:
            return [replace(output) for output in self._outputs.values()]

    def get_output(self, outpoint: Outpoint) -> TrackedOutput | None:
        with self.lock:
            output = self._outputs.get(outpoint)
            return replace(output) if output is not None else None

    def mark_spent(self, outputs: Iterable[TrackedOutput], txid: str | None = None) -> None:
        """
        Lock outputs spent by a locally built transaction before it confirms.

        All-or-nothing: nothing is marked if any output is unknown or spent.
        """
        with self.lock:
            tracked_outputs = []
            for output in outputs:
                tracked = self._outputs.get(output.outpoint)
                if tracked is None:
                    raise KeyError(f"Output {output} is not tracked")
                if tracked.spent:
                    raise OutputAlreadySpentError(str(tracked))
                tracked_outputs.append(tracked)

            for tracked in tracked_outputs:
                tracked.spent = True
                tracked.spent_by = txid

            if txid is not None:
                self._pending[txid] = PendingSpend(
                    txid=txid, outputs=[replace(t) for t in tracked_outputs]
                )

    def unlock(self, outputs: Iterable[TrackedOutput]) -> None:
        """Release outputs locked by mark_spent, e.g. after a failed broadcast"""
        with self.lock:
            for output in outputs:
                tracked = self._outputs.get(output.outpoint)
                if tracked is None or not tracked.spent:
                    continue
                txid = tracked.spent_by
                if txid is not None:
                    pending = self._pending.get(txid)
                    if pending is None:
                        # Spent by a transaction we did not build
                        continue
                    pending.outputs = [
                        o for o in pending.outputs if o.outpoint != tracked.outpoint
                    ]
                    if not pending.outputs:
                        del self._pending[txid]
                tracked.spent = False
                tracked.spent_by = None

    def release_pending(self, txid: str) -> None:
        """Unlock every output held by a pending spend"""
        with self.lock:
            pending = self._pending.get(txid)
            if pending is not None:
                self.unlock(list(pending.outputs))

    def pending_spends(self) -> list[PendingSpend]:
        with self.lock:
            return list(self._pending.values())
