"""
Transaction builder for the in-memory wallet.

Selects coins from the ledger, adds change, signs every input and locks
the selected outputs, all while holding the ledger lock.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace

from loguru import logger

from rtwallet.constants import (
    DEFAULT_DUST_THRESHOLD,
    P2WPKH_INPUT_VSIZE,
    P2WPKH_OUTPUT_VSIZE,
    TX_OVERHEAD_VSIZE,
)
from rtwallet.errors import (
    InsufficientFundsError,
    KeyDerivationError,
    SigningError,
    UnknownAddressError,
)
from rtwallet.wallet.address import address_to_scriptpubkey
from rtwallet.wallet.keyring import KeyRing
from rtwallet.wallet.ledger import UTXOLedger
from rtwallet.wallet.models import SignedTransaction, TrackedOutput
from rtwallet.wallet.signing import sign_p2wpkh_input
from rtwallet.wallet.transaction import Transaction, TxInput, TxOutput


def estimate_vsize(num_inputs: int, num_outputs: int) -> int:
    return (
        TX_OVERHEAD_VSIZE + num_inputs * P2WPKH_INPUT_VSIZE + num_outputs * P2WPKH_OUTPUT_VSIZE
    )


def calculate_fee(vsize: int, fee_rate: int) -> int:
    """Fee for vsize at fee_rate satoshis per 1000 vbytes, rounded up"""
    return -(-vsize * fee_rate // 1000)


def select_coins(
    candidates: Sequence[TrackedOutput],
    amount: int,
    num_outputs: int,
    fee_rate: int,
) -> tuple[list[TrackedOutput], int]:
    """
    Greedy largest-first selection.

    Returns the selected outputs and the fee of a transaction spending them
    to num_outputs outputs (no change).
    """
    # Ties are broken by outpoint so identical ledgers select identically
    ordered = sorted(candidates, key=lambda u: (-u.amount, u.txid, u.vout))

    selected: list[TrackedOutput] = []
    total = 0
    fee = calculate_fee(estimate_vsize(0, num_outputs), fee_rate)

    for utxo in ordered:
        selected.append(utxo)
        total += utxo.amount
        fee = calculate_fee(estimate_vsize(len(selected), num_outputs), fee_rate)
        if total >= amount + fee:
            return selected, fee

    raise InsufficientFundsError(needed=amount + fee, available=total)


class TransactionBuilder:
    def __init__(
        self,
        keyring: KeyRing,
        ledger: UTXOLedger,
        dust_threshold: int = DEFAULT_DUST_THRESHOLD,
    ):
        self.keyring = keyring
        self.ledger = ledger
        self.dust_threshold = dust_threshold

    def create(
        self,
        outputs: Sequence[tuple[str, int]],
        fee_rate: int,
        min_confirmations: int = 1,
    ) -> SignedTransaction:
        """
        Build and sign a transaction paying outputs, in order.

        The selected outputs are marked spent before returning. Nothing in the
        ledger changes if building fails.
        """
        if not outputs:
            raise ValueError("At least one output is required")
        if fee_rate < 0:
            raise ValueError(f"Fee rate must not be negative: {fee_rate}")

        params = self.keyring.params
        tx_outputs = []
        for address, amount in outputs:
            if amount <= 0:
                raise ValueError(f"Output amount must be positive: {amount}")
            tx_outputs.append(TxOutput(amount, address_to_scriptpubkey(address, params)))

        amount = sum(value for _, value in outputs)

        with self.ledger.lock:
            candidates = self.ledger.spendable_outputs(min_confirmations)
            selected, fee = select_coins(candidates, amount, len(tx_outputs), fee_rate)

            total_in = sum(utxo.amount for utxo in selected)
            surplus = total_in - amount - fee
            change_fee = calculate_fee(P2WPKH_OUTPUT_VSIZE, fee_rate)
            change_address = None
            change_amount = surplus - change_fee

            if change_amount >= self.dust_threshold:
                change_address = self.keyring.new_address()
                tx_outputs.append(
                    TxOutput(change_amount, address_to_scriptpubkey(change_address, params))
                )
                fee += change_fee
            else:
                # Forfeit the surplus to the fee rather than create dust
                change_amount = 0
                fee += surplus

            tx = Transaction(
                inputs=[TxInput(utxo.txid, utxo.vout) for utxo in selected],
                outputs=tx_outputs,
            )
            self._sign(tx, selected)

            txid = tx.txid
            self.ledger.mark_spent(selected, txid=txid)

        logger.info(
            f"Built transaction {txid}: {len(selected)} input(s), {len(tx_outputs)} output(s), "
            f"fee {fee} sats"
        )

        return SignedTransaction(
            txid=txid,
            raw=tx.serialize(),
            inputs=[replace(utxo, spent=True, spent_by=txid) for utxo in selected],
            outputs=[(address, value) for address, value in outputs],
            fee=fee,
            change_address=change_address,
            change_amount=change_amount,
        )

    def _sign(self, tx: Transaction, selected: Sequence[TrackedOutput]) -> None:
        for index, utxo in enumerate(selected):
            try:
                key = self.keyring.private_key_for(utxo.address)
            except (UnknownAddressError, KeyDerivationError) as e:
                raise SigningError(f"No key for input {utxo} owned by {utxo.address}") from e
            sign_p2wpkh_input(tx, index, utxo.amount, key.private_key)
