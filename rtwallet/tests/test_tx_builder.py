"""
Tests for coin selection and transaction building.
"""

from __future__ import annotations

import threading

import pytest

from rtwallet.backends.base import BlockConnected, ChainTransaction, TxAccepted
from rtwallet.errors import InsufficientFundsError, OutputAlreadySpentError, SigningError
from rtwallet.wallet.address import address_to_scriptpubkey
from rtwallet.wallet.ledger import UTXOLedger
from rtwallet.wallet.models import TrackedOutput
from rtwallet.wallet.signing import verify_p2wpkh_input
from rtwallet.wallet.transaction import deserialize_transaction
from rtwallet.wallet.tx_builder import (
    TransactionBuilder,
    calculate_fee,
    estimate_vsize,
    select_coins,
)


def fund(ledger: UTXOLedger, address: str, *amounts: int) -> None:
    """Confirm one output per amount in block 1"""
    txs = [
        ChainTransaction(txid=f"{i + 1:064x}", outputs=[(address, amount)])
        for i, amount in enumerate(amounts)
    ]
    ledger.ingest(BlockConnected(height=1, hash="b1", prev_hash="b0", transactions=txs))


def utxo(txid_byte: int, amount: int, vout: int = 0) -> TrackedOutput:
    return TrackedOutput(txid=f"{txid_byte:02x}" * 32, vout=vout, amount=amount, address="x")


@pytest.fixture
def builder(keyring, ledger) -> TransactionBuilder:
    return TransactionBuilder(keyring, ledger)


@pytest.fixture
def recipient(foreign_keyring) -> str:
    return foreign_keyring.new_address()


class TestFees:
    def test_estimate_vsize(self):
        assert estimate_vsize(1, 1) == 110
        assert estimate_vsize(2, 2) == 11 + 2 * 68 + 2 * 31

    def test_fee_rounds_up(self):
        assert calculate_fee(110, 1000) == 110
        assert calculate_fee(110, 1001) == 111
        assert calculate_fee(141, 500) == 71
        assert calculate_fee(141, 0) == 0


class TestSelectCoins:
    def test_largest_first(self):
        candidates = [utxo(1, 1_000), utxo(2, 5_000), utxo(3, 3_000)]
        selected, fee = select_coins(candidates, 4_000, 1, 1000)
        assert [u.amount for u in selected] == [5_000]
        assert fee == 110

    def test_adds_inputs_until_target_covers_fee(self):
        candidates = [utxo(1, 3_000), utxo(2, 3_000), utxo(3, 1_000)]
        selected, fee = select_coins(candidates, 6_000, 1, 1000)
        # 6000 + fee for two inputs is not covered by two 3000 outputs
        assert len(selected) == 3
        assert fee == calculate_fee(estimate_vsize(3, 1), 1000)

    def test_tie_break_by_outpoint(self):
        candidates = [utxo(9, 1_000), utxo(2, 1_000, vout=1), utxo(2, 1_000, vout=0)]
        selected, _ = select_coins(candidates, 500, 1, 1000)
        assert selected[0].outpoint == ("02" * 32, 0)

    def test_insufficient(self):
        with pytest.raises(InsufficientFundsError) as exc_info:
            select_coins([utxo(1, 1_000)], 1_000, 1, 1000)
        assert exc_info.value.available == 1_000
        assert exc_info.value.needed == 1_110

    def test_empty(self):
        with pytest.raises(InsufficientFundsError):
            select_coins([], 1, 1, 0)


class TestTransactionBuilder:
    def test_payment_with_change(self, builder, keyring, ledger, recipient):
        fund(ledger, keyring.new_address(), 10_000_000)

        tx = builder.create([(recipient, 5_000_000)], fee_rate=1000)

        parsed = deserialize_transaction(tx.raw)
        assert len(parsed.outputs) == 2
        assert parsed.outputs[0].value == 5_000_000
        assert parsed.outputs[0].script == address_to_scriptpubkey(recipient, keyring.params)
        assert keyring.is_mine(tx.change_address)
        assert tx.change_amount == 10_000_000 - 5_000_000 - 141
        assert parsed.outputs[1].value == tx.change_amount
        assert tx.fee == 141
        assert parsed.txid == tx.txid

    def test_change_below_dust_is_forfeited(self, builder, keyring, ledger, recipient):
        fund(ledger, keyring.new_address(), 10_000_000)
        next_index = keyring.next_index

        tx = builder.create([(recipient, 9_999_359)], fee_rate=1000)

        parsed = deserialize_transaction(tx.raw)
        assert len(parsed.outputs) == 1
        assert tx.change_address is None
        assert tx.change_amount == 0
        assert tx.fee == 641
        assert keyring.next_index == next_index

    def test_change_at_dust_threshold_is_kept(self, builder, keyring, ledger, recipient):
        fund(ledger, keyring.new_address(), 10_000_000)

        tx = builder.create([(recipient, 9_999_313)], fee_rate=1000)

        assert tx.change_amount == 546
        assert len(deserialize_transaction(tx.raw).outputs) == 2

    def test_outputs_keep_order(self, builder, keyring, ledger, foreign_keyring):
        fund(ledger, keyring.new_address(), 10_000_000)
        payees = [(foreign_keyring.new_address(), amount) for amount in (3_000, 1_000, 2_000)]

        tx = builder.create(payees, fee_rate=1000)

        parsed = deserialize_transaction(tx.raw)
        assert [out.value for out in parsed.outputs[:3]] == [3_000, 1_000, 2_000]
        assert tx.outputs == payees

    def test_every_input_is_signed(self, builder, keyring, ledger, recipient):
        fund(ledger, keyring.new_address(), 3_000_000, 3_000_000, 3_000_000)

        tx = builder.create([(recipient, 7_000_000)], fee_rate=2000)

        parsed = deserialize_transaction(tx.raw)
        assert len(parsed.inputs) == 3
        for index, spent in enumerate(tx.inputs):
            assert (parsed.inputs[index].txid, parsed.inputs[index].vout) == spent.outpoint
            assert verify_p2wpkh_input(parsed, index, spent.amount)

    def test_fee_covers_actual_size(self, builder, keyring, ledger, recipient):
        fund(ledger, keyring.new_address(), 3_000_000, 3_000_000)

        tx = builder.create([(recipient, 4_000_000)], fee_rate=1000)

        parsed = deserialize_transaction(tx.raw)
        total_in = sum(u.amount for u in tx.inputs)
        total_out = sum(out.value for out in parsed.outputs)
        assert total_in - total_out == tx.fee
        assert tx.fee >= calculate_fee(parsed.vsize, 1000)

    def test_marks_inputs_spent(self, builder, keyring, ledger, recipient):
        fund(ledger, keyring.new_address(), 10_000_000)

        tx = builder.create([(recipient, 1_000_000)], fee_rate=1000)

        for spent in tx.inputs:
            tracked = ledger.get_output(spent.outpoint)
            assert tracked.spent
            assert tracked.spent_by == tx.txid
        assert [p.txid for p in ledger.pending_spends()] == [tx.txid]
        with pytest.raises(OutputAlreadySpentError):
            ledger.mark_spent(tx.inputs)

    def test_insufficient_funds_leaves_ledger_unchanged(self, builder, keyring, ledger, recipient):
        fund(ledger, keyring.new_address(), 10_000_000)
        before = ledger.outputs()
        next_index = keyring.next_index

        with pytest.raises(InsufficientFundsError):
            builder.create([(recipient, 10_000_000)], fee_rate=1000)

        assert ledger.outputs() == before
        assert ledger.pending_spends() == []
        assert keyring.next_index == next_index

    def test_respects_min_confirmations(self, builder, keyring, ledger, recipient):
        address = keyring.new_address()
        ledger.ingest(TxAccepted(ChainTransaction(txid="cd" * 32, outputs=[(address, 50_000)])))

        with pytest.raises(InsufficientFundsError):
            builder.create([(recipient, 10_000)], fee_rate=1000)

        tx = builder.create([(recipient, 10_000)], fee_rate=1000, min_confirmations=0)
        assert tx.inputs[0].txid == "cd" * 32

    def test_signing_failure_leaves_ledger_unchanged(self, keyring, foreign_keyring, recipient):
        # A ledger that claims outputs the key ring cannot sign for
        ledger = UTXOLedger(lambda address: address is not None)
        fund(ledger, foreign_keyring.new_address(), 10_000_000)
        builder = TransactionBuilder(keyring, ledger)

        with pytest.raises(SigningError):
            builder.create([(recipient, 1_000_000)], fee_rate=1000)

        assert ledger.balance() == 10_000_000
        assert ledger.pending_spends() == []

    @pytest.mark.parametrize(
        "outputs, fee_rate",
        [
            ([], 1000),
            ([("bcrt1qw508d6qejxtdg4y5r3zarvary0c5xw7kygt080", 0)], 1000),
            ([("bcrt1qw508d6qejxtdg4y5r3zarvary0c5xw7kygt080", -5)], 1000),
        ],
    )
    def test_invalid_request(self, builder, outputs, fee_rate):
        with pytest.raises(ValueError):
            builder.create(outputs, fee_rate)

    def test_negative_fee_rate(self, builder, recipient):
        with pytest.raises(ValueError):
            builder.create([(recipient, 1_000)], fee_rate=-1)

    def test_invalid_address(self, builder):
        with pytest.raises(ValueError):
            builder.create([("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", 1_000)], 1000)


class TestConcurrentBuilds:
    def run_concurrently(self, count, target):
        barrier = threading.Barrier(count)
        results: list[object] = [None] * count

        def worker(slot: int) -> None:
            barrier.wait()
            try:
                results[slot] = target()
            except Exception as e:
                results[slot] = e

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def test_only_one_build_wins_an_output(self, builder, keyring, ledger, recipient):
        fund(ledger, keyring.new_address(), 10_000_000)

        results = self.run_concurrently(
            2, lambda: builder.create([(recipient, 6_000_000)], fee_rate=1000)
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], (InsufficientFundsError, OutputAlreadySpentError))

    def test_parallel_builds_use_distinct_outputs(self, builder, keyring, ledger, recipient):
        fund(ledger, keyring.new_address(), *([1_000_000] * 8))

        results = self.run_concurrently(
            8, lambda: builder.create([(recipient, 900_000)], fee_rate=1000)
        )

        assert not [r for r in results if isinstance(r, Exception)]
        spent = [u.outpoint for tx in results for u in tx.inputs]
        assert len(spent) == 8
        assert len(set(spent)) == 8
        assert ledger.balance(min_confirmations=1) == 0
