"""
End-to-end tests for MemWallet against the in-memory node.
"""

import pytest
import pytest_asyncio

from rtwallet.errors import BroadcastError, UnknownAddressError
from rtwallet.testing import COINBASE_SUBSIDY

PAYMENT = 1_000_000_000
# One input, payment plus change at 1000 sat/kvB
FEE = 141


@pytest_asyncio.fixture
async def funded(wallet, fake_node):
    """Wallet with 101 coinbase outputs, exactly one of them mature"""
    address = wallet.new_address()
    await fake_node.generate_blocks(101, address)
    await wallet.sync()
    return address


@pytest.mark.asyncio
async def test_sync_follows_tip(wallet, fake_node):
    assert wallet.synced_height == -1
    fake_node.mine_block(None)
    fake_node.mine_block(None)

    assert await wallet.sync() == 2
    assert wallet.synced_height == 2


@pytest.mark.asyncio
async def test_coinbase_maturity(wallet, funded):
    assert wallet.balance(funded, 1) == COINBASE_SUBSIDY
    assert wallet.balance(funded, 101) == COINBASE_SUBSIDY
    assert wallet.balance(funded, 102) == 0
    assert wallet.confirmed_balance() == COINBASE_SUBSIDY
    assert len(wallet.spendable_outputs()) == 1


@pytest.mark.asyncio
async def test_send_and_confirm(wallet, fake_node, funded, foreign_keyring):
    recipient = foreign_keyring.new_address()

    txid = await wallet.send_outputs([(recipient, PAYMENT)])
    assert txid in fake_node.mempool

    await wallet.sync()
    change = COINBASE_SUBSIDY - PAYMENT - FEE
    assert wallet.balance(min_confirmations=0) == change
    assert wallet.balance(min_confirmations=1) == 0

    fake_node.mine_block(None)
    await wallet.sync()
    # The next coinbase matured with the new block
    assert wallet.balance(min_confirmations=1) == change + COINBASE_SUBSIDY
    assert wallet.ledger.pending_spends() == []
    assert txid not in fake_node.mempool


@pytest.mark.asyncio
async def test_rejected_broadcast_unlocks_inputs(wallet, fake_node, funded, foreign_keyring):
    fake_node.reject_reason = "min relay fee not met"

    with pytest.raises(BroadcastError) as exc_info:
        await wallet.send_outputs([(foreign_keyring.new_address(), PAYMENT)])

    assert exc_info.value.reason == "min relay fee not met"
    assert wallet.balance() == COINBASE_SUBSIDY
    assert wallet.ledger.pending_spends() == []
    assert fake_node.mempool == {}


@pytest.mark.asyncio
async def test_reorg_reverts_to_unconfirmed(wallet, fake_node, funded, foreign_keyring):
    txid = await wallet.send_outputs([(foreign_keyring.new_address(), PAYMENT)])
    fake_node.mine_block(None)
    await wallet.sync()
    change_output = next(o for o in wallet.ledger.outputs() if o.txid == txid)
    assert change_output.height == 102

    fake_node.disconnect_blocks(1)
    await wallet.sync()

    change_output = wallet.ledger.get_output(change_output.outpoint)
    assert change_output.height is None
    assert wallet.balance(change_output.address, 1) == 0
    assert wallet.balance(change_output.address, 0) == change_output.amount


@pytest.mark.asyncio
async def test_transaction_dropped_by_reorg_is_forgotten(
    wallet, fake_node, funded, foreign_keyring
):
    txid = await wallet.send_outputs([(foreign_keyring.new_address(), PAYMENT)])
    await wallet.sync()
    fake_node.mine_block(None)
    await wallet.sync()

    fake_node.disconnect_blocks(1, keep_transactions=False)
    await wallet.sync()

    assert wallet.balance(min_confirmations=0) == COINBASE_SUBSIDY
    assert [o.txid for o in wallet.ledger.outputs() if o.txid == txid] == []
    assert not any(o.spent for o in wallet.ledger.outputs())
    assert wallet.ledger.pending_spends() == []

    # The released coinbase can be spent again
    await wallet.send_outputs([(foreign_keyring.new_address(), PAYMENT)])


@pytest.mark.asyncio
async def test_unlock_outputs(wallet, funded, foreign_keyring):
    tx = wallet.create_transaction([(foreign_keyring.new_address(), PAYMENT)])
    assert wallet.balance() == 0

    wallet.unlock_outputs(tx.inputs)

    assert wallet.balance() == COINBASE_SUBSIDY


@pytest.mark.asyncio
async def test_private_key_for(wallet, foreign_keyring):
    address = wallet.new_address()
    assert wallet.private_key_for(address).address == address

    with pytest.raises(UnknownAddressError):
        wallet.private_key_for(foreign_keyring.new_address())
