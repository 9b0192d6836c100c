"""
Pytest configuration and fixtures for rtwallet tests.
"""

from __future__ import annotations

import pytest

from rtwallet.models import REGTEST_PARAMS, ChainParams
from rtwallet.testing import FakeNode
from rtwallet.wallet.keyring import KeyRing
from rtwallet.wallet.ledger import UTXOLedger
from rtwallet.wallet.service import MemWallet


@pytest.fixture
def test_seed() -> bytes:
    return bytes(range(32))


@pytest.fixture
def params() -> ChainParams:
    return REGTEST_PARAMS


@pytest.fixture
def keyring(test_seed: bytes, params: ChainParams) -> KeyRing:
    return KeyRing(test_seed, params)


@pytest.fixture
def foreign_keyring(params: ChainParams) -> KeyRing:
    """A second wallet, for addresses we do not own"""
    return KeyRing(b"\x42" * 32, params)


@pytest.fixture
def ledger(keyring: KeyRing) -> UTXOLedger:
    return UTXOLedger(keyring.is_mine, coinbase_maturity=100)


@pytest.fixture
def fake_node(params: ChainParams) -> FakeNode:
    return FakeNode(params)


@pytest.fixture
def wallet(test_seed: bytes, fake_node: FakeNode, params: ChainParams) -> MemWallet:
    return MemWallet(test_seed, fake_node, params)
