"""
rtwallet - In-memory HD wallet for node integration tests

Derives keys from a seed, tracks outputs from chain notifications, and
builds fully signed transactions without relying on the node's wallet.
"""

__version__ = "0.1.0"

from rtwallet.errors import (
    BroadcastError,
    InsufficientFundsError,
    KeyDerivationError,
    OutputAlreadySpentError,
    SigningError,
    UnknownAddressError,
    WalletError,
)
from rtwallet.models import REGTEST_PARAMS, ChainParams, NetworkType, get_chain_params
from rtwallet.wallet.keyring import KeyRing
from rtwallet.wallet.ledger import UTXOLedger
from rtwallet.wallet.models import DerivedKey, PendingSpend, SignedTransaction, TrackedOutput
from rtwallet.wallet.service import MemWallet
from rtwallet.wallet.tx_builder import TransactionBuilder

__all__ = [
    "BroadcastError",
    "ChainParams",
    "DerivedKey",
    "InsufficientFundsError",
    "KeyDerivationError",
    "KeyRing",
    "MemWallet",
    "NetworkType",
    "OutputAlreadySpentError",
    "PendingSpend",
    "REGTEST_PARAMS",
    "SignedTransaction",
    "SigningError",
    "TrackedOutput",
    "TransactionBuilder",
    "UTXOLedger",
    "UnknownAddressError",
    "WalletError",
    "get_chain_params",
]
