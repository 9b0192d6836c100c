"""
Wallet exceptions.
"""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all wallet failures."""


class KeyDerivationError(WalletError):
    """Raised when the seed is missing or corrupt and no key can be derived."""


class UnknownAddressError(WalletError):
    """Raised when an address was not produced by this key ring."""

    def __init__(self, address: str):
        super().__init__(f"Address {address} is not managed by this wallet")
        self.address = address


class InsufficientFundsError(WalletError):
    def __init__(self, needed: int, available: int):
        super().__init__(f"Insufficient funds: need {needed}, have {available}")
        self.needed = needed
        self.available = available


class OutputAlreadySpentError(WalletError):
    def __init__(self, outpoint: str):
        super().__init__(f"Output {outpoint} is already spent")
        self.outpoint = outpoint


class SigningError(WalletError):
    pass


class BroadcastError(WalletError):
    """Raised when the node rejects a transaction."""

    def __init__(self, txid: str, reason: str):
        super().__init__(f"Broadcast of {txid} rejected: {reason}")
        self.txid = txid
        self.reason = reason
