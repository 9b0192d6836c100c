"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from coincurve import PrivateKey

Outpoint = tuple[str, int]


@dataclass(frozen=True)
class DerivedKey:
    """Key pair derived from the wallet seed at a given index"""

    index: int
    private_key: PrivateKey = field(repr=False, compare=False)
    public_key: bytes
    address: str


@dataclass
class TrackedOutput:
    """An output paying one of the wallet's addresses"""

    txid: str
    vout: int
    amount: int
    address: str
    spent: bool = False
    height: int | None = None  # None while unconfirmed
    is_coinbase: bool = False
    seen_in_mempool: bool = False
    spent_by: str | None = None

    @property
    def outpoint(self) -> Outpoint:
        return (self.txid, self.vout)

    @property
    def confirmed(self) -> bool:
        return self.height is not None

    def confirmations(self, tip_height: int) -> int:
        if self.height is None:
            return 0
        return max(tip_height - self.height + 1, 0)

    def is_mature(self, tip_height: int, coinbase_maturity: int) -> bool:
        """Coinbase outputs need coinbase_maturity blocks on top before spending"""
        if not self.is_coinbase:
            return True
        return self.confirmations(tip_height) > coinbase_maturity

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class PendingSpend:
    """A locally built transaction whose inputs are locked until it confirms"""

    txid: str
    outputs: list[TrackedOutput]


@dataclass
class SignedTransaction:
    """Result of building a transaction"""

    txid: str
    raw: bytes
    inputs: list[TrackedOutput]
    outputs: list[tuple[str, int]]
    fee: int
    change_address: str | None = None
    change_amount: int = 0

    def hex(self) -> str:
        return self.raw.hex()
