"""
Deterministic key and address allocation from a single seed.
"""

from __future__ import annotations

import threading

from loguru import logger

from rtwallet.errors import KeyDerivationError, UnknownAddressError
from rtwallet.models import ChainParams
from rtwallet.wallet.address import pubkey_to_p2wpkh_address
from rtwallet.wallet.bip32 import HDKey
from rtwallet.wallet.models import DerivedKey


class KeyRing:
    """
    Allocates P2WPKH addresses from a BIP84 external branch.

    Derivation path: m/84'/{coin_type}'/0'/0/{index}

    The index counter is the only mutable state; the key at a given index
    is always the same for the same seed.
    """

    def __init__(self, seed: bytes, params: ChainParams):
        self.params = params
        self._seed = seed
        self._lock = threading.Lock()
        self._next_index = 0
        self.address_cache: dict[str, int] = {}

        master_key = HDKey.from_seed(seed)
        self.root_path = f"m/84'/{params.coin_type}'/0'/0"
        self._branch_key: HDKey | None = master_key.derive(self.root_path)

    @property
    def next_index(self) -> int:
        return self._next_index

    def derive_key(self, index: int) -> DerivedKey:
        """Derive the key pair at index. Pure: does not allocate the index"""
        if self._branch_key is None:
            raise KeyDerivationError("Key ring has no seed")

        key = self._branch_key.child(index)
        public_key = key.get_public_key_bytes(compressed=True)
        return DerivedKey(
            index=index,
            private_key=key.private_key,
            public_key=public_key,
            address=pubkey_to_p2wpkh_address(public_key, self.params),
        )

    def new_address(self) -> str:
        """Allocate the next unused index and return its address"""
        with self._lock:
            key = self.derive_key(self._next_index)
            self.address_cache[key.address] = key.index
            self._next_index += 1

        logger.debug(f"Allocated address {key.address} at {self.root_path}/{key.index}")
        return key.address

    def private_key_for(self, address: str) -> DerivedKey:
        """Get the key pair for an address previously returned by new_address"""
        with self._lock:
            index = self.address_cache.get(address)
        if index is None:
            raise UnknownAddressError(address)
        return self.derive_key(index)

    def is_mine(self, address: str | None) -> bool:
        return address is not None and address in self.address_cache

    def wipe(self) -> None:
        """Forget the seed. Any further derivation fails"""
        with self._lock:
            self._seed = b""
            self._branch_key = None
