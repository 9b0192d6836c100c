"""
BIP32 private derivation for the test wallet.

Only the private side is needed: the wallet signs with every key it hands
out, so extended public keys are never exported.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey

from rtwallet.errors import KeyDerivationError

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED_OFFSET = 0x80000000

# BIP32 seeds must be between 128 and 512 bits
MIN_SEED_LENGTH = 16
MAX_SEED_LENGTH = 64


def parse_path(path: str) -> list[int]:
    """Turn "m/84'/1'/0'/0" into child indexes, hardened ones offset"""
    head, *parts = path.split("/")
    if head != "m":
        raise ValueError(f"Path must start with 'm': {path}")

    indexes = []
    for part in filter(None, parts):
        if part[-1] in "'h":
            indexes.append(int(part[:-1]) + HARDENED_OFFSET)
        else:
            indexes.append(int(part))
    return indexes


class HDKey:
    """A private key with its BIP32 chain code."""

    def __init__(self, private_key: PrivateKey, chain_code: bytes, depth: int = 0):
        self.private_key = private_key
        self.chain_code = chain_code
        self.depth = depth

    @classmethod
    def from_seed(cls, seed: bytes | None) -> HDKey:
        if not seed:
            raise KeyDerivationError("Seed is absent")
        if not MIN_SEED_LENGTH <= len(seed) <= MAX_SEED_LENGTH:
            raise KeyDerivationError(f"Invalid seed length: {len(seed)} bytes")

        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        try:
            master = PrivateKey(digest[:32])
        except ValueError as e:
            raise KeyDerivationError(f"Seed produces an invalid master key: {e}") from e
        return cls(master, digest[32:])

    def derive(self, path: str) -> HDKey:
        key = self
        for index in parse_path(path):
            key = key.child(index)
        return key

    def child(self, index: int) -> HDKey:
        """CKDpriv: derive the child at index (hardened when >= HARDENED_OFFSET)"""
        if not 0 <= index <= 0xFFFFFFFF:
            raise KeyDerivationError(f"Child index out of range: {index}")

        secret = self.private_key.secret
        if index >= HARDENED_OFFSET:
            payload = b"\x00" + secret
        else:
            payload = self.get_public_key_bytes()
        data = payload + index.to_bytes(4, "big")
        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        tweak, chain_code = digest[:32], digest[32:]

        tweak_int = int.from_bytes(tweak, "big")
        child_int = (int.from_bytes(secret, "big") + tweak_int) % SECP256K1_N
        # Probability ~2^-127; BIP32 says skip to the next index
        if tweak_int >= SECP256K1_N or child_int == 0:
            raise KeyDerivationError(f"Invalid child key at index {index}")

        return HDKey(PrivateKey(child_int.to_bytes(32, "big")), chain_code, self.depth + 1)

    def get_private_key_bytes(self) -> bytes:
        return self.private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        return self.private_key.public_key.format(compressed=compressed)
