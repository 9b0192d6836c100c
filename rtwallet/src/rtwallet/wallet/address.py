"""
Bitcoin address and scriptPubKey conversion utilities.
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from rtwallet.models import ChainParams


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def pubkey_to_p2wpkh_address(pubkey: bytes, params: ChainParams) -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    address = bech32.encode(params.bech32_hrp, 0, hash160(pubkey))
    if address is None:
        raise ValueError(f"Failed to encode P2WPKH address for {pubkey.hex()}")
    return address


def pubkey_to_p2wpkh_script(pubkey: bytes) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    return bytes([0x00, 0x14]) + hash160(pubkey)


def address_to_scriptpubkey(address: str, params: ChainParams) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH / P2WSH (bech32 with the network's HRP)
    - P2TR (witness v1)
    - P2PKH / P2SH (base58 with the network's version bytes)
    """
    hrp = params.bech32_hrp
    if address.lower().startswith(hrp + "1"):
        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0:
            if len(program) == 20:
                return bytes([0x00, 0x14]) + program
            elif len(program) == 32:
                return bytes([0x00, 0x20]) + program
        elif witver == 1 and len(program) == 32:
            return bytes([0x51, 0x20]) + program

        raise ValueError(f"Unsupported witness version: {witver}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address}") from e

    version = decoded[0]
    payload = decoded[1:]
    if len(payload) != 20:
        raise ValueError(f"Invalid address payload length: {address}")

    if version == params.pubkey_hash_addr_id:
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    elif version == params.script_hash_addr_id:
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Address {address} is not valid for {params.network.value}")


def scriptpubkey_to_address(scriptpubkey: bytes, params: ChainParams) -> str | None:
    """Convert scriptPubKey to address. Returns None for non-standard scripts."""
    if len(scriptpubkey) in (22, 34) and scriptpubkey[0] == 0x00:
        if scriptpubkey[1] == len(scriptpubkey) - 2:
            return bech32.encode(params.bech32_hrp, 0, scriptpubkey[2:])

    if len(scriptpubkey) == 34 and scriptpubkey[0] == 0x51 and scriptpubkey[1] == 0x20:
        return bech32.encode(params.bech32_hrp, 1, scriptpubkey[2:])

    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == bytes([0x76, 0xA9, 0x14])
        and scriptpubkey[-2:] == bytes([0x88, 0xAC])
    ):
        payload = bytes([params.pubkey_hash_addr_id]) + scriptpubkey[3:23]
        return base58.b58encode_check(payload).decode("ascii")

    if (
        len(scriptpubkey) == 23
        and scriptpubkey[:2] == bytes([0xA9, 0x14])
        and scriptpubkey[-1] == 0x87
    ):
        payload = bytes([params.script_hash_addr_id]) + scriptpubkey[2:22]
        return base58.b58encode_check(payload).decode("ascii")

    return None
