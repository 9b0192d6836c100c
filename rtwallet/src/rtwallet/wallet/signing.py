"""
Bitcoin transaction signing utilities for P2WPKH inputs.
"""

from __future__ import annotations

from coincurve import PrivateKey, PublicKey

from rtwallet.constants import SIGHASH_ALL
from rtwallet.errors import SigningError
from rtwallet.wallet.address import hash160
from rtwallet.wallet.transaction import Transaction, encode_varint, hash256


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for a segwit v0 input"""
    if input_index >= len(tx.inputs):
        raise SigningError("Input index out of range")

    hash_prevouts = hash256(b"".join(inp.outpoint_bytes() for inp in tx.inputs))
    hash_sequence = hash256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        tx.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + target_input.outpoint_bytes()
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target_input.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )

    return hash256(preimage)


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    return b"\x76\xa9\x14" + hash160(pubkey_bytes) + b"\x88\xac"


def sign_p2wpkh_input(
    tx: Transaction,
    input_index: int,
    value: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> None:
    """Sign a P2WPKH input in place, setting its witness to [signature, pubkey].

    Args:
        tx: The transaction to sign
        input_index: Index of the input to sign
        value: The value of the output being spent (in satoshis)
        private_key: coincurve PrivateKey owning the spent output
        sighash_type: Sighash type (default SIGHASH_ALL = 1)
    """
    pubkey_bytes = private_key.public_key.format(compressed=True)
    script_code = create_p2wpkh_script_code(pubkey_bytes)
    sighash = compute_sighash_segwit(tx, input_index, script_code, value, sighash_type)

    # The sighash is already SHA256d, hasher=None skips hashing again
    signature = private_key.sign(sighash, hasher=None)

    tx.inputs[input_index].witness = [signature + bytes([sighash_type]), pubkey_bytes]


def verify_p2wpkh_input(tx: Transaction, input_index: int, value: int) -> bool:
    """Check the witness of a P2WPKH input against the transaction"""
    witness = tx.inputs[input_index].witness
    if len(witness) != 2:
        return False

    signature, pubkey_bytes = witness
    script_code = create_p2wpkh_script_code(pubkey_bytes)
    sighash = compute_sighash_segwit(tx, input_index, script_code, value, signature[-1])
    return PublicKey(pubkey_bytes).verify(signature[:-1], sighash, hasher=None)
