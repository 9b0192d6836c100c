"""
Bitcoin transaction model and (de)serialization.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field


class TransactionParseError(Exception):
    pass


@dataclass
class TxInput:
    txid: str  # RPC (big-endian) hex
    vout: int
    sequence: int = 0xFFFFFFFF
    script_sig: bytes = b""
    witness: list[bytes] = field(default_factory=list)

    def outpoint_bytes(self) -> bytes:
        # txid is in RPC format (big-endian), reversed for raw tx
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxOutput:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + encode_varint(len(self.script)) + self.script


@dataclass
class Transaction:
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    version: int = 2
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness

        result = struct.pack("<I", self.version)
        if with_witness:
            result += bytes([0x00, 0x01])  # SegWit marker and flag

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.outpoint_bytes()
            result += encode_varint(len(inp.script_sig)) + inp.script_sig
            result += struct.pack("<I", inp.sequence)

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if with_witness:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_varint(len(item)) + item

        result += struct.pack("<I", self.locktime)
        return result

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization"""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def vsize(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize(include_witness=True))
        weight = base_size * 3 + total_size
        return (weight + 3) // 4


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return int.from_bytes(data[offset : offset + 2], "little"), offset + 2
    if first == 0xFE:
        return int.from_bytes(data[offset : offset + 4], "little"), offset + 4
    return int.from_bytes(data[offset : offset + 8], "little"), offset + 8


def _take(data: bytes, offset: int, length: int) -> tuple[bytes, int]:
    chunk = data[offset : offset + length]
    if len(chunk) != length:
        raise TransactionParseError("Unexpected end of data")
    return chunk, offset + length


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    try:
        chunk, offset = _take(tx_bytes, 0, 4)
        tx = Transaction(version=struct.unpack("<I", chunk)[0])

        has_witness = tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01
        if has_witness:
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        for _ in range(input_count):
            txid_le, offset = _take(tx_bytes, offset, 32)
            chunk, offset = _take(tx_bytes, offset, 4)
            vout = struct.unpack("<I", chunk)[0]
            script_len, offset = read_varint(tx_bytes, offset)
            script_sig, offset = _take(tx_bytes, offset, script_len)
            chunk, offset = _take(tx_bytes, offset, 4)
            sequence = struct.unpack("<I", chunk)[0]
            tx.inputs.append(TxInput(txid_le[::-1].hex(), vout, sequence, script_sig))

        output_count, offset = read_varint(tx_bytes, offset)
        for _ in range(output_count):
            chunk, offset = _take(tx_bytes, offset, 8)
            value = struct.unpack("<Q", chunk)[0]
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _take(tx_bytes, offset, script_len)
            tx.outputs.append(TxOutput(value, script))

        if has_witness:
            for inp in tx.inputs:
                stack_count, offset = read_varint(tx_bytes, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    item, offset = _take(tx_bytes, offset, item_len)
                    inp.witness.append(item)

        chunk, offset = _take(tx_bytes, offset, 4)
        tx.locktime = struct.unpack("<I", chunk)[0]
        if offset != len(tx_bytes):
            raise TransactionParseError("Trailing data after locktime")
        return tx

    except (IndexError, struct.error) as e:
        raise TransactionParseError(f"Failed to parse transaction: {e}") from e
