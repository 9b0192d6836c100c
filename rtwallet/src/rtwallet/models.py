"""
Chain parameter models using Pydantic for validation.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class ChainParams(BaseModel):
    """
    Network parameters consumed by the key ring for address encoding.

    Supplied when the harness is constructed and immutable afterwards.
    """

    network: NetworkType
    bech32_hrp: str = Field(..., min_length=1, max_length=83)
    pubkey_hash_addr_id: int = Field(..., ge=0, le=255)
    script_hash_addr_id: int = Field(..., ge=0, le=255)
    coin_type: int = Field(default=1, ge=0)
    coinbase_maturity: int = Field(default=100, ge=0)

    model_config = {"frozen": True}


MAINNET_PARAMS = ChainParams(
    network=NetworkType.MAINNET,
    bech32_hrp="bc",
    pubkey_hash_addr_id=0x00,
    script_hash_addr_id=0x05,
    coin_type=0,
)

TESTNET_PARAMS = ChainParams(
    network=NetworkType.TESTNET,
    bech32_hrp="tb",
    pubkey_hash_addr_id=0x6F,
    script_hash_addr_id=0xC4,
)

SIGNET_PARAMS = ChainParams(
    network=NetworkType.SIGNET,
    bech32_hrp="tb",
    pubkey_hash_addr_id=0x6F,
    script_hash_addr_id=0xC4,
)

REGTEST_PARAMS = ChainParams(
    network=NetworkType.REGTEST,
    bech32_hrp="bcrt",
    pubkey_hash_addr_id=0x6F,
    script_hash_addr_id=0xC4,
)


def get_chain_params(network: NetworkType | str) -> ChainParams:
    """Get the preset parameters for a network."""
    network = NetworkType(network)
    if network == NetworkType.MAINNET:
        return MAINNET_PARAMS
    elif network == NetworkType.TESTNET:
        return TESTNET_PARAMS
    elif network == NetworkType.SIGNET:
        return SIGNET_PARAMS
    return REGTEST_PARAMS
