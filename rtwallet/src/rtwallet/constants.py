"""
Bitcoin constants used by the in-memory test wallet.

Size estimates follow P2WPKH spending:
- P2WPKH inputs: ~68 vbytes each
- P2WPKH outputs: 31 vbytes each
- Overhead (version, counts, locktime, segwit marker): ~11 vbytes
"""

from __future__ import annotations

SATS_PER_BTC = 100_000_000

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Change below this is forfeited to the fee instead of creating an output
DEFAULT_DUST_THRESHOLD = STANDARD_DUST_LIMIT

# Fee rates are expressed in satoshis per 1000 virtual bytes
DEFAULT_FEE_RATE = 1000

TX_OVERHEAD_VSIZE = 11
P2WPKH_INPUT_VSIZE = 68
P2WPKH_OUTPUT_VSIZE = 31

SIGHASH_ALL = 1
