"""
Node RPC clients.

Available clients:
- BitcoinCoreRPC: Bitcoin Core JSON-RPC over HTTP (chain and mempool calls only)

ChainNotifier turns any NodeRPC into a stream of connect, disconnect and
mempool notifications by polling.
"""

from rtwallet.backends.base import (
    BestBlock,
    BlockConnected,
    BlockDisconnected,
    ChainBlock,
    ChainNotification,
    ChainTransaction,
    NodeRPC,
    RPCError,
    TxAccepted,
    TxRemoved,
)
from rtwallet.backends.bitcoin_core import BitcoinCoreRPC
from rtwallet.backends.notifier import ChainNotifier

__all__ = [
    "BestBlock",
    "BitcoinCoreRPC",
    "BlockConnected",
    "BlockDisconnected",
    "ChainBlock",
    "ChainNotification",
    "ChainNotifier",
    "ChainTransaction",
    "NodeRPC",
    "RPCError",
    "TxAccepted",
    "TxRemoved",
]
