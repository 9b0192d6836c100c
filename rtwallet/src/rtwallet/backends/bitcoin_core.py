"""
Bitcoin Core JSON-RPC node client.
Uses chain and mempool RPC calls only, never the node's own wallet.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from rtwallet.backends.base import BestBlock, ChainBlock, ChainTransaction, NodeRPC, RPCError
from rtwallet.constants import SATS_PER_BTC

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# RPC_INVALID_ADDRESS_OR_KEY, returned for unknown transactions and blocks
RPC_NOT_FOUND = -5


def btc_to_sats(amount: float | int) -> int:
    return round(amount * SATS_PER_BTC)


def parse_transaction(tx_data: dict[str, Any]) -> ChainTransaction:
    """Convert a verbose transaction object into a ChainTransaction"""
    tx = ChainTransaction(txid=tx_data["txid"])

    for vin in tx_data.get("vin", []):
        if "coinbase" in vin:
            tx.is_coinbase = True
            continue
        tx.inputs.append((vin["txid"], vin["vout"]))

    for vout in sorted(tx_data.get("vout", []), key=lambda v: v["n"]):
        script_pub_key = vout.get("scriptPubKey", {})
        address = script_pub_key.get("address")
        # Older nodes report a list of addresses
        if not address and script_pub_key.get("addresses"):
            address = script_pub_key["addresses"][0]
        tx.outputs.append((address, btc_to_sats(vout.get("value", 0))))

    return tx


class BitcoinCoreRPC(NodeRPC):
    """
    Node client speaking Bitcoin Core's JSON-RPC over HTTP.
    """

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18443",
        rpc_user: str = "rpcuser",
        rpc_password: str = "rpcpassword",
        timeout: float = DEFAULT_RPC_TIMEOUT,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.client = httpx.AsyncClient(timeout=timeout, auth=(rpc_user, rpc_password))
        self._request_id = 0

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Args:
            method: RPC method name
            params: Method parameters

        Returns:
            RPC result

        Raises:
            RPCError: On RPC errors
            httpx.HTTPError: On connection/timeout errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.client.post(self.rpc_url, json=payload)
            # Bitcoin Core answers RPC errors with HTTP 500 and a JSON body
            if response.status_code != 500:
                response.raise_for_status()
            data = response.json()

            if "error" in data and data["error"]:
                error_info = data["error"]
                raise RPCError(
                    error_info.get("code", "unknown"), error_info.get("message", str(error_info))
                )

            return data.get("result")

        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise
        except httpx.HTTPError as e:
            logger.debug(f"RPC call failed: {method} - {e}")
            raise

    async def get_best_block(self) -> BestBlock:
        info = await self._rpc_call("getblockchaininfo")
        return BestBlock(height=info["blocks"], hash=info["bestblockhash"])

    async def get_block_hash(self, height: int) -> str:
        return await self._rpc_call("getblockhash", [height])

    async def get_block(self, block_hash: str) -> ChainBlock:
        data = await self._rpc_call("getblock", [block_hash, 2])
        return ChainBlock(
            height=data["height"],
            hash=data["hash"],
            prev_hash=data.get("previousblockhash", "00" * 32),
            transactions=[parse_transaction(tx) for tx in data.get("tx", [])],
        )

    async def get_raw_transaction(self, txid: str) -> ChainTransaction | None:
        try:
            tx_data = await self._rpc_call("getrawtransaction", [txid, True])
        except RPCError as e:
            if e.code == RPC_NOT_FOUND:
                return None
            raise
        return parse_transaction(tx_data) if tx_data else None

    async def generate_blocks(self, count: int, address: str) -> list[str]:
        block_hashes = await self._rpc_call("generatetoaddress", [count, address])
        logger.debug(f"Generated {len(block_hashes)} block(s) to {address}")
        return block_hashes

    async def get_raw_mempool(self) -> set[str]:
        return set(await self._rpc_call("getrawmempool"))

    async def send_raw_transaction(self, tx_hex: str) -> str:
        txid = await self._rpc_call("sendrawtransaction", [tx_hex])
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def add_node(self, address: str) -> None:
        await self._rpc_call("addnode", [address, "onetry"])

    async def get_peer_addresses(self) -> list[str]:
        peers = await self._rpc_call("getpeerinfo")
        return [peer.get("addr", "") for peer in peers]

    async def close(self) -> None:
        await self.client.aclose()
