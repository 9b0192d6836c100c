"""
One node plus one in-memory wallet, ready for a test to use.

Every live harness is registered process-wide so a test session can tear
down whatever is left with teardown_all().
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import shutil
import threading
from collections.abc import Sequence

from loguru import logger
from rtwallet.backends.base import NodeRPC
from rtwallet.models import ChainParams, get_chain_params
from rtwallet.wallet.service import MemWallet

from rpctest.config import HarnessSettings, NodeConfig, get_settings
from rpctest.errors import InvalidNodeStateError
from rpctest.lifecycle import LifecycleManager
from rpctest.node import NodeHandle
from rpctest.sync import SyncPoint, SyncState

_registry_lock = threading.Lock()
_active: dict[int, Harness] = {}
_harness_ids = itertools.count()


def active_harnesses() -> list[Harness]:
    with _registry_lock:
        return list(_active.values())


async def teardown_all() -> None:
    """Tear down every harness that is still set up"""
    harnesses = active_harnesses()
    if harnesses:
        logger.info(f"Tearing down {len(harnesses)} harness(es)")
    await asyncio.gather(*(harness.teardown() for harness in harnesses))


class Harness:
    """
    A running node with a wallet funded from its own coinbase outputs.

    The wallet seed is derived from the harness id, so harnesses within one
    process never share keys but every run produces the same addresses.
    """

    def __init__(
        self,
        manager: LifecycleManager | None = None,
        settings: HarnessSettings | None = None,
        config: NodeConfig | None = None,
        seed: bytes | None = None,
    ):
        self.settings = settings or (manager.settings if manager else get_settings())
        self.manager = manager or LifecycleManager(settings=self.settings)
        self.params: ChainParams = get_chain_params(self.settings.network)
        self.id = next(_harness_ids)
        self.seed = seed or hashlib.sha256(f"rpctest harness {self.id}".encode()).digest()
        self.config = config
        self.node: NodeHandle | None = None
        self._wallet: MemWallet | None = None

    def __str__(self) -> str:
        return f"harness{self.id}"

    @property
    def wallet(self) -> MemWallet:
        if self._wallet is None:
            raise InvalidNodeStateError(f"{self} is not set up")
        return self._wallet

    @property
    def rpc(self) -> NodeRPC:
        return self._require_node().rpc

    def _require_node(self) -> NodeHandle:
        if self.node is None:
            raise InvalidNodeStateError(f"{self} is not set up")
        return self.node

    async def setup(self, num_mature_outputs: int = 0) -> None:
        """
        Start the node and fund the wallet.

        With num_mature_outputs > 0, mines coinbase_maturity + num_mature_outputs
        blocks to the wallet so that num_mature_outputs coinbase outputs are
        spendable once setup returns.
        """
        if self.node is not None:
            raise InvalidNodeStateError(f"{self} is already set up")

        with _registry_lock:
            _active[self.id] = self

        try:
            self.node = await self.manager.start(self.config, name=str(self))
            self._wallet = MemWallet(
                self.seed,
                self.node.rpc,
                self.params,
                fee_rate=self.settings.fee_rate,
                dust_threshold=self.settings.dust_threshold,
            )
            if num_mature_outputs > 0:
                await self.mine(self.params.coinbase_maturity + num_mature_outputs)
            else:
                await self.wallet.sync()
        except BaseException:
            await self.teardown()
            raise

        logger.info(
            f"{self} ready at height {self.wallet.synced_height}, "
            f"balance {self.wallet.balance()} sats"
        )

    def new_address(self) -> str:
        return self.wallet.new_address()

    async def mine(self, count: int, address: str | None = None) -> list[str]:
        """Mine count blocks (to a fresh wallet address by default) and sync the wallet"""
        node = self._require_node()
        block_hashes = await self.manager.mine(node, count, address or self.new_address())
        await self.wallet.sync()
        return block_hashes

    async def send_outputs(
        self,
        outputs: Sequence[tuple[str, int]],
        fee_rate: int | None = None,
    ) -> str:
        return await self.wallet.send_outputs(outputs, fee_rate)

    async def wait_for(
        self,
        point: SyncPoint,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> SyncState:
        controller = self.manager.sync_controller(self._require_node(), self.wallet)
        return await controller.wait_for(point, timeout, poll_interval)

    async def connect(self, other: Harness) -> None:
        await self.manager.connect(self._require_node(), other._require_node())

    async def teardown(self) -> None:
        """Stop the node, forget the wallet and remove the node's data directory"""
        with _registry_lock:
            _active.pop(self.id, None)

        if self._wallet is not None:
            self._wallet.keyring.wipe()
            self._wallet = None

        node, self.node = self.node, None
        if node is None:
            return

        await self.manager.stop(node)
        # Only directories we created ourselves
        if self.config is None:
            shutil.rmtree(node.config.data_dir, ignore_errors=True)
        logger.info(f"{self} torn down")
