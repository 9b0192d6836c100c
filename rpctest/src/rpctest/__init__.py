"""
rpctest - Integration-test harness for bitcoind

Launches regtest nodes, peers and mines on them, and waits for converged
chain, mempool and wallet state.
"""

__version__ = "0.1.0"

from rpctest.config import HarnessSettings, NodeConfig, get_settings
from rpctest.errors import (
    ExecutableNotFoundError,
    HarnessError,
    InvalidNodeStateError,
    NodeCrashedError,
    StartupTimeoutError,
    TimedOutError,
)
from rpctest.executable import node_executable_path
from rpctest.harness import Harness, active_harnesses, teardown_all
from rpctest.lifecycle import LifecycleManager
from rpctest.log import setup_logging
from rpctest.node import NodeControl, NodeHandle, NodeProcess, NodeState, SubprocessNodeControl
from rpctest.sync import (
    BalanceSyncPoint,
    HeightSyncPoint,
    JoinType,
    MempoolSyncPoint,
    SyncController,
    SyncState,
    join_nodes,
)

__all__ = [
    "BalanceSyncPoint",
    "ExecutableNotFoundError",
    "Harness",
    "HarnessError",
    "HarnessSettings",
    "HeightSyncPoint",
    "InvalidNodeStateError",
    "JoinType",
    "LifecycleManager",
    "MempoolSyncPoint",
    "NodeConfig",
    "NodeControl",
    "NodeCrashedError",
    "NodeHandle",
    "NodeProcess",
    "NodeState",
    "StartupTimeoutError",
    "SubprocessNodeControl",
    "SyncController",
    "SyncState",
    "TimedOutError",
    "active_harnesses",
    "get_settings",
    "join_nodes",
    "node_executable_path",
    "setup_logging",
    "teardown_all",
]
