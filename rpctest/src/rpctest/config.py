"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from rtwallet.constants import DEFAULT_DUST_THRESHOLD, DEFAULT_FEE_RATE
from rtwallet.models import NetworkType


class HarnessSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RPCTEST_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: NetworkType = NetworkType.REGTEST

    # Overrides the bitcoind found on PATH
    node_binary: Path | None = None

    rpc_user: str = "rpctest"
    rpc_password: str = "rpctest"
    rpc_timeout: float = 30.0
    # How long a running node may stay unreachable after a failed call
    rpc_recheck_timeout: float = Field(default=5.0, gt=0)

    # Waiting for the RPC endpoint after launch
    startup_timeout: float = Field(default=60.0, gt=0)
    startup_base_delay: float = Field(default=0.1, gt=0)
    startup_max_delay: float = Field(default=2.0, gt=0)

    # Time a node gets to exit after a stop request before it is killed
    stop_grace_period: float = Field(default=20.0, ge=0)

    sync_timeout: float = Field(default=60.0, gt=0)
    poll_interval: float = Field(default=0.1, gt=0)

    fee_rate: int = Field(default=DEFAULT_FEE_RATE, ge=0, description="sats per 1000 vbytes")
    dust_threshold: int = Field(default=DEFAULT_DUST_THRESHOLD, ge=0)

    extra_args: list[str] = Field(default_factory=list)

    log_level: str = "INFO"
    # Replace loguru sinks with one stderr sink at log_level
    configure_logging: bool = False


class NodeConfig(BaseModel):
    """Everything needed to launch and reach one node"""

    data_dir: Path
    rpc_port: int = Field(..., ge=1, le=65535)
    p2p_port: int = Field(..., ge=1, le=65535)
    rpc_host: str = "127.0.0.1"
    rpc_user: str = "rpctest"
    rpc_password: str = "rpctest"
    network: NetworkType = NetworkType.REGTEST
    extra_args: list[str] = Field(default_factory=list)

    @property
    def rpc_url(self) -> str:
        return f"http://{self.rpc_host}:{self.rpc_port}"

    @property
    def p2p_address(self) -> str:
        return f"{self.rpc_host}:{self.p2p_port}"


def get_settings() -> HarnessSettings:
    return HarnessSettings()
