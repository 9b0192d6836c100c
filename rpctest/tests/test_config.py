"""
Tests for harness settings and node configs.
"""

import pytest
from pydantic import ValidationError
from rtwallet.constants import DEFAULT_FEE_RATE
from rtwallet.models import NetworkType

from rpctest.config import HarnessSettings, NodeConfig


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)

    settings = HarnessSettings()

    assert settings.network == NetworkType.REGTEST
    assert settings.node_binary is None
    assert settings.fee_rate == DEFAULT_FEE_RATE


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RPCTEST_STARTUP_TIMEOUT", "5")
    monkeypatch.setenv("RPCTEST_NODE_BINARY", "/opt/bitcoin/bin/bitcoind")

    settings = HarnessSettings()

    assert settings.startup_timeout == 5.0
    assert str(settings.node_binary) == "/opt/bitcoin/bin/bitcoind"


def test_rejects_non_positive_timeout():
    with pytest.raises(ValidationError):
        HarnessSettings(startup_timeout=0)


def test_node_config_addresses(tmp_path):
    config = NodeConfig(data_dir=tmp_path, rpc_port=18443, p2p_port=18444)

    assert config.rpc_url == "http://127.0.0.1:18443"
    assert config.p2p_address == "127.0.0.1:18444"


@pytest.mark.parametrize("port", [0, 70000])
def test_node_config_port_range(tmp_path, port):
    with pytest.raises(ValidationError):
        NodeConfig(data_dir=tmp_path, rpc_port=port, p2p_port=18444)
