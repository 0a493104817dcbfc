#!/usr/bin/env python3
"""
Tests for environment driven settings
"""

import pytest

from .config import DEFAULT_DEPOSIT_CONTRACT, Settings
from .errors import ConfigurationError

MANAGED_VARS = [
    "NETWORK", "RPC_URL", "PRIVATE_KEY", "CHAIN_ID", "ADDRESSES_FILE", "FUNDING_THRESHOLD_ETH",
    "KEEPER_POLL_INTERVAL", "KEEPER_ERROR_BACKOFF", "KEEPER_CYCLE_TIMEOUT", "PROVISIONING_NETWORK",
    "PROVISIONING_API_KEY", "DEPOSIT_CONTRACT_ADDRESS", "SMTP_PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in MANAGED_VARS:
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    """Test class for Settings.from_env"""

    def test_defaults(self):
        settings = Settings.from_env()
        assert settings.network == "goerli"
        assert settings.addresses_file == "goerli-addresses.json"
        assert settings.funding_threshold_wei == 32 * 10 ** 18
        assert settings.keeper_poll_interval == 5
        assert settings.keeper_error_backoff == 1
        assert settings.keeper_cycle_timeout is None
        assert settings.chain_id is None
        assert settings.deposit_contract_address == DEFAULT_DEPOSIT_CONTRACT

    def test_network_argument_selects_files(self):
        settings = Settings.from_env("holesky")
        assert settings.addresses_file == "holesky-addresses.json"
        assert settings.provisioning_network == "holesky"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("NETWORK", "holesky")
        monkeypatch.setenv("CHAIN_ID", "17000")
        monkeypatch.setenv("FUNDING_THRESHOLD_ETH", "1.5")
        monkeypatch.setenv("KEEPER_CYCLE_TIMEOUT", "600")
        monkeypatch.setenv("PROVISIONING_NETWORK", "holesky-testnet")

        settings = Settings.from_env()

        assert settings.chain_id == 17000
        assert settings.funding_threshold_wei == 1_500_000_000_000_000_000
        assert settings.keeper_cycle_timeout == 600.0
        assert settings.provisioning_network == "holesky-testnet"

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("KEEPER_POLL_INTERVAL", "soon")
        with pytest.raises(ConfigurationError, match="KEEPER_POLL_INTERVAL"):
            Settings.from_env()

    def test_bad_threshold(self, monkeypatch):
        monkeypatch.setenv("FUNDING_THRESHOLD_ETH", "lots")
        with pytest.raises(ConfigurationError, match="FUNDING_THRESHOLD_ETH"):
            Settings.from_env()

    def test_required_secrets(self):
        settings = Settings.from_env()
        with pytest.raises(ConfigurationError, match="PRIVATE_KEY"):
            settings.require_private_key()
        with pytest.raises(ConfigurationError, match="PROVISIONING_API_KEY"):
            settings.require_provisioning_key()
