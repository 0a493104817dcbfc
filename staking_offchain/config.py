"""
Environment driven settings

Values come from the process environment, optionally seeded from a ``.env``
file in the working directory.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from web3 import Web3

from .errors import ConfigurationError

# Load environment variables from .env file
load_dotenv()

# Beacon chain deposit contract on mainnet; testnets override it
DEFAULT_DEPOSIT_CONTRACT = "0x00000000219ab540356cBB839Cbe05303d7705Fa"


def _get_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _get_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


@dataclass
class Settings:
    network: str
    rpc_url: str
    private_key: Optional[str]
    chain_id: Optional[int]
    addresses_file: str
    artifacts_dir: str

    # Block explorer
    explorer_api_url: str
    explorer_api_key: Optional[str]
    verify_retry_delay: float

    # Validator provisioning service
    provisioning_api_url: str
    provisioning_api_key: Optional[str]
    provisioning_network: str
    provisioning_poll_interval: float

    # Keeper
    funding_threshold_wei: int
    keeper_poll_interval: float
    keeper_error_backoff: float
    keeper_cycle_timeout: Optional[float]
    deposit_contract_address: str

    # Alerts
    slack_webhook: Optional[str] = None
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    notification_email: Optional[str] = None

    log_file: str = "staking_offchain.log"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, network: Optional[str] = None) -> "Settings":
        """Build settings from the environment for the given network"""
        network = network or os.getenv("NETWORK", "goerli")
        chain_id = os.getenv("CHAIN_ID")
        timeout = os.getenv("KEEPER_CYCLE_TIMEOUT")

        threshold_eth = os.getenv("FUNDING_THRESHOLD_ETH", "32")
        try:
            threshold_wei = Web3.to_wei(Decimal(threshold_eth), "ether")
        except Exception:
            raise ConfigurationError(f"FUNDING_THRESHOLD_ETH must be an ether amount, got {threshold_eth!r}")

        return cls(
            network=network,
            rpc_url=os.getenv("RPC_URL", "http://localhost:8545"),
            private_key=os.getenv("PRIVATE_KEY"),
            chain_id=int(chain_id) if chain_id else None,
            addresses_file=os.getenv("ADDRESSES_FILE", f"{network}-addresses.json"),
            artifacts_dir=os.getenv("ARTIFACTS_DIR", "artifacts"),
            explorer_api_url=os.getenv("EXPLORER_API_URL", "https://api.etherscan.io/api"),
            explorer_api_key=os.getenv("ETHERSCAN_API_KEY"),
            verify_retry_delay=_get_float("VERIFY_RETRY_DELAY", "10"),
            provisioning_api_url=os.getenv("PROVISIONING_API_URL", "https://api.figment.io"),
            provisioning_api_key=os.getenv("PROVISIONING_API_KEY"),
            provisioning_network=os.getenv("PROVISIONING_NETWORK", network),
            provisioning_poll_interval=_get_float("PROVISIONING_POLL_INTERVAL", "30"),
            funding_threshold_wei=int(threshold_wei),
            keeper_poll_interval=_get_float("KEEPER_POLL_INTERVAL", "5"),
            keeper_error_backoff=_get_float("KEEPER_ERROR_BACKOFF", "1"),
            keeper_cycle_timeout=float(timeout) if timeout else None,
            deposit_contract_address=os.getenv("DEPOSIT_CONTRACT_ADDRESS", DEFAULT_DEPOSIT_CONTRACT),
            slack_webhook=os.getenv("SLACK_WEBHOOK"),
            smtp_server=os.getenv("SMTP_SERVER", "smtp.gmail.com"),
            smtp_port=_get_int("SMTP_PORT", "587"),
            smtp_username=os.getenv("SMTP_USERNAME"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            notification_email=os.getenv("NOTIFICATION_EMAIL"),
            log_file=os.getenv("LOG_FILE", "staking_offchain.log"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def require_private_key(self) -> str:
        if not self.private_key:
            raise ConfigurationError("PRIVATE_KEY not found in environment")
        return self.private_key

    def require_provisioning_key(self) -> str:
        if not self.provisioning_api_key:
            raise ConfigurationError("PROVISIONING_API_KEY not found in environment")
        return self.provisioning_api_key
