"""
Chain Gateway: the only component that talks to the RPC node

Everything above this module works in terms of ``ContractHandle`` objects and
never touches web3 transport directly.
"""

import logging
from typing import Any, Optional

import requests
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware

from ..errors import ChainUnavailable, DeployError, TransactionFailed
from ..models import ContractHandle
from .artifacts import ArtifactStore

logger = logging.getLogger(__name__)

RECEIPT_TIMEOUT = 300


class ChainGateway:
    def __init__(self, w3: Web3, artifacts: ArtifactStore, private_key: Optional[str] = None,
                 chain_id: Optional[int] = None, receipt_timeout: int = RECEIPT_TIMEOUT):
        self.w3 = w3
        self.artifacts = artifacts
        self.private_key = private_key
        self.account = w3.eth.account.from_key(private_key) if private_key else None
        self._chain_id = chain_id
        self.receipt_timeout = receipt_timeout

    @classmethod
    def connect(cls, rpc_url: str, artifacts: ArtifactStore, private_key: Optional[str] = None,
                chain_id: Optional[int] = None) -> "ChainGateway":
        """Initialize Web3 connection"""
        w3 = Web3(Web3.HTTPProvider(rpc_url))
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        if not w3.is_connected():
            raise ChainUnavailable(f"Could not connect to RPC URL: {rpc_url}")
        logger.info(f"Connected to blockchain at {rpc_url}")
        gateway = cls(w3, artifacts, private_key=private_key, chain_id=chain_id)
        if gateway.account is not None:
            logger.info(f"Using account: {gateway.account.address}")
        return gateway

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.w3.eth.chain_id
        return self._chain_id

    @property
    def sender(self) -> str:
        if self.account is None:
            raise TransactionFailed("No signing key configured; cannot send transactions")
        return self.account.address

    def contract(self, handle: ContractHandle):
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(handle.address),
            abi=self.artifacts.abi(handle.name),
        )

    # --- reads ---

    def call_view(self, handle: ContractHandle, method: str, *args) -> Any:
        fn = getattr(self.contract(handle).functions, method)
        try:
            return fn(*args).call()
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"{handle.name}.{method} call failed: {e}")

    def read_storage_slot(self, address: str, slot: int) -> bytes:
        try:
            value = self.w3.eth.get_storage_at(Web3.to_checksum_address(address), slot)
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"Storage read at {address} failed: {e}")
        return bytes(HexBytes(value)).rjust(32, b"\x00")

    def get_balance(self, address: str) -> int:
        try:
            return self.w3.eth.get_balance(Web3.to_checksum_address(address))
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"Balance read for {address} failed: {e}")

    def has_code(self, address: str) -> bool:
        try:
            return len(self.w3.eth.get_code(Web3.to_checksum_address(address))) > 0
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"Code read for {address} failed: {e}")

    def encode_call(self, handle: ContractHandle, method: str, *args) -> bytes:
        return bytes(HexBytes(self.contract(handle).encode_abi(method, args=list(args))))

    # --- writes ---

    def send_transaction(self, handle: ContractHandle, method: str, *args, value: int = 0):
        """Send a contract call and block until it is mined; returns the receipt"""
        fn = getattr(self.contract(handle).functions, method)(*args)
        description = f"{handle.name}.{method}"
        tx = self._build_transaction(fn, value, description)
        return self._sign_and_wait(tx, description)

    def deploy(self, name: str, *constructor_args) -> str:
        """Deploy a contract from its artifact; returns the new address"""
        artifact = self.artifacts.load(name)
        factory = self.w3.eth.contract(abi=artifact.abi, bytecode=artifact.bytecode)
        description = f"deploy {name}"
        try:
            tx = self._build_transaction(factory.constructor(*constructor_args), 0, description)
            receipt = self._sign_and_wait(tx, description)
        except (TransactionFailed, ChainUnavailable) as e:
            raise DeployError(f"Deployment of {name} failed: {e}")
        address = receipt['contractAddress']
        if not address:
            raise DeployError(f"Deployment of {name} mined without a contract address")
        logger.info(f"{name} deployed to: {address}")
        return Web3.to_checksum_address(address)

    def _build_transaction(self, call, value: int, description: str):
        # nonce, gas price and gas estimation all hit the node
        try:
            return call.build_transaction(self._tx_params(value))
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"{description}: node unreachable: {e}")
        except ContractLogicError as e:
            raise TransactionFailed(f"{description} would revert: {e} {getattr(e, 'data', '') or ''}".strip())
        except (Web3Exception, ValueError) as e:
            raise TransactionFailed(f"{description} could not be built: {e}")

    def _tx_params(self, value: int):
        return {
            'from': self.sender,
            'nonce': self.w3.eth.get_transaction_count(self.sender),
            'gasPrice': self.w3.eth.gas_price,
            'chainId': self.chain_id,
            'value': value,
        }

    def _sign_and_wait(self, tx, description: str):
        tx_hash = None
        try:
            signed_tx = self.w3.eth.account.sign_transaction(tx, self.private_key)
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
            logger.info(f"{description} transaction sent: {Web3.to_hex(tx_hash)}")
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"{description}: node unreachable: {e}")
        except TimeExhausted as e:
            raise TransactionFailed(f"{description} not mined in time: {e}",
                                    tx_hash=Web3.to_hex(tx_hash) if tx_hash else None)
        except (ContractLogicError, Web3Exception, ValueError) as e:
            raise TransactionFailed(f"{description} failed: {e}",
                                    tx_hash=Web3.to_hex(tx_hash) if tx_hash else None)

        if receipt['status'] != 1:
            raise TransactionFailed(f"{description} reverted in block {receipt['blockNumber']}",
                                    tx_hash=Web3.to_hex(tx_hash))
        logger.info(f"{description} confirmed in block {receipt['blockNumber']}")
        return receipt
