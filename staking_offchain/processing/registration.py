"""
Validator registration pipeline

Turns provisioned validator keys into one batched
``StakingNodesManager.registerValidators`` transaction. Deposit data roots
reported by the provider are only advisory: every root is recomputed by the
contract itself and any disagreement drops that validator from the batch.
"""

import logging
import threading
from typing import List, Optional

from hexbytes import HexBytes
from web3 import Web3

from ..chain.gateway import ChainGateway
from ..errors import (
    ChainUnavailable,
    DepositRootMismatchError,
    RegistrationError,
    TransactionFailed,
)
from ..models import ContractHandle, RegistrationResult, ValidatorRecord, ValidatorStatus
from ..provisioning.client import ProvisioningClient

logger = logging.getLogger(__name__)


def withdrawal_address_from_credentials(credentials: str) -> str:
    """0x01-type credentials end with the 20 byte execution address"""
    raw = bytes(HexBytes(credentials))
    if len(raw) != 32:
        raise ValueError(f"withdrawal credentials must be 32 bytes, got {len(raw)}")
    return Web3.to_checksum_address(raw[-20:])


class RegistrationPipeline:
    def __init__(self, gateway: ChainGateway, provisioning: ProvisioningClient,
                 staking_nodes_manager: ContractHandle, deposit_contract: ContractHandle,
                 poll_interval: float = 30):
        self.gateway = gateway
        self.provisioning = provisioning
        self.staking_nodes_manager = staking_nodes_manager
        self.deposit_contract = deposit_contract
        self.poll_interval = poll_interval

    def next_node_id(self) -> int:
        return self.gateway.call_view(self.staking_nodes_manager, "getNextNodeIdToUse")

    def withdrawal_credentials(self, node_id: int) -> str:
        raw = self.gateway.call_view(self.staking_nodes_manager, "getWithdrawalCredentials", node_id)
        return Web3.to_hex(raw)

    def compute_deposit_root(self, record: ValidatorRecord, withdrawal_credentials: str, amount: int) -> str:
        """Deposit data root as the contract computes it"""
        root = self.gateway.call_view(
            self.staking_nodes_manager,
            "generateDepositRoot",
            bytes(HexBytes(record.public_key)),
            bytes(HexBytes(record.signature)),
            bytes(HexBytes(withdrawal_credentials)),
            amount,
        )
        return Web3.to_hex(root)

    def deposit_root_anchor(self) -> str:
        return Web3.to_hex(self.gateway.call_view(self.deposit_contract, "get_deposit_root"))

    def validate(self, records: List[ValidatorRecord], withdrawal_credentials: str, amount: int):
        """Split records into (valid, mismatched) by recomputed deposit root"""
        valid, rejected = [], []
        for record in records:
            if record.withdrawal_credentials.lower() != withdrawal_credentials.lower():
                logger.warning(
                    f"Validator {record.public_key} was provisioned for credentials "
                    f"{record.withdrawal_credentials}, expected {withdrawal_credentials}"
                )
            computed = self.compute_deposit_root(record, withdrawal_credentials, amount)
            record.computed_root = computed
            if computed.lower() != record.deposit_data_root.lower():
                record.status = ValidatorStatus.ROOT_MISMATCH
                logger.error(
                    f"Deposit root mismatch for {record.public_key}: provider {record.deposit_data_root}, "
                    f"contract {computed}; dropping it from the batch"
                )
                rejected.append(record)
            else:
                record.status = ValidatorStatus.ROOT_COMPUTED
                valid.append(record)
        return valid, rejected

    def register(self, stake_amount_per_validator: int, validator_count: int = 1,
                 node_id: Optional[int] = None,
                 stop_event: Optional[threading.Event] = None,
                 deadline: Optional[float] = None) -> RegistrationResult:
        """Provision, validate and register ``validator_count`` validators in one transaction"""
        if node_id is None:
            node_id = self.next_node_id()
        logger.info(f"Getting withdrawal credentials for node {node_id}...")
        credentials = self.withdrawal_credentials(node_id)
        withdrawal_address = withdrawal_address_from_credentials(credentials)

        records = self.provisioning.await_provisioned(
            withdrawal_address, validator_count,
            poll_interval=self.poll_interval, stop_event=stop_event, deadline=deadline,
        )
        logger.info(f"Obtained validators: {len(records)}")

        valid, rejected = self.validate(records, credentials, stake_amount_per_validator)
        if not valid:
            raise DepositRootMismatchError(
                f"All {len(rejected)} provisioned validator(s) failed deposit root validation"
            )

        anchor = self.deposit_root_anchor()
        validator_data = [
            (bytes(HexBytes(r.public_key)), bytes(HexBytes(r.signature)), bytes(HexBytes(r.computed_root)))
            for r in valid
        ]
        logger.info(f"Pushing {len(validator_data)} validator(s) for node {node_id} with deposit root {anchor}")
        try:
            receipt = self.gateway.send_transaction(
                self.staking_nodes_manager, "registerValidators", bytes(HexBytes(anchor)), validator_data,
            )
        except (TransactionFailed, ChainUnavailable) as e:
            raise RegistrationError(f"registerValidators failed for node {node_id}: {e}")

        for record in valid:
            record.status = ValidatorStatus.REGISTERED
        tx_hash = receipt.get('transactionHash') if hasattr(receipt, 'get') else None
        return RegistrationResult(
            node_id=node_id,
            withdrawal_credentials=credentials,
            registered=valid,
            rejected=rejected,
            deposit_root_anchor=anchor,
            tx_hash=Web3.to_hex(tx_hash) if tx_hash else None,
        )
