#!/usr/bin/env python3
"""
Tests for the validator registration pipeline
"""

import pytest
import requests
from web3 import Web3

from ..chain.test_gateway import make_gateway
from ..conftest import STAKE
from ..errors import DepositRootMismatchError, ProvisioningCancelled, RegistrationError
from ..models import ContractHandle, ValidatorRecord, ValidatorStatus
from .registration import RegistrationPipeline, withdrawal_address_from_credentials


class FakeProvisioning:
    """Hands out a fixed list of provisioned validators"""

    def __init__(self, records=None, error=None):
        self.records = records or []
        self.error = error
        self.calls = []

    def await_provisioned(self, withdrawal_address, target_count, **kwargs):
        self.calls.append((withdrawal_address, target_count, kwargs))
        if self.error:
            raise self.error
        return self.records[:target_count]


def make_record(protocol, i, correct=True):
    public_key = "0x" + f"{i + 1:096x}"
    signature = "0x" + f"{i + 1:0192x}"
    root = protocol.expected_root(public_key, signature) if correct else "0x" + "ee" * 32
    return ValidatorRecord(
        public_key=public_key,
        signature=signature,
        deposit_data_root=root,
        withdrawal_credentials=Web3.to_hex(protocol.withdrawal_credentials(protocol.node_id)),
    )


def make_pipeline(gateway, protocol, provisioning):
    return RegistrationPipeline(
        gateway, provisioning,
        ContractHandle("StakingNodesManager", protocol.staking_nodes_manager),
        ContractHandle("DepositContract", protocol.deposit_contract),
        poll_interval=0,
    )


class TestWithdrawalAddress:
    """Test class for withdrawal_address_from_credentials"""

    def test_last_twenty_bytes(self):
        credentials = "0x01" + "00" * 11 + "c0de000000000000000000000000000000000001"
        assert withdrawal_address_from_credentials(credentials) == \
            Web3.to_checksum_address("0xc0de000000000000000000000000000000000001")

    def test_wrong_length(self):
        with pytest.raises(ValueError):
            withdrawal_address_from_credentials("0x01")


class TestDepositRoots:
    """Test class for deposit root computation and validation"""

    def test_root_is_deterministic(self, gateway, protocol):
        pipeline = make_pipeline(gateway, protocol, FakeProvisioning())
        record = make_record(protocol, 0)
        credentials = pipeline.withdrawal_credentials(protocol.node_id)

        first = pipeline.compute_deposit_root(record, credentials, STAKE)
        second = pipeline.compute_deposit_root(record, credentials, STAKE)

        assert first == second == record.deposit_data_root

    def test_root_depends_on_amount(self, gateway, protocol):
        pipeline = make_pipeline(gateway, protocol, FakeProvisioning())
        record = make_record(protocol, 0)
        credentials = pipeline.withdrawal_credentials(protocol.node_id)
        assert pipeline.compute_deposit_root(record, credentials, STAKE) != \
            pipeline.compute_deposit_root(record, credentials, STAKE - 1)

    def test_validate_splits_on_mismatch(self, gateway, protocol):
        pipeline = make_pipeline(gateway, protocol, FakeProvisioning())
        good, bad = make_record(protocol, 0), make_record(protocol, 1, correct=False)
        credentials = pipeline.withdrawal_credentials(protocol.node_id)

        valid, rejected = pipeline.validate([good, bad], credentials, STAKE)

        assert valid == [good] and rejected == [bad]
        assert good.status == ValidatorStatus.ROOT_COMPUTED
        assert bad.status == ValidatorStatus.ROOT_MISMATCH
        assert bad.computed_root != bad.deposit_data_root


class TestRegister:
    """Test class for RegistrationPipeline.register"""

    def test_registers_batch_with_anchor(self, gateway, protocol):
        records = [make_record(protocol, 0), make_record(protocol, 1)]
        provisioning = FakeProvisioning(records)
        pipeline = make_pipeline(gateway, protocol, provisioning)

        result = pipeline.register(STAKE, validator_count=2)

        assert result.node_id == 0
        assert result.registered_count == 2
        assert result.deposit_root_anchor == Web3.to_hex(protocol.anchor)
        assert result.tx_hash.startswith("0x")
        assert all(r.status == ValidatorStatus.REGISTERED for r in result.registered)

        name, method, (anchor, validator_data) = gateway.sent[-1]
        assert (name, method) == ("StakingNodesManager", "registerValidators")
        assert anchor == protocol.anchor
        assert validator_data[0][2] == bytes.fromhex(records[0].deposit_data_root[2:])
        assert provisioning.calls[0][0] == protocol.node_address(0)

    def test_mismatched_record_is_excluded(self, gateway, protocol):
        records = [make_record(protocol, 0, correct=False), make_record(protocol, 1)]
        pipeline = make_pipeline(gateway, protocol, FakeProvisioning(records))

        result = pipeline.register(STAKE, validator_count=2)

        assert result.registered_count == 1
        assert result.rejected == [records[0]]
        assert len(protocol.registered) == 1
        assert protocol.total_deposited == STAKE

    def test_all_mismatched_raises_without_submitting(self, gateway, protocol):
        pipeline = make_pipeline(gateway, protocol, FakeProvisioning([make_record(protocol, 0, correct=False)]))

        with pytest.raises(DepositRootMismatchError):
            pipeline.register(STAKE)
        assert gateway.sent == []

    def test_submission_failure_is_not_retried(self, gateway, protocol):
        protocol.register_reverts = True
        pipeline = make_pipeline(gateway, protocol, FakeProvisioning([make_record(protocol, 0)]))

        with pytest.raises(RegistrationError, match="node 0"):
            pipeline.register(STAKE)
        assert len([s for s in gateway.sent if s[1] == "registerValidators"]) == 1

    def test_node_unreachable_while_submitting(self, gateway, protocol):
        # Reads come from the in-memory chain, the submission goes through a real
        # ChainGateway whose node drops while the transaction is being built
        node, w3 = make_gateway()
        w3.eth.get_transaction_count.side_effect = requests.exceptions.ConnectionError("node down")
        gateway.send_transaction = node.send_transaction
        pipeline = make_pipeline(gateway, protocol, FakeProvisioning([make_record(protocol, 0)]))

        with pytest.raises(RegistrationError, match="node unreachable"):
            pipeline.register(STAKE)
        w3.eth.send_raw_transaction.assert_not_called()
        assert protocol.registered == []

    def test_explicit_node_id(self, gateway, protocol):
        protocol.node_id = 3
        pipeline = make_pipeline(gateway, protocol, FakeProvisioning([make_record(protocol, 0)]))
        result = pipeline.register(STAKE, node_id=3)
        assert result.node_id == 3

    def test_cancellation_propagates(self, gateway, protocol):
        provisioning = FakeProvisioning(error=ProvisioningCancelled("stopped"))
        pipeline = make_pipeline(gateway, protocol, provisioning)

        with pytest.raises(ProvisioningCancelled):
            pipeline.register(STAKE, deadline=10.0)
        assert provisioning.calls[0][2]['deadline'] == 10.0
        assert gateway.sent == []
