"""
Data records shared by the deployment tooling and the validator keeper
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ContractHandle:
    """A contract the gateway can talk to: artifact name plus address"""
    name: str
    address: str


@dataclass(frozen=True)
class ProxyHandle:
    """A transparent upgradeable proxy and the logic artifact behind it"""
    name: str
    address: str

    def as_contract(self) -> ContractHandle:
        return ContractHandle(self.name, self.address)


@dataclass
class DeploymentUnit:
    """One logical contract of the protocol and where it currently lives"""
    logical_name: str
    current_address: str
    implementation_address: Optional[str] = None
    is_proxied: bool = False
    init_args: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class ProxyUpgradeRecord:
    """Audit entry written once per upgrade call"""
    target_name: str
    proxy_address: str
    previous_implementation: str
    new_implementation: str
    initializer_args_used: Optional[List[Any]]
    verified: bool
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ProvisioningRequest:
    """A request for new validator slots that the provider accepted"""
    withdrawal_address: str
    requested_count: int
    network_identifier: str


class ValidatorStatus(Enum):
    PROVISIONED = "provisioned"
    ROOT_COMPUTED = "root_computed"
    ROOT_MISMATCH = "root_mismatch"
    REGISTERED = "registered"


@dataclass
class ValidatorRecord:
    """
    A provisioned validator as read off the provider listing.

    ``deposit_data_root`` is what the provider reported; the registration
    pipeline recomputes its own root on chain and only trusts that one.
    """
    public_key: str
    signature: str
    deposit_data_root: str
    withdrawal_credentials: str
    status: ValidatorStatus = ValidatorStatus.PROVISIONED
    computed_root: Optional[str] = None


@dataclass
class RegistrationResult:
    """Outcome of one registerValidators submission"""
    node_id: int
    withdrawal_credentials: str
    registered: List[ValidatorRecord]
    rejected: List[ValidatorRecord]
    deposit_root_anchor: str
    tx_hash: Optional[str] = None

    @property
    def registered_count(self) -> int:
        return len(self.registered)


class KeeperPhase(Enum):
    IDLE = "idle"
    TRIGGERING = "triggering"
    VERIFYING = "verifying"


@dataclass
class KeeperCycleState:
    """In-memory keeper bookkeeping; rebuilt from chain state after a restart"""
    last_observed_balance: Optional[int] = None
    last_triggered_at: Optional[datetime] = None
    consecutive_error_count: int = 0
    phase: KeeperPhase = KeeperPhase.IDLE
    successful_cycles: int = 0
    failed_cycles: int = 0
