"""
Exception hierarchy for the staking off-chain tooling

Transient infrastructure errors are retried by whoever owns the loop,
data-integrity and submission errors are surfaced and never retried.
"""


class StakingOffchainError(Exception):
    """Base class for every error raised by this package"""


class ConfigurationError(StakingOffchainError):
    """A required setting is missing or malformed"""


class RegistryError(StakingOffchainError):
    """The address registry could not be read or written"""


# --- Transient infrastructure ---

class TransientError(StakingOffchainError):
    """Network or service unavailability; safe to retry later"""


class ChainUnavailable(TransientError):
    """The RPC node could not be reached"""


class ProvisioningUnavailable(TransientError):
    """The provisioning API did not answer after the per-poll retries"""


class ExplorerError(TransientError):
    """The block explorer rejected or failed a verification call"""


# --- Data integrity ---

class DataIntegrityError(StakingOffchainError):
    """Observed data contradicts what the protocol requires"""


class DepositRootMismatchError(DataIntegrityError):
    """No provisioned validator survived deposit-root validation"""


class PostConditionError(DataIntegrityError):
    """On-chain totals did not move by the expected amount after registration"""


# --- Submission ---

class TransactionFailed(StakingOffchainError):
    """A transaction reverted, ran out of gas or could not be sent"""

    def __init__(self, message, tx_hash=None):
        super().__init__(message)
        self.tx_hash = tx_hash


class DeployError(StakingOffchainError):
    """A contract deployment could not be sent or mined"""


class ProxyInitError(StakingOffchainError):
    """The initializer reverted; the proxy itself exists and can be resumed"""

    def __init__(self, message, proxy_address=None):
        super().__init__(message)
        self.proxy_address = proxy_address


class RegistrationError(StakingOffchainError):
    """The batched registerValidators submission failed"""


# --- Provisioning ---

class ProvisioningRequestError(StakingOffchainError):
    """The provider refused a request for new validators"""


class ProvisioningCancelled(StakingOffchainError):
    """Waiting for provisioned validators was stopped or hit its deadline"""
