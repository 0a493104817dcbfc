#!/usr/bin/env python3
"""
Deployment, initialization and upgrade of contracts behind OpenZeppelin v5
transparent upgradeable proxies.

Deploying a proxy and initializing it are two separate transactions. The proxy
address is written to the registry as soon as it exists, so a failed
initializer can be resumed by calling ``deploy_proxy`` again instead of
deploying a second proxy.
"""

import logging
from typing import Any, List, Optional, Sequence

from web3 import Web3

from ..chain.gateway import ChainGateway
from ..errors import DeployError, ProxyInitError, TransactionFailed
from ..models import ContractHandle, DeploymentUnit, ProxyHandle, ProxyUpgradeRecord
from ..registry import AddressRegistry
from .verifier import ExplorerVerifier, VerificationTask

logger = logging.getLogger(__name__)

# EIP-1967 storage slots: keccak256("eip1967.proxy.implementation") - 1 and
# keccak256("eip1967.proxy.admin") - 1. The proxy's fallback delegates every
# call, so the pointers can only be read from storage.
IMPLEMENTATION_SLOT = 0x360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc
ADMIN_SLOT = 0xb53127684a568b3173ae13b9f8a6016e243e63b6e8ee1178d6a717850b5d6103

# OpenZeppelin v5 Initializable namespaced storage (ERC-7201 "openzeppelin.storage.Initializable");
# the first 8 bytes of the word hold the uint64 _initialized version.
INITIALIZABLE_SLOT = 0xf0c57e16840df040f15088dc2f81fe391c3923bec73e23a9662efc9c229c6a00

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# InvalidInitialization() selector (v5) and the v4 revert string
_ALREADY_INITIALIZED_MARKERS = ("InvalidInitialization", "0xf92ee8a9", "already initialized")


def _slot_to_address(raw: bytes) -> str:
    return Web3.to_checksum_address(raw[-20:])


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def is_already_initialized(error: Exception) -> bool:
    message = str(error)
    return any(marker in message for marker in _ALREADY_INITIALIZED_MARKERS)


class ProxyLifecycleManager:
    def __init__(self, gateway: ChainGateway, registry: AddressRegistry,
                 verifier: Optional[ExplorerVerifier] = None,
                 proxy_artifact: str = "TransparentUpgradeableProxy",
                 admin_artifact: str = "ProxyAdmin",
                 owner: Optional[str] = None):
        self.gateway = gateway
        self.registry = registry
        self.verifier = verifier
        self.proxy_artifact = proxy_artifact
        self.admin_artifact = admin_artifact
        self._owner = owner
        self.verification_tasks: List[VerificationTask] = []

    @property
    def owner(self) -> str:
        return self._owner or self.gateway.sender

    # --- storage reads ---

    def resolve_implementation(self, proxy: ProxyHandle) -> str:
        """Implementation address read straight from the EIP-1967 slot"""
        return _slot_to_address(self.gateway.read_storage_slot(proxy.address, IMPLEMENTATION_SLOT))

    def resolve_admin(self, proxy: ProxyHandle) -> str:
        return _slot_to_address(self.gateway.read_storage_slot(proxy.address, ADMIN_SLOT))

    def initialized_version(self, proxy: ProxyHandle) -> int:
        raw = self.gateway.read_storage_slot(proxy.address, INITIALIZABLE_SLOT)
        return int.from_bytes(raw[-8:], "big")

    def describe(self, name: str) -> DeploymentUnit:
        """Current state of a registered contract, read from chain"""
        address = self.registry.require(name)
        implementation = self.resolve_implementation(ProxyHandle(name, address))
        proxied = not _same_address(implementation, ZERO_ADDRESS)
        return DeploymentUnit(
            logical_name=name,
            current_address=address,
            implementation_address=implementation if proxied else None,
            is_proxied=proxied,
        )

    # --- deployment ---

    def deploy_logic(self, name: str, constructor_args: Sequence[Any] = (), register: bool = False) -> str:
        """Deploy an uninitialized logic contract; failures propagate as DeployError"""
        logger.info(f"Deploying logic contract {name}")
        address = self.gateway.deploy(name, *constructor_args)
        if register:
            self.registry.update(name, address)
        return address

    def deploy_proxy(self, name: str, logic_address: str, init_args: Optional[Sequence[Any]] = None,
                     initializer: str = "initialize") -> ProxyHandle:
        """Deploy (or resume) a proxy for ``name`` and run its initializer"""
        proxy = self._existing_proxy(name)
        if proxy is None:
            logger.info(f"Deploy proxy for {name}")
            address = self.gateway.deploy(self.proxy_artifact, logic_address, self.owner, b"")
            proxy = ProxyHandle(name, address)
            self.registry.update(name, address)
        else:
            current = self.resolve_implementation(proxy)
            logger.info(f"Resuming existing proxy for {name} at {proxy.address} (implementation {current})")
            if not _same_address(current, logic_address):
                logger.warning(f"Proxy {name} points at {current}, not {logic_address}; use upgrade to move it")

        if init_args:
            self.initialize(proxy, init_args, initializer=initializer)
        return proxy

    def _existing_proxy(self, name: str) -> Optional[ProxyHandle]:
        address = self.registry.get(name)
        if not address or not self.gateway.has_code(address):
            return None
        proxy = ProxyHandle(name, address)
        if _same_address(self.resolve_implementation(proxy), ZERO_ADDRESS):
            return None
        return proxy

    def initialize(self, proxy: ProxyHandle, init_args: Sequence[Any], initializer: str = "initialize") -> None:
        """Call the initializer through the proxy; already-initialized is success"""
        if self.initialized_version(proxy) > 0:
            logger.info(f"{proxy.name} at {proxy.address} is already initialized")
            return
        logger.info(f"Initializing {proxy.name} with params: {list(init_args)}")
        try:
            self.gateway.send_transaction(proxy.as_contract(), initializer, *init_args)
        except TransactionFailed as e:
            if is_already_initialized(e):
                logger.info(f"{proxy.name} initializer already ran: {e}")
                return
            raise ProxyInitError(f"Initializer of {proxy.name} reverted: {e}", proxy_address=proxy.address)
        logger.info(f"{proxy.name} initialized successfully")

    # --- upgrades ---

    def upgrade(self, proxy: ProxyHandle, new_logic_address: str,
                reinit_args: Optional[Sequence[Any]] = None, initializer: str = "initialize",
                verify: bool = False) -> ProxyUpgradeRecord:
        """Point the proxy at ``new_logic_address``, optionally re-running an initializer

        With ``verify`` the new implementation is verified on a background task
        (kept in ``verification_tasks``) after the registry and audit log are
        written, so the record always carries ``verified=False``.
        """
        previous = self.resolve_implementation(proxy)
        args_used: Optional[List[Any]] = list(reinit_args) if reinit_args is not None else None

        if _same_address(previous, new_logic_address):
            logger.info(f"{proxy.name} already points at {previous}; nothing to upgrade")
            args_used = None
        else:
            logger.info(f"Upgrade proxy for {proxy.name}: {previous} -> {new_logic_address}")
            self._upgrade_and_call(proxy, new_logic_address, reinit_args, initializer)
            current = self.resolve_implementation(proxy)
            if not _same_address(current, new_logic_address):
                raise DeployError(f"{proxy.name} implementation is {current} after upgrade, expected {new_logic_address}")
            logger.info(f"Upgraded {proxy.name}")

        record = ProxyUpgradeRecord(
            target_name=proxy.name,
            proxy_address=proxy.address,
            previous_implementation=previous,
            new_implementation=Web3.to_checksum_address(new_logic_address),
            initializer_args_used=args_used,
            verified=False,
        )
        self.registry.update(proxy.name, proxy.address)
        self.registry.append_upgrade(record)

        # Explorer verification starts only once the audit entry is written
        if verify:
            task = self.verify_in_background(proxy.name, record.new_implementation)
            if task is not None:
                self.verification_tasks.append(task)
        return record

    def _upgrade_and_call(self, proxy: ProxyHandle, new_logic_address: str,
                          reinit_args: Optional[Sequence[Any]], initializer: str) -> None:
        admin = ContractHandle(self.admin_artifact, self.resolve_admin(proxy))
        data = b""
        if reinit_args is not None:
            data = self.gateway.encode_call(ContractHandle(proxy.name, proxy.address), initializer, *reinit_args)
        try:
            self.gateway.send_transaction(admin, "upgradeAndCall", proxy.address, new_logic_address, data)
        except TransactionFailed as e:
            if data and is_already_initialized(e):
                # upgradeAndCall is atomic, so retry the pointer switch alone
                logger.info(f"{proxy.name} {initializer} already ran; upgrading without it")
                self.gateway.send_transaction(admin, "upgradeAndCall", proxy.address, new_logic_address, b"")
                return
            if data:
                raise ProxyInitError(f"Upgrade of {proxy.name} with {initializer} reverted: {e}",
                                     proxy_address=proxy.address)
            raise

    # --- verification ---

    def verify(self, name: str, address: str, constructor_args: Sequence[Any] = ()) -> bool:
        """Verify on the explorer, retrying until it succeeds or the verifier is stopped"""
        if self.verifier is None:
            logger.warning(f"No explorer configured; skipping verification of {name}")
            return False
        return self.verifier.verify(name, address, constructor_args)

    def verify_in_background(self, name: str, address: str,
                             constructor_args: Sequence[Any] = ()) -> Optional[VerificationTask]:
        if self.verifier is None:
            logger.warning(f"No explorer configured; skipping verification of {name}")
            return None
        task = VerificationTask(self.verifier, name, address, constructor_args)
        task.start()
        return task
