"""
Shared test doubles: an in-memory chain behind the ChainGateway interface and
a scripted HTTP session for the provisioning and explorer clients.
"""

import itertools

import pytest
import requests
from web3 import Web3

from .errors import DeployError, TransactionFailed
from .deployment.proxy_manager import ADMIN_SLOT, IMPLEMENTATION_SLOT, INITIALIZABLE_SLOT

ONE_ETH = 10 ** 18
STAKE = 32 * ONE_ETH


def _address(n):
    return Web3.to_checksum_address("0x" + f"{n:040x}")


def _word(value):
    if isinstance(value, int):
        return value.to_bytes(32, "big")
    raw = bytes.fromhex(value[2:]) if isinstance(value, str) else bytes(value)
    return raw.rjust(32, b"\x00")


class FakeGateway:
    """Mimics ChainGateway: proxies, admins and the Initializable version live in storage"""

    sender = _address(0xA11CE)

    def __init__(self):
        self._counter = itertools.count(0x1000)
        self.storage = {}
        self.code = set()
        self.balances = {}
        self.views = {}
        self.handlers = {}
        self.deployed = []
        self.sent = []
        self.initialized_with = {}
        self.initializer_reverts = set()
        self.deploy_failures = set()
        self.admins = {}

    def _new_address(self):
        address = _address(next(self._counter))
        self.code.add(address.lower())
        return address

    def set_slot(self, address, slot, value):
        self.storage.setdefault(address.lower(), {})[slot] = _word(value)

    def version(self, address):
        return int.from_bytes(self.read_storage_slot(address, INITIALIZABLE_SLOT)[-8:], "big")

    # --- ChainGateway interface ---

    def read_storage_slot(self, address, slot):
        return self.storage.get(address.lower(), {}).get(slot, b"\x00" * 32)

    def has_code(self, address):
        return address.lower() in self.code

    def get_balance(self, address):
        return self.balances.get(address.lower(), 0)

    def call_view(self, handle, method, *args):
        fn = self.views[(handle.name, method)]
        return fn(*args) if callable(fn) else fn

    def encode_call(self, handle, method, *args):
        return f"{method}{list(args)!r}".encode()

    def deploy(self, name, *args):
        if name in self.deploy_failures:
            raise DeployError(f"Deployment of {name} failed: out of gas")
        address = self._new_address()
        self.deployed.append((name, address, args))
        if name == "TransparentUpgradeableProxy":
            logic, owner, _data = args
            admin = self._new_address()
            self.admins[admin.lower()] = owner
            self.set_slot(address, IMPLEMENTATION_SLOT, logic)
            self.set_slot(address, ADMIN_SLOT, admin)
        return address

    def send_transaction(self, handle, method, *args, value=0):
        self.sent.append((handle.name, method, args))
        if method == "upgradeAndCall" and handle.address.lower() in self.admins:
            self._upgrade_and_call(*args)
        elif (handle.name, method) in self.handlers:
            self.handlers[(handle.name, method)](*args)
        elif method.startswith("initialize"):
            self._initialize(handle.address, args)
        else:
            raise TransactionFailed(f"{handle.name}.{method} would revert: unknown method")
        return {'status': 1, 'transactionHash': Web3.keccak(text=f"{len(self.sent)}"), 'blockNumber': len(self.sent)}

    def _initialize(self, proxy, args):
        if proxy.lower() in self.initializer_reverts:
            raise TransactionFailed("execution reverted: Ownable: zero address")
        if self.version(proxy) > 0:
            raise TransactionFailed("execution reverted: InvalidInitialization() 0xf92ee8a9")
        self.set_slot(proxy, INITIALIZABLE_SLOT, 1)
        self.initialized_with[proxy.lower()] = list(args)

    def _upgrade_and_call(self, proxy, implementation, data):
        if data:
            # upgradeAndCall reverts as a whole when the initializer does
            if self.version(proxy) > 0 and data.startswith(b"initialize["):
                raise TransactionFailed("execution reverted: InvalidInitialization()")
            self.set_slot(proxy, INITIALIZABLE_SLOT, self.version(proxy) + 1)
        self.set_slot(proxy, IMPLEMENTATION_SLOT, implementation)


class FakeStakingProtocol:
    """
    Pool, StakingNodesManager and DepositContract on top of a FakeGateway.

    ``generateDepositRoot`` is a keccak over its inputs, so tests can build the
    matching provider root with ``expected_root``.
    """

    def __init__(self, gateway, pool_balance=0, node_id=0):
        self.gateway = gateway
        self.pool = _address(0xB001)
        self.staking_nodes_manager = _address(0x5A4E)
        self.deposit_contract = _address(0xDE90)
        self.node_id = node_id
        self.total_deposited = 0
        self.anchor = b"\xab" * 32
        self.registered = []
        self.register_reverts = False
        gateway.balances[self.pool.lower()] = pool_balance

        gateway.views.update({
            ("ynETH", "totalDepositedInValidators"): lambda: self.total_deposited,
            ("StakingNodesManager", "getNextNodeIdToUse"): lambda: self.node_id,
            ("StakingNodesManager", "getWithdrawalCredentials"): self.withdrawal_credentials,
            ("StakingNodesManager", "generateDepositRoot"): self.generate_deposit_root,
            ("DepositContract", "get_deposit_root"): lambda: self.anchor,
        })
        gateway.handlers[("StakingNodesManager", "registerValidators")] = self.register_validators

    def node_address(self, node_id):
        return _address(0xC0DE00 + node_id)

    def withdrawal_credentials(self, node_id):
        return b"\x01" + b"\x00" * 11 + bytes.fromhex(self.node_address(node_id)[2:])

    def generate_deposit_root(self, public_key, signature, credentials, amount):
        return Web3.keccak(public_key + signature + credentials + amount.to_bytes(32, "big"))

    def expected_root(self, public_key, signature, node_id=None, amount=STAKE):
        credentials = self.withdrawal_credentials(self.node_id if node_id is None else node_id)
        return Web3.to_hex(self.generate_deposit_root(
            bytes.fromhex(public_key[2:]), bytes.fromhex(signature[2:]), credentials, amount,
        ))

    def register_validators(self, anchor, validator_data):
        if self.register_reverts:
            raise TransactionFailed("StakingNodesManager.registerValidators would revert: DepositRootChanged")
        for entry in validator_data:
            self.registered.append(entry)
            self.total_deposited += STAKE
            self.gateway.balances[self.pool.lower()] -= STAKE
        self.node_id += 1


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.text = text or ("" if json_data is None else str(json_data))

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeSession:
    """
    Scripted requests.Session. Each of ``get``/``post`` either pops the next
    queued response (exceptions are raised) or delegates to a handler.
    """

    def __init__(self, get=None, post=None):
        self.headers = {}
        self.get_calls = []
        self.post_calls = []
        self._get = get if get is not None else []
        self._post = post if post is not None else []

    def _next(self, source, url, kwargs):
        if callable(source):
            response = source(url, **kwargs)
        else:
            response = source.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        self.get_calls.append((url, kwargs))
        return self._next(self._get, url, kwargs)

    def post(self, url, **kwargs):
        self.post_calls.append((url, kwargs))
        return self._next(self._post, url, kwargs)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def protocol(gateway):
    return FakeStakingProtocol(gateway)
