#!/usr/bin/env python3
"""
Operator command line: contract deployment and upgrades, explorer
verification, and the validator registration keeper.

Exit code 0 on success, 1 on any unhandled error (cause printed to stderr).
"""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Any, List, Optional

from web3 import Web3

from .chain.artifacts import ArtifactStore
from .chain.gateway import ChainGateway
from .config import Settings
from .deployment.proxy_manager import ProxyLifecycleManager
from .deployment.verifier import ExplorerVerifier, VerificationTask
from .errors import ConfigurationError
from .models import ContractHandle, ProxyHandle
from .notifications import Notifier
from .processing.keeper import BalanceTriggeredKeeper
from .processing.registration import RegistrationPipeline
from .provisioning.client import ProvisioningClient
from .registry import AddressRegistry

logger = logging.getLogger("staking_offchain")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(settings.log_file),
            logging.StreamHandler()
        ]
    )


def parse_json_args(raw: Optional[str], flag: str) -> Optional[List[Any]]:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise ConfigurationError(f"{flag} must be a JSON array: {e}")
    if not isinstance(value, list):
        raise ConfigurationError(f"{flag} must be a JSON array, got {type(value).__name__}")
    return value


class Context:
    """Lazily wired components for one command invocation"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.registry = AddressRegistry(settings.addresses_file)
        self.artifacts = ArtifactStore(settings.artifacts_dir)
        self._gateway: Optional[ChainGateway] = None

    @property
    def gateway(self) -> ChainGateway:
        if self._gateway is None:
            self._gateway = ChainGateway.connect(
                self.settings.rpc_url, self.artifacts,
                private_key=self.settings.private_key, chain_id=self.settings.chain_id,
            )
        return self._gateway

    def verifier(self) -> ExplorerVerifier:
        return ExplorerVerifier(
            self.settings.explorer_api_url, self.settings.explorer_api_key, self.artifacts,
            retry_delay=self.settings.verify_retry_delay, chain_id=self.settings.chain_id,
        )

    def proxy_manager(self) -> ProxyLifecycleManager:
        return ProxyLifecycleManager(self.gateway, self.registry, verifier=self.verifier())

    def staking_nodes_manager(self) -> ContractHandle:
        return ContractHandle("StakingNodesManager", self.registry.require("StakingNodesManager"))

    def pool(self, name: str) -> ContractHandle:
        return ContractHandle(name, self.registry.require(name))


def _await_verification(task: Optional[VerificationTask]) -> None:
    if task is None:
        return
    try:
        while not task.done:
            task.join(1)
    except KeyboardInterrupt:
        logger.warning(f"Verification of {task.name} interrupted; deployment is unaffected")
        task.stop()


# --- commands ---

def cmd_deploy_logic(ctx: Context, args) -> int:
    manager = ctx.proxy_manager()
    constructor_args = parse_json_args(args.args, "--args") or []
    address = manager.deploy_logic(args.contract, constructor_args, register=args.register)
    print(f"{args.contract} deployed to: {address}")
    if args.verify:
        _await_verification(manager.verify_in_background(args.contract, address, constructor_args))
    return 0


def cmd_deploy_proxy(ctx: Context, args) -> int:
    manager = ctx.proxy_manager()
    init_args = parse_json_args(args.init_args, "--init-args")
    logic = args.logic or manager.deploy_logic(args.contract)
    proxy = manager.deploy_proxy(args.contract, logic, init_args, initializer=args.initializer)
    print(f"{args.contract} proxy at {proxy.address} -> {manager.resolve_implementation(proxy)}")
    if args.verify:
        _await_verification(manager.verify_in_background(args.contract, logic))
    return 0


def cmd_upgrade(ctx: Context, args) -> int:
    manager = ctx.proxy_manager()
    proxy = ProxyHandle(args.contract, ctx.registry.require(args.contract))
    reinit_args = parse_json_args(args.reinit_args, "--reinit-args")
    logic = args.logic or manager.deploy_logic(args.contract)
    record = manager.upgrade(proxy, logic, reinit_args, initializer=args.initializer, verify=args.verify)
    print(json.dumps(record.to_dict(), indent=2, default=str))
    for task in manager.verification_tasks:
        _await_verification(task)
    return 0


def cmd_verify(ctx: Context, args) -> int:
    manager = ctx.proxy_manager()
    address = args.address or ctx.registry.require(args.contract)
    constructor_args = parse_json_args(args.args, "--args") or []
    _await_verification(manager.verify_in_background(args.contract, address, constructor_args))
    return 0


def cmd_resolve(ctx: Context, args) -> int:
    unit = ctx.proxy_manager().describe(args.contract)
    print(json.dumps(unit.__dict__, indent=2, default=str))
    return 0


def cmd_create_node(ctx: Context, args) -> int:
    receipt = ctx.gateway.send_transaction(ctx.staking_nodes_manager(), "createStakingNode")
    print(f"Staking node created with transaction hash: {Web3.to_hex(receipt['transactionHash'])}")
    return 0


def cmd_register_node_implementation(ctx: Context, args) -> int:
    manager = ctx.proxy_manager()
    address = manager.deploy_logic(args.contract)
    ctx.gateway.send_transaction(ctx.staking_nodes_manager(), "registerStakingNodeImplementationContract", address)
    ctx.registry.update(args.contract, address)
    print(f"{args.contract} implementation contract registered at {address}")
    if args.verify:
        _await_verification(manager.verify_in_background(args.contract, address))
    return 0


def cmd_staking_stats(ctx: Context, args) -> int:
    gateway = ctx.gateway
    pool = ctx.pool(args.pool_contract)
    snm = ctx.staking_nodes_manager()
    node_count = gateway.call_view(snm, "nodesLength")
    stats = {
        "poolBalance": gateway.get_balance(pool.address),
        "totalDepositedInValidators": gateway.call_view(pool, "totalDepositedInValidators"),
        "nodes": [gateway.call_view(snm, "nodes", i) for i in range(node_count)],
    }
    print(json.dumps(stats, indent=2))
    return 0


def build_keeper(ctx: Context, pool_name: str) -> BalanceTriggeredKeeper:
    settings = ctx.settings
    provisioning = ProvisioningClient(
        settings.provisioning_api_url, settings.require_provisioning_key(), settings.provisioning_network,
    )
    pipeline = RegistrationPipeline(
        ctx.gateway, provisioning, ctx.staking_nodes_manager(),
        ContractHandle("DepositContract", settings.deposit_contract_address),
        poll_interval=settings.provisioning_poll_interval,
    )
    return BalanceTriggeredKeeper(
        ctx.gateway, pipeline, ctx.pool(pool_name), settings.funding_threshold_wei,
        poll_interval=settings.keeper_poll_interval,
        error_backoff=settings.keeper_error_backoff,
        cycle_timeout=settings.keeper_cycle_timeout,
        notifier=Notifier.from_settings(settings),
    )


def cmd_run_keeper(ctx: Context, args) -> int:
    ctx.settings.require_private_key()
    keeper = build_keeper(ctx, args.pool_contract)
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        keeper.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()
        logger.info("Keeper stopped by user")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="staking-offchain", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--network", help="Target network (selects <network>-addresses.json)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("deploy-logic", help="Deploy a plain or logic contract")
    p.add_argument("--contract", required=True)
    p.add_argument("--args", help="Constructor arguments as a JSON array")
    p.add_argument("--register", action="store_true", help="Record the address in the registry")
    p.add_argument("--verify", action="store_true")
    p.set_defaults(func=cmd_deploy_logic)

    p = sub.add_parser("deploy-proxy", help="Deploy (or resume) a transparent proxy and initialize it")
    p.add_argument("--contract", required=True)
    p.add_argument("--logic", help="Existing logic address; deployed fresh when omitted")
    p.add_argument("--init-args", help="Initializer arguments as a JSON array")
    p.add_argument("--initializer", default="initialize")
    p.add_argument("--verify", action="store_true")
    p.set_defaults(func=cmd_deploy_proxy)

    p = sub.add_parser("upgrade", help="Upgrade a registered proxy by contract name")
    p.add_argument("--contract", required=True)
    p.add_argument("--logic", help="New logic address; deployed fresh when omitted")
    p.add_argument("--reinit-args", help="Re-initializer arguments as a JSON array")
    p.add_argument("--initializer", default="initialize")
    p.add_argument("--verify", action="store_true")
    p.set_defaults(func=cmd_upgrade)

    p = sub.add_parser("verify", help="Verify a contract on the block explorer")
    p.add_argument("--contract", required=True)
    p.add_argument("--address", help="Defaults to the registry entry")
    p.add_argument("--args", help="Constructor arguments as a JSON array")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("resolve", help="Show where a registered contract and its implementation live")
    p.add_argument("--contract", required=True)
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("create-node", help="Create a new staking node")
    p.set_defaults(func=cmd_create_node)

    p = sub.add_parser("register-node-implementation", help="Deploy and register a staking node implementation")
    p.add_argument("--contract", default="StakingNode")
    p.add_argument("--verify", action="store_true")
    p.set_defaults(func=cmd_register_node_implementation)

    p = sub.add_parser("staking-stats", help="Print pool and staking node figures")
    p.add_argument("--pool-contract", default="ynETH")
    p.set_defaults(func=cmd_staking_stats)

    p = sub.add_parser("run-keeper", help="Watch the pool and register validators")
    p.add_argument("--pool-contract", default="ynETH")
    p.set_defaults(func=cmd_run_keeper)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env(args.network)
        configure_logging(settings)
        return args.func(Context(settings), args)
    except KeyboardInterrupt:
        logger.warning(f"{args.command} interrupted")
        print("Error: interrupted", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
