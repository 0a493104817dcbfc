"""
Source verification against an Etherscan-compatible explorer API

Verification has no bearing on protocol correctness, so it retries every
failure after a fixed delay until it succeeds or is told to stop.
"""

import json
import logging
import threading
from typing import Any, Dict, Optional, Sequence

import requests
from eth_abi import encode

from ..chain.artifacts import ArtifactStore
from ..errors import ExplorerError

logger = logging.getLogger(__name__)

PENDING = "pending in queue"
ALREADY_VERIFIED = "already verified"
PASS = "pass - verified"


class ExplorerVerifier:
    def __init__(self, api_url: str, api_key: Optional[str], artifacts: ArtifactStore,
                 retry_delay: float = 10, status_poll_interval: float = 5,
                 chain_id: Optional[int] = None, session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.api_key = api_key
        self.artifacts = artifacts
        self.retry_delay = retry_delay
        self.status_poll_interval = status_poll_interval
        self.chain_id = chain_id
        self.session = session or requests.Session()
        self.stop_event = threading.Event()

    def stop(self) -> None:
        self.stop_event.set()

    def verify(self, name: str, address: str, constructor_args: Sequence[Any] = (),
               stop_event: Optional[threading.Event] = None) -> bool:
        """Retry until verified (True) or stopped (False)"""
        stop = stop_event or self.stop_event
        while not stop.is_set():
            try:
                if self.verify_once(name, address, constructor_args, stop):
                    logger.info(f"{name} verified successfully at {address}")
                    return True
            except Exception as e:
                logger.error(f"Error verifying {name}, retrying in {self.retry_delay} seconds: {e}")
            stop.wait(self.retry_delay)
        logger.warning(f"Verification of {name} at {address} stopped before completion")
        return False

    def verify_once(self, name: str, address: str, constructor_args: Sequence[Any],
                    stop: threading.Event) -> bool:
        if self.is_verified(address):
            logger.info(f"{name} at {address} is already verified")
            return True

        artifact = self.artifacts.load(name)
        build_info = artifact.build_info()
        encoded_args = encode(artifact.constructor_input_types(), list(constructor_args)).hex()

        response = self._post({
            'module': 'contract',
            'action': 'verifysourcecode',
            'contractaddress': address,
            'sourceCode': json.dumps(build_info['input']),
            'codeformat': 'solidity-standard-json-input',
            'contractname': artifact.fully_qualified_name,
            'compilerversion': f"v{build_info['solcLongVersion']}",
            # Etherscan's own spelling
            'constructorArguements': encoded_args,
        })
        result = str(response.get('result', ''))
        if response.get('status') != '1':
            if ALREADY_VERIFIED in result.lower():
                return True
            raise ExplorerError(f"Explorer rejected verification of {name}: {result}")

        guid = result
        logger.info(f"Verification of {name} submitted (guid {guid})")
        while not stop.is_set():
            status = self._get({'module': 'contract', 'action': 'checkverifystatus', 'guid': guid})
            message = str(status.get('result', ''))
            lowered = message.lower()
            if PENDING in lowered:
                stop.wait(self.status_poll_interval)
                continue
            if PASS in lowered or ALREADY_VERIFIED in lowered:
                return True
            raise ExplorerError(f"Verification of {name} failed: {message}")
        return False

    def is_verified(self, address: str) -> bool:
        response = self._get({'module': 'contract', 'action': 'getsourcecode', 'address': address})
        if response.get('status') != '1':
            raise ExplorerError(f"Source lookup failed: {response.get('result')}")
        entries = response.get('result') or []
        return bool(entries) and bool(entries[0].get('SourceCode'))

    def _params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(params)
        if self.api_key:
            merged['apikey'] = self.api_key
        if self.chain_id is not None:
            merged['chainid'] = self.chain_id
        return merged

    def _get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.get(self.api_url, params=self._params(params), timeout=30)
        response.raise_for_status()
        return response.json()

    def _post(self, data: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(self.api_url, data=self._params(data), timeout=60)
        response.raise_for_status()
        return response.json()


class VerificationTask:
    """Runs one verification on a daemon thread with an explicit stop signal"""

    def __init__(self, verifier: ExplorerVerifier, name: str, address: str,
                 constructor_args: Sequence[Any] = ()):
        self.verifier = verifier
        self.name = name
        self.address = address
        self.constructor_args = list(constructor_args)
        self.result: Optional[bool] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        def run() -> None:
            self.result = self.verifier.verify(self.name, self.address, self.constructor_args,
                                               stop_event=self._stop_event)

        self._thread = threading.Thread(target=run, name=f"verify-{self.name}", daemon=True)
        self._thread.start()

    @property
    def done(self) -> bool:
        return self._thread is not None and not self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> Optional[bool]:
        if self._thread:
            self._thread.join(timeout)
        return self.result

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1)
