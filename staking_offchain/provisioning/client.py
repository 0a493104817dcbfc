"""
Client for the external validator provisioning API

The provider creates validator keys asynchronously: a request is accepted
immediately and the validators show up in the listing some time later.
Listings are always read fresh because other deployments may consume
validators between polls.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..errors import ProvisioningCancelled, ProvisioningRequestError, ProvisioningUnavailable
from ..models import ProvisioningRequest, ValidatorRecord

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)


class RetryableListingError(Exception):
    """Throttled, 5xx or unreadable listing response"""


def _hex(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value if value.startswith("0x") else f"0x{value}"


class ProvisioningClient:
    def __init__(self, base_url: str, api_key: str, network: str,
                 ready_status: str = "provisioned", page_size: int = 100,
                 max_attempts: int = 3, retry_delay: float = 2,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.base_url = base_url.rstrip('/')
        self.network = network
        self.ready_status = ready_status
        self.page_size = page_size
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f"Bearer {api_key}",
            'Accept': 'application/json',
        })
        self._sleep = sleep
        self._clock = clock
        # withdrawal address (lower-cased) -> request still being fulfilled
        self._outstanding: Dict[str, ProvisioningRequest] = {}

    @property
    def validators_url(self) -> str:
        return f"{self.base_url}/ethereum/validators"

    def outstanding_request(self, withdrawal_address: str) -> Optional[ProvisioningRequest]:
        return self._outstanding.get(withdrawal_address.lower())

    def clear_outstanding(self, withdrawal_address: str) -> None:
        self._outstanding.pop(withdrawal_address.lower(), None)

    def request_provisioning(self, withdrawal_address: str, count: int) -> ProvisioningRequest:
        """Ask the provider for ``count`` new validators; never retried"""
        if count <= 0:
            raise ValueError("count must be positive")
        body = {
            'network_code': self.network,
            'withdrawal_address': withdrawal_address,
            'validators_count': count,
        }
        logger.info(f"Requesting {count} validator(s) for {withdrawal_address} on {self.network}")
        try:
            response = self.session.post(self.validators_url, json=body, timeout=30)
        except requests.RequestException as e:
            raise ProvisioningRequestError(f"Provisioning request failed: {e}")
        if not response.ok:
            raise ProvisioningRequestError(
                f"Provisioning request rejected with HTTP {response.status_code}: {response.text}"
            )
        request = ProvisioningRequest(withdrawal_address, count, self.network)
        self._outstanding[withdrawal_address.lower()] = request
        return request

    def list_provisioned(self, withdrawal_address: str) -> List[ValidatorRecord]:
        """All ready validators for the address, following every page"""
        records: List[ValidatorRecord] = []
        page = 1
        while True:
            payload = self._get_page(withdrawal_address, page)
            for item in payload.get('data') or []:
                record = self._parse_validator(item)
                if record is not None:
                    records.append(record)
            next_page = ((payload.get('meta') or {}).get('pagination') or {}).get('next_page')
            if not next_page or int(next_page) <= page:
                break
            page = int(next_page)
        logger.info(f"Provider lists {len(records)} ready validator(s) for {withdrawal_address}")
        return records

    def await_provisioned(self, withdrawal_address: str, target_count: int,
                          poll_interval: float = 30,
                          stop_event: Optional[threading.Event] = None,
                          deadline: Optional[float] = None) -> List[ValidatorRecord]:
        """
        Poll until ``target_count`` validators are ready and return exactly that many.

        Requests the shortfall once if nothing is outstanding for the address,
        then keeps polling without ever requesting again. Waits without bound
        unless ``stop_event`` is set or the monotonic ``deadline`` passes, in
        which case ProvisioningCancelled is raised.
        """
        if target_count <= 0:
            return []

        while True:
            self._check_cancelled(stop_event, deadline)
            try:
                ready = self.list_provisioned(withdrawal_address)
            except ProvisioningUnavailable as e:
                logger.warning(f"Polling provisioned validators failed, will poll again: {e}")
            else:
                if len(ready) >= target_count:
                    self.clear_outstanding(withdrawal_address)
                    return ready[:target_count]
                if self.outstanding_request(withdrawal_address) is None:
                    needed = max(0, target_count - len(ready))
                    self.request_provisioning(withdrawal_address, needed)
                else:
                    logger.info(f"Waiting for provider: {len(ready)}/{target_count} validator(s) ready")
            self._wait(poll_interval, stop_event, deadline)

    def _check_cancelled(self, stop_event: Optional[threading.Event], deadline: Optional[float]) -> None:
        if stop_event is not None and stop_event.is_set():
            raise ProvisioningCancelled("Stopped while waiting for provisioned validators")
        if deadline is not None and self._clock() >= deadline:
            raise ProvisioningCancelled("Deadline passed while waiting for provisioned validators")

    def _wait(self, poll_interval: float, stop_event: Optional[threading.Event], deadline: Optional[float]) -> None:
        timeout = poll_interval
        if deadline is not None:
            timeout = max(0.0, min(timeout, deadline - self._clock()))
        if stop_event is not None:
            stop_event.wait(timeout)
        else:
            self._sleep(timeout)

    def _get_page(self, withdrawal_address: str, page: int) -> Dict[str, Any]:
        params = {
            'network_code': self.network,
            'withdrawal_address': withdrawal_address,
            'status': self.ready_status,
            'page[number]': page,
            'page[size]': self.page_size,
        }
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type((requests.RequestException, RetryableListingError)),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )
        try:
            return retrying(self._fetch_page, params)
        except (requests.RequestException, RetryableListingError) as e:
            raise ProvisioningUnavailable(f"Listing validators failed after {self.max_attempts} attempts: {e}")

    def _fetch_page(self, params: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.get(self.validators_url, params=params, timeout=30)
        if response.status_code in RETRY_STATUSES:
            raise RetryableListingError(f"HTTP {response.status_code}")
        if not response.ok:
            raise ProvisioningUnavailable(
                f"Listing validators failed with HTTP {response.status_code}: {response.text}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise RetryableListingError(f"invalid JSON: {e}")

    def _parse_validator(self, item: Dict[str, Any]) -> Optional[ValidatorRecord]:
        attributes = item.get('attributes', item)
        if attributes.get('status', self.ready_status) != self.ready_status:
            return None
        deposit = attributes.get('deposit_data') or {}
        try:
            return ValidatorRecord(
                public_key=_hex(attributes['pubkey']),
                signature=_hex(deposit['signature']),
                deposit_data_root=_hex(deposit['deposit_data_root']),
                withdrawal_credentials=_hex(deposit['withdrawal_credentials']),
            )
        except KeyError as e:
            logger.warning(f"Skipping validator {attributes.get('pubkey')}: missing {e}")
            return None
