#!/usr/bin/env python3
"""
Balance-triggered validator keeper

Watches the pool's ETH balance and, once it holds a full validator stake,
registers exactly one validator and checks that the pool's
``totalDepositedInValidators`` moved by exactly that stake. Runs until told to
stop; errors only delay the next cycle.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

import schedule

from ..chain.gateway import ChainGateway
from ..errors import PostConditionError, ProvisioningCancelled
from ..models import ContractHandle, KeeperCycleState, KeeperPhase, RegistrationResult
from ..notifications import Notifier
from .registration import RegistrationPipeline

logger = logging.getLogger(__name__)

ALERT_AFTER_FAILURES = 3


class BalanceTriggeredKeeper:
    def __init__(self, gateway: ChainGateway, pipeline: RegistrationPipeline, pool: ContractHandle,
                 funding_threshold: int, poll_interval: float = 5, error_backoff: float = 1,
                 cycle_timeout: Optional[float] = None, notifier: Optional[Notifier] = None,
                 stats_interval: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.gateway = gateway
        self.pipeline = pipeline
        self.pool = pool
        self.funding_threshold = funding_threshold
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.cycle_timeout = cycle_timeout
        self.notifier = notifier
        self._clock = clock

        self.state = KeeperCycleState()

        # Periodic statistics, driven from the keeper loop itself
        self.scheduler = schedule.Scheduler()
        self.scheduler.every(stats_interval).seconds.do(self._log_statistics)

    def pool_balance(self) -> int:
        return self.gateway.get_balance(self.pool.address)

    def registered_total(self) -> int:
        return self.gateway.call_view(self.pool, "totalDepositedInValidators")

    def run_cycle(self, stop_event: Optional[threading.Event] = None) -> Optional[RegistrationResult]:
        """One poll: register a validator if the pool can fund one; None when idle"""
        balance = self.pool_balance()
        self.state.last_observed_balance = balance
        logger.info(f"Balance of {self.pool.name}: {balance}")

        if balance < self.funding_threshold:
            logger.info(f"The balance is not yet {self.funding_threshold} wei")
            return None

        logger.info("Balance is sufficient for registration")
        self.state.phase = KeeperPhase.TRIGGERING
        self.state.last_triggered_at = datetime.now()
        try:
            initial_total = self.registered_total()
            deadline = self._clock() + self.cycle_timeout if self.cycle_timeout else None
            result = self.pipeline.register(
                self.funding_threshold, validator_count=1, stop_event=stop_event, deadline=deadline,
            )

            self.state.phase = KeeperPhase.VERIFYING
            final_total = self.registered_total()
            expected_total = initial_total + self.funding_threshold * result.registered_count
            if final_total != expected_total:
                raise PostConditionError(
                    f"totalDepositedInValidators is {final_total}, expected {expected_total} "
                    f"({initial_total} + {result.registered_count} x {self.funding_threshold})"
                )
            logger.info(
                f"Registered {result.registered_count} validator(s) for node {result.node_id} "
                f"in {result.tx_hash}; total deposited {final_total}"
            )
            return result
        finally:
            self.state.phase = KeeperPhase.IDLE

    def run_forever(self, stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set; never exits on a cycle error"""
        logger.info(f"Registering balance check for {self.pool.name} at {self.pool.address}..")
        while not stop_event.is_set():
            delay = self.poll_interval
            try:
                result = self.run_cycle(stop_event)
            except ProvisioningCancelled as e:
                logger.info(f"Keeper cycle cancelled: {e}")
            except PostConditionError as e:
                logger.error(f"Post-condition failed: {e}")
                self._record_failure(e, always_alert=True)
                delay += self.error_backoff
            except Exception as e:
                logger.error(f"Keeper cycle failed: {e}", exc_info=True)
                self._record_failure(e)
                delay += self.error_backoff
            else:
                self.state.consecutive_error_count = 0
                if result is not None:
                    self.state.successful_cycles += 1

            self.scheduler.run_pending()
            stop_event.wait(delay)
        logger.info("Keeper stopped")

    def _record_failure(self, error: Exception, always_alert: bool = False) -> None:
        self.state.failed_cycles += 1
        self.state.consecutive_error_count += 1
        if self.notifier is None:
            return
        if always_alert or self.state.consecutive_error_count >= ALERT_AFTER_FAILURES:
            self.notifier.send_alert(
                f"Keeper failed {self.state.consecutive_error_count} times consecutively: {error}",
                self._stats(),
            )

    def _stats(self):
        return {
            "Successful Cycles": self.state.successful_cycles,
            "Failed Cycles": self.state.failed_cycles,
            "Consecutive Failures": self.state.consecutive_error_count,
            "Last Balance": self.state.last_observed_balance,
        }

    def _log_statistics(self):
        """Log keeper statistics"""
        logger.info(
            f"Statistics - Successful: {self.state.successful_cycles}, Failed: {self.state.failed_cycles}, "
            f"Consecutive failures: {self.state.consecutive_error_count}, "
            f"Last triggered: {self.state.last_triggered_at}"
        )
