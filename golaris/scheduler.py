"""Periodic checks of open circuit breakers and pending republishing entries."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol

from golaris.models import (
    CIRCUIT_BREAKER_STATUS_OPEN,
    CircuitBreakerMessage,
    RepublishingCacheEntry,
    SubscriptionResource,
)

logger = logging.getLogger(__name__)


class _CircuitBreakerSource(Protocol):
    def values(self) -> Iterable[CircuitBreakerMessage]: ...


class _RepublishingCache(Protocol):
    def values(self) -> Iterable[RepublishingCacheEntry]: ...

    def delete(self, key: str) -> None: ...


class _SubscriptionSource(Protocol):
    def get(self, subscription_id: str) -> Optional[SubscriptionResource]: ...


@dataclass
class _Job:
    interval: float
    func: Callable[[], Any]
    initial_delay: float


class Scheduler:
    """Runs periodic jobs in background threads and holds the cache checks they run."""

    def __init__(
        self,
        circuit_breakers: _CircuitBreakerSource,
        republishing_cache: _RepublishingCache,
        subscriptions: _SubscriptionSource,
        handle_open_circuit_breaker: Callable[[CircuitBreakerMessage, SubscriptionResource], Any],
        handle_republishing_entry: Callable[[SubscriptionResource], Any],
        close_circuit_breaker: Callable[[CircuitBreakerMessage], Any],
    ) -> None:
        self.circuit_breakers = circuit_breakers
        self.republishing_cache = republishing_cache
        self.subscriptions = subscriptions
        self.handle_open_circuit_breaker = handle_open_circuit_breaker
        self.handle_republishing_entry = handle_republishing_entry
        self.close_circuit_breaker = close_circuit_breaker
        self._jobs: list[_Job] = []
        self._threads: list[threading.Thread] = []
        self._stop: Optional[threading.Event] = None

    def add_job(
        self, interval: float, func: Callable[[], Any], initial_delay: float = 0.0
    ) -> None:
        """Register ``func`` to run every ``interval`` seconds after ``initial_delay``."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        if initial_delay < 0:
            raise ValueError("initial delay must not be negative")
        self._jobs.append(_Job(interval, func, initial_delay))

    @staticmethod
    def _run_job(job: _Job, stop: threading.Event) -> None:
        if stop.wait(job.initial_delay):
            return
        while True:
            try:
                job.func()
            except Exception:
                logger.exception("Scheduled job failed")
            if stop.wait(job.interval):
                return

    def start(self) -> None:
        """Start all registered jobs in the background."""
        if self._stop is not None:
            raise RuntimeError("scheduler is already running")
        stop = threading.Event()
        self._stop = stop
        self._threads = [
            threading.Thread(target=self._run_job, args=(job, stop), daemon=True)
            for job in self._jobs
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Stop all jobs and wait for their threads to finish."""
        if self._stop is None:
            return
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads = []
        self._stop = None

    def __enter__(self) -> "Scheduler":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def check_open_circuit_breakers(self) -> list[threading.Thread]:
        """Hand every open circuit breaker with a known subscription to its handler.

        Each handler runs in its own thread; the started threads are returned.
        A circuit breaker without a subscription is closed and ends the pass.
        """
        logger.debug("CircuitBreaker-Loop: Checking circuitBreaker entries")
        try:
            entries = [
                entry
                for entry in self.circuit_breakers.values()
                if entry.status == CIRCUIT_BREAKER_STATUS_OPEN
            ]
        except Exception as err:
            logger.debug("Error while getting CircuitBreaker messages: %s", err)
            return []

        started: list[threading.Thread] = []
        for entry in entries:
            logger.debug("Checking CircuitBreaker with id %s", entry.subscription_id)
            subscription = self.get_subscription(entry.subscription_id)
            if subscription is None:
                logger.debug(
                    "Subscription with id %s for circuit breaker entry doesn't exist.",
                    entry.subscription_id,
                )
                self.close_circuit_breaker(entry)
                return started
            logger.debug(
                "Subscription with id %s for circuit breaker entry found", entry.subscription_id
            )
            thread = threading.Thread(
                target=self.handle_open_circuit_breaker, args=(entry, subscription), daemon=True
            )
            thread.start()
            started.append(thread)
        return started

    def check_republishing_entries(self) -> list[threading.Thread]:
        """Hand every republishing entry with a known subscription to its handler.

        Each handler runs in its own thread; the started threads are returned.
        An entry without a subscription is deleted and ends the pass.
        """
        logger.debug("Republishing-Loop: Checking republishing entries")
        try:
            entries = list(self.republishing_cache.values())
        except Exception as err:
            logger.debug("Error while getting republishing entries: %s", err)
            return []

        started: list[threading.Thread] = []
        for entry in entries:
            subscription_id = entry.subscription_id
            logger.debug("Checking republishing entry for subscriptionId %s", subscription_id)
            subscription = self.get_subscription(subscription_id)
            if subscription is None:
                logger.debug(
                    "Subscription with id %s for republishing entry doesn't exist.",
                    subscription_id,
                )
                try:
                    self.republishing_cache.delete(subscription_id)
                except Exception as err:
                    logger.debug(
                        "Error deleting republishing entry for subscriptionId %s: %s",
                        subscription_id,
                        err,
                    )
                return started
            logger.debug(
                "Subscription with id %s for republishing entry found", subscription_id
            )
            thread = threading.Thread(
                target=self.handle_republishing_entry, args=(subscription,), daemon=True
            )
            thread.start()
            started.append(thread)
        return started

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionResource]:
        """Return the subscription, or None if it is unknown or cannot be read."""
        try:
            return self.subscriptions.get(subscription_id)
        except Exception:
            return None