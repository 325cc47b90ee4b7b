"""Reactions to changes of subscriptions that affect pending republishing."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from golaris.models import (
    CIRCUIT_BREAKER_STATUS_OPEN,
    CircuitBreakerMessage,
    RepublishingCacheEntry,
    SubscriptionResource,
)
from golaris.republish import CancelRegistry

logger = logging.getLogger(__name__)

_SSE_TYPES = {"sse", "server_sent_event"}
_CALLBACK = "callback"


class _RepublishingCache(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class _CircuitBreakerSource(Protocol):
    def get(self, subscription_id: str) -> Optional[CircuitBreakerMessage]: ...


class _Republisher(Protocol):
    def force_delete(self, subscription_id: str) -> None: ...


class SubscriptionListener:
    """Updates the republishing cache when a subscription changes or disappears."""

    def __init__(
        self,
        republishing_cache: _RepublishingCache,
        circuit_breakers: _CircuitBreakerSource,
        republisher: _Republisher,
        close_circuit_breaker: Callable[[CircuitBreakerMessage], Any],
        cancel_registry: CancelRegistry,
        wait_seconds: float = 2.0,
    ) -> None:
        self.republishing_cache = republishing_cache
        self.circuit_breakers = circuit_breakers
        self.republisher = republisher
        self.close_circuit_breaker = close_circuit_breaker
        self.cancel_registry = cancel_registry
        self.wait_seconds = wait_seconds

    def on_add(self, key: str, subscription: SubscriptionResource) -> None:
        """Clear a cancel flag left behind by an earlier subscription with the same id."""
        subscription_id = subscription.subscription_id or key
        if not isinstance(subscription_id, str) or not subscription_id:
            return
        if self.cancel_registry.get(subscription_id):
            logger.debug("Clearing stale cancel status for subscription %s", subscription_id)
            self.cancel_registry.set(subscription_id, False)

    def on_update(
        self,
        key: str,
        subscription: SubscriptionResource,
        old_subscription: SubscriptionResource,
    ) -> None:
        """Dispatch on the first relevant difference between the old and new subscription."""
        new_type = subscription.delivery_type
        old_type = old_subscription.delivery_type

        if new_type == _CALLBACK and old_type in _SSE_TYPES:
            self._delivery_type_sse_to_callback(subscription, old_subscription)
        elif new_type in _SSE_TYPES and old_type == _CALLBACK:
            self._delivery_type_callback_to_sse(subscription, old_subscription)
        elif subscription.circuit_breaker_opt_out and not old_subscription.circuit_breaker_opt_out:
            self._circuit_breaker_opt_out(subscription, old_subscription)
        elif subscription.callback != old_subscription.callback:
            self._callback_url_change(subscription, old_subscription)
        elif subscription.redeliveries_per_second != old_subscription.redeliveries_per_second:
            self._redeliveries_per_second_change(subscription, old_subscription)

    def on_delete(self, key: Any) -> None:
        """Drop the republishing entry of a deleted subscription and cancel its job."""
        if not isinstance(key, str):
            logger.error("event key is not of type string")
            return

        try:
            entry = self.republishing_cache.get(key)
        except Exception as err:
            logger.error("failed with err: %s to get republishing cache", err)
            return

        if entry is None:
            return
        try:
            self.republisher.force_delete(key)
        except Exception as err:
            logger.error(
                "Failed to delete republishing cache entry for subscriptionId %s on OnDelete: %s",
                key,
                err,
            )
            return
        self.cancel_registry.set(key, True)

    def on_error(self, error: BaseException) -> None:
        logger.error("Error in SubscriptionListener: %s", error)

    def _get_entry(self, subscription_id: str) -> tuple[bool, Any]:
        try:
            return True, self.republishing_cache.get(subscription_id)
        except Exception as err:
            logger.error(
                "Failed to get republishing cache entry for subscription %s: %s",
                subscription_id,
                err,
            )
            return False, None

    def _restart(self, subscription_id: str, context: str) -> bool:
        """Cancel the running job, remove its entry and wait for it to stop."""
        logger.debug("Setting cancel map for subscription %s", subscription_id)
        self.cancel_registry.set(subscription_id, True)
        try:
            self.republisher.force_delete(subscription_id)
        except Exception as err:
            logger.error(
                "Failed to delete republishing cache entry for subscriptionId %s on %s: %s",
                subscription_id,
                context,
                err,
            )
            return False
        logger.debug(
            "Waiting for %s seconds before setting new entry to RepublishingCache for subscription %s",
            self.wait_seconds,
            subscription_id,
        )
        time.sleep(self.wait_seconds)
        self.cancel_registry.set(subscription_id, False)
        return True

    def _close_circuit_breaker_of(self, subscription_id: str) -> bool:
        try:
            cb_message = self.circuit_breakers.get(subscription_id)
        except Exception as err:
            logger.error("failed with err: %s to get circuit breaker", err)
            return False
        if cb_message is not None:
            self.close_circuit_breaker(cb_message)
        return True

    def _delivery_type_sse_to_callback(
        self, subscription: SubscriptionResource, old_subscription: SubscriptionResource
    ) -> None:
        subscription_id = subscription.subscription_id
        logger.debug("Delivery type changed from sse to callback for subscription %s", subscription_id)
        self._set_new_entry(subscription_id, old_subscription.delivery_type, False)

    def _delivery_type_callback_to_sse(
        self, subscription: SubscriptionResource, old_subscription: SubscriptionResource
    ) -> None:
        subscription_id = subscription.subscription_id
        logger.debug("Delivery type changed from callback to sse for subscription %s", subscription_id)
        ok, entry = self._get_entry(subscription_id)
        if not ok:
            return
        if entry is not None and not self._restart(
            subscription_id, "delivery type change from callback to sse"
        ):
            return
        if not self._close_circuit_breaker_of(subscription_id):
            return
        self._set_new_entry(subscription_id, old_subscription.delivery_type, False)

    def _callback_url_change(
        self, subscription: SubscriptionResource, old_subscription: SubscriptionResource
    ) -> None:
        subscription_id = subscription.subscription_id
        logger.debug(
            "Callback URL changed from %s to %s for subscription %s",
            old_subscription.callback,
            subscription.callback,
            subscription_id,
        )
        ok, entry = self._get_entry(subscription_id)
        if not ok or entry is None:
            return
        if not self._restart(subscription_id, "callback url change"):
            return
        logger.info("Start to set new entry to RepublishingCache for subscription %s", subscription_id)
        self._set_new_entry(subscription_id, "", False)

    def _circuit_breaker_opt_out(
        self, subscription: SubscriptionResource, old_subscription: SubscriptionResource
    ) -> None:
        subscription_id = subscription.subscription_id
        logger.debug(
            "CircuitBreakerOptOut changed from %s to %s for subscription %s",
            old_subscription.circuit_breaker_opt_out,
            subscription.circuit_breaker_opt_out,
            subscription_id,
        )
        ok, entry = self._get_entry(subscription_id)
        if not ok:
            return
        if entry is not None and not self._restart(subscription_id, "circuit breaker opt-out change"):
            return
        if not self._close_circuit_breaker_of(subscription_id):
            return
        logger.info("Start to set new entry to RepublishingCache for subscription %s", subscription_id)
        self._set_new_entry(subscription_id, "", False)

    def _redeliveries_per_second_change(
        self, subscription: SubscriptionResource, old_subscription: SubscriptionResource
    ) -> None:
        subscription_id = subscription.subscription_id
        logger.debug(
            "RedeliveriesPerSecond changed from %s to %s for subscription %s",
            old_subscription.redeliveries_per_second,
            subscription.redeliveries_per_second,
            subscription_id,
        )
        ok, entry = self._get_entry(subscription_id)
        if not ok or entry is None:
            return
        if not self._restart(subscription_id, "redeliveries per second change"):
            return
        logger.info("Start to set new entry to RepublishingCache for subscription %s", subscription_id)
        self._set_new_entry(subscription_id, "", False)

    def _set_new_entry(
        self, subscription_id: str, old_delivery_type: str, subscription_change: bool
    ) -> None:
        # An open circuit breaker would make republishing loop, so leave the entry out.
        try:
            cb_entry = self.circuit_breakers.get(subscription_id)
        except Exception as err:
            logger.error(
                "Failed to get circuit breaker cache entry for subscription %s: %s",
                subscription_id,
                err,
            )
            return
        if cb_entry is not None and cb_entry.status == CIRCUIT_BREAKER_STATUS_OPEN:
            logger.debug(
                "Not setting republishing cache entry for subscription %s because circuit breaker entry exists",
                subscription_id,
            )
            return

        now = datetime.now(timezone.utc)
        entry = RepublishingCacheEntry(
            subscription_id=subscription_id,
            republishing_up_to=now,
            postponed_until=now,
            old_delivery_type=old_delivery_type,
            subscription_change=subscription_change,
        )
        try:
            self.republishing_cache.set(subscription_id, entry)
        except Exception as err:
            logger.error(
                "Failed to set republishing cache for subscription %s: %s", subscription_id, err
            )