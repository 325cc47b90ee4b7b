"""Republishing of pending events for subscriptions marked in the republishing cache."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from golaris.models import RepublishingCacheEntry, StatusMessage, SubscriptionResource

logger = logging.getLogger(__name__)

_SSE_TYPES = {"sse", "server_sent_event"}
_LOCK_TIMEOUT_SECONDS = 0.1
_SLEEP_STEP_SECONDS = 0.01


class PartitionLeaderError(Exception):
    """Raised by a picker when the leader of a partition cannot be reached."""


# Errors from picking a record that make the whole run fail so that it is retried.
_RETRIABLE_PICK_ERRORS = (OSError, PartitionLeaderError)


class _LockingCache(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def is_locked(self, key: str) -> bool: ...

    def try_lock(self, key: str, timeout: float) -> bool: ...

    def unlock(self, key: str) -> None: ...

    def force_unlock(self, key: str) -> None: ...


class _Picker(Protocol):
    def pick(self, status: StatusMessage) -> Any: ...

    def close(self) -> None: ...


class CancelRegistry:
    """Thread-safe flags that tell a running republishing job to stop."""

    def __init__(self) -> None:
        self._flags: dict[str, bool] = {}
        self._lock = threading.Lock()

    def set(self, subscription_id: str, cancelled: bool) -> None:
        with self._lock:
            self._flags[subscription_id] = cancelled

    def get(self, subscription_id: str) -> bool:
        with self._lock:
            return self._flags.get(subscription_id, False)


class Throttler:
    """Allows at most ``limit`` acquisitions per ``interval`` seconds.

    A limit of zero or less never throttles.
    """

    def __init__(self, limit: int, interval: float) -> None:
        self.limit = limit
        self.interval = interval
        self._window_start = time.monotonic()
        self._count = 0
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        """Take one slot; return False when the current window is exhausted."""
        if self.limit <= 0:
            return True
        with self._lock:
            now = time.monotonic()
            if now - self._window_start >= self.interval:
                self._window_start = now
                self._count = 0
            if self._count < self.limit:
                self._count += 1
                return True
            return False


def create_throttler(
    redeliveries_per_second: int, delivery_type: str, subscription_id: str, interval: float
) -> Throttler:
    """Return the throttler for a subscription; server-sent events are never throttled."""
    if delivery_type in _SSE_TYPES or redeliveries_per_second <= 0:
        logger.debug(
            "Throttling disabled for subscription %s with delivery type %s and redeliveries per second %d",
            subscription_id,
            delivery_type,
            redeliveries_per_second,
        )
        return Throttler(0, interval)
    logger.info(
        "Throttling enabled for subscription %s with delivery type %s and redeliveries per second %d",
        subscription_id,
        delivery_type,
        redeliveries_per_second,
    )
    return Throttler(redeliveries_per_second, interval)


def _now_like(reference: datetime) -> datetime:
    if reference.tzinfo is None:
        return datetime.now()
    return datetime.now(timezone.utc)


class Republisher:
    """Republishes the pending events of subscriptions to the message bus."""

    def __init__(
        self,
        cache: _LockingCache,
        mongo: Any,
        kafka_handler: Any,
        picker_factory: Callable[[], _Picker],
        cancel_registry: CancelRegistry,
        batch_size: int,
        throttling_interval: float,
    ) -> None:
        self.cache = cache
        self.mongo = mongo
        self.kafka_handler = kafka_handler
        self.picker_factory = picker_factory
        self.cancel_registry = cancel_registry
        self.batch_size = batch_size
        self.throttling_interval = throttling_interval

    def handle_republishing_entry(self, subscription: SubscriptionResource) -> None:
        """Lock the subscription's entry, republish its events and remove the entry."""
        subscription_id = subscription.subscription_id

        try:
            entry = self.cache.get(subscription_id)
        except Exception as err:
            logger.error(
                "Error retrieving RepublishingCacheEntry for subscriptionId %s: %s",
                subscription_id,
                err,
            )
            return

        if entry is None:
            logger.debug("No RepublishingCacheEntry found for subscriptionId %s", subscription_id)
            return
        if not isinstance(entry, RepublishingCacheEntry):
            logger.error("Error casting republishing entry for subscriptionId %s", subscription_id)
            return

        postponed = entry.postponed_until
        if postponed is not None and _now_like(postponed) < postponed:
            logger.debug(
                "Postponed republishing for subscription %s until %s", subscription_id, postponed
            )
            return

        try:
            locked = self.cache.is_locked(subscription_id)
        except Exception:
            logger.error(
                "Failed to check locking state for RepublishingCacheEntry %s", subscription_id
            )
            locked = False
        if locked:
            logger.debug(
                "Could not acquire lock for RepublishingCacheEntry, skipping entry for subscriptionId %s",
                subscription_id,
            )
            return

        try:
            acquired = self.cache.try_lock(subscription_id, _LOCK_TIMEOUT_SECONDS)
        except Exception:
            acquired = False
        if not acquired:
            logger.debug(
                "Could not acquire lock for RepublishingCacheEntry, skipping entry for subscriptionId %s",
                subscription_id,
            )
            return
        logger.debug("Successfully locked RepublishingCacheEntry with subscriptionId %s", subscription_id)

        try:
            try:
                self.republish_pending_events(subscription, entry)
            except Exception as err:
                logger.error(
                    "Error while republishing pending events for subscriptionId %s. "
                    "Discarding rebublishing cache entry: %s",
                    subscription_id,
                    err,
                )
                return

            try:
                self.cache.delete(subscription_id)
            except Exception as err:
                logger.error(
                    "Error deleting RepublishingCacheEntry with subscriptionId %s: %s",
                    subscription_id,
                    err,
                )
                return
            logger.debug(
                "Successfully processed RepublishingCacheEntry with subscriptionId %s", subscription_id
            )
        finally:
            try:
                self.unlock(subscription_id)
                logger.debug(
                    "Successfully unlocked RepublishingCacheEntry with subscriptionId %s",
                    subscription_id,
                )
            except Exception as err:
                logger.debug(
                    "Failed to unlock RepublishingCacheEntry with subscriptionId %s and error %s",
                    subscription_id,
                    err,
                )

    def _cancelled(self, subscription_id: str) -> bool:
        if self.cancel_registry.get(subscription_id):
            logger.info("Republishing for subscription %s has been cancelled", subscription_id)
            return True
        return False

    def _fetch(
        self, entry: RepublishingCacheEntry, subscription_id: str, last_timestamp: Any
    ) -> tuple[list[StatusMessage], Any]:
        now = datetime.now(timezone.utc)
        if entry.old_delivery_type in _SSE_TYPES:
            try:
                messages, last_timestamp = self.mongo.find_processed_messages_by_delivery_type_sse(
                    now, last_timestamp, subscription_id
                )
            except Exception as err:
                logger.error(
                    "Error while fetching PROCESSED messages for subscription %s from db: %s",
                    subscription_id,
                    err,
                )
                return [], None
            logger.debug("Found %d PROCESSED messages in MongoDb", len(messages))
        else:
            try:
                messages, last_timestamp = self.mongo.find_waiting_messages(
                    now, last_timestamp, subscription_id
                )
            except Exception as err:
                logger.error(
                    "Error while fetching messages for subscription %s from db: %s",
                    subscription_id,
                    err,
                )
                return [], None
            logger.debug("Found %d WAITING messages in MongoDb", len(messages))
        return list(messages or []), last_timestamp

    def _wait_for_slot(self, throttler: Throttler, subscription_id: str) -> bool:
        """Block until the throttler grants a slot; return False if cancelled meanwhile."""
        while not throttler.acquire():
            slept = 0.0
            while slept < self.throttling_interval:
                if self._cancelled(subscription_id):
                    return False
                time.sleep(_SLEEP_STEP_SECONDS)
                slept += _SLEEP_STEP_SECONDS
        return True

    def republish_pending_events(
        self, subscription: SubscriptionResource, entry: RepublishingCacheEntry
    ) -> None:
        """Fetch the subscription's pending events batch by batch and republish them.

        Raises when the picker cannot be created or the bus is unreachable, so
        that the cache entry stays and the job is retried.
        """
        subscription_id = subscription.subscription_id
        logger.info("Republishing pending events for subscription %s", subscription_id)

        try:
            picker = self.picker_factory()
        except Exception as err:
            logger.error("Could not create picker for subscription %s: %s", subscription_id, err)
            raise

        try:
            throttler = create_throttler(
                subscription.redeliveries_per_second,
                subscription.delivery_type,
                subscription_id,
                self.throttling_interval,
            )
            self.cancel_registry.set(subscription_id, False)

            last_timestamp: Any = None
            while True:
                if self._cancelled(subscription_id):
                    return

                messages, last_timestamp = self._fetch(entry, subscription_id, last_timestamp)
                logger.debug("Last cursor: %s", last_timestamp)
                if not messages:
                    break

                for db_message in messages:
                    if self._cancelled(subscription_id):
                        return
                    if not self._wait_for_slot(throttler, subscription_id):
                        return
                    self._republish_one(picker, subscription, db_message)

                if len(messages) < self.batch_size:
                    break
        finally:
            picker.close()

    def _republish_one(
        self, picker: _Picker, subscription: SubscriptionResource, db_message: StatusMessage
    ) -> None:
        subscription_id = subscription.subscription_id

        new_delivery_type = ""
        if subscription.delivery_type.casefold() != db_message.delivery_type.casefold():
            new_delivery_type = subscription.delivery_type.upper()

        new_callback_url = ""
        if subscription.callback and subscription.callback != db_message.properties.get("callbackUrl"):
            new_callback_url = subscription.callback

        if db_message.coordinates is None:
            logger.error(
                "Coordinates in message for subscriptionId %s are nil: %r", subscription_id, db_message
            )
            return

        try:
            kafka_message = picker.pick(db_message)
        except _RETRIABLE_PICK_ERRORS:
            raise
        except Exception as err:
            logger.error(
                "Error while fetching message from kafka for subscriptionId %s: %s",
                subscription_id,
                err,
            )
            return

        try:
            self.kafka_handler.republish_message(
                None, kafka_message, new_delivery_type, new_callback_url, False
            )
        except Exception as err:
            logger.warning(
                "Error while republishing message for subscriptionId %s: %s", subscription_id, err
            )
            return
        logger.debug("Successfully republished message for subscriptionId %s", subscription_id)

    def force_delete(self, subscription_id: str) -> None:
        """Unlock the subscription's entry regardless of owner and delete it."""
        logger.debug(
            "Attempting to force unlock RepublishingCacheEntry for subscriptionId %s", subscription_id
        )
        try:
            self.cache.force_unlock(subscription_id)
        except Exception as err:
            logger.error(
                "Error force-unlocking RepublishingCacheEntry for subscriptionId %s: %s",
                subscription_id,
                err,
            )
            raise

        logger.debug("Attempting to delete RepublishingCacheEntry for subscriptionId %s", subscription_id)
        try:
            self.cache.delete(subscription_id)
        except Exception as err:
            logger.error(
                "Error deleting RepublishingCacheEntry for subscriptionId %s: %s", subscription_id, err
            )
            raise
        logger.debug("Successfully deleted RepublishingCacheEntry for subscriptionId %s", subscription_id)

    def unlock(self, subscription_id: str) -> None:
        """Release the lock on the subscription's entry if it is held."""
        if self.cache.is_locked(subscription_id):
            self.cache.unlock(subscription_id)