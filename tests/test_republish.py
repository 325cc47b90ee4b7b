import time
from datetime import datetime, timedelta, timezone

import pytest

from golaris.kafka import ConsumerMessage
from golaris.models import (
    Coordinates,
    RepublishingCacheEntry,
    StatusMessage,
    SubscriptionResource,
)
from golaris.republish import (
    CancelRegistry,
    PartitionLeaderError,
    Republisher,
    Throttler,
    create_throttler,
)

NEW_CALLBACK = "http://new-callbackUrl/callback"


class FakeCache:
    def __init__(self):
        self.entries = {}
        self.locked = set()
        self.fail_force_unlock = False

    def get(self, key):
        return self.entries.get(key)

    def set(self, key, value):
        self.entries[key] = value

    def delete(self, key):
        self.entries.pop(key, None)

    def contains_key(self, key):
        return key in self.entries

    def is_locked(self, key):
        return key in self.locked

    def lock(self, key):
        self.locked.add(key)

    def try_lock(self, key, timeout):
        if key in self.locked:
            return False
        self.locked.add(key)
        return True

    def unlock(self, key):
        self.locked.discard(key)

    def force_unlock(self, key):
        if self.fail_force_unlock:
            raise RuntimeError("force unlock failed")
        self.locked.discard(key)


class FakeMongo:
    def __init__(self, batches=None):
        self.batches = list(batches or [])
        self.waiting_calls = []
        self.processed_calls = []

    def _next(self):
        if self.batches:
            messages = self.batches.pop(0)
            last = messages[-1].timestamp if messages else None
            return messages, last
        return [], None

    def find_waiting_messages(self, timestamp, last_timestamp, subscription_id):
        self.waiting_calls.append((last_timestamp, subscription_id))
        return self._next()

    def find_processed_messages_by_delivery_type_sse(self, timestamp, last_timestamp, subscription_id):
        self.processed_calls.append((last_timestamp, subscription_id))
        return self._next()


class FakeKafka:
    def __init__(self, on_call=None):
        self.calls = []
        self.on_call = on_call

    def republish_message(self, trace_ctx, message, new_delivery_type, new_callback_url, error_params):
        self.calls.append((message, new_delivery_type, new_callback_url, error_params))
        if self.on_call is not None:
            self.on_call()


class FakePicker:
    def __init__(self, error=None):
        self.error = error
        self.picked = []
        self.closed = False

    def pick(self, status):
        self.picked.append(status)
        if self.error is not None:
            raise self.error
        return ConsumerMessage(topic=status.topic, value=b"test-content")

    def close(self):
        self.closed = True


def make_messages(count, topic="test-topic", partition=1, start_offset=100):
    return [
        StatusMessage(
            topic=topic,
            coordinates=Coordinates(partition=partition, offset=start_offset + i),
            timestamp=i,
        )
        for i in range(count)
    ]


def make_subscription(subscription_id="sub123", redeliveries=0, delivery_type="callback"):
    return SubscriptionResource(
        subscription_id=subscription_id,
        delivery_type=delivery_type,
        callback=NEW_CALLBACK,
        redeliveries_per_second=redeliveries,
    )


def make_republisher(mongo=None, kafka=None, picker=None, cache=None, batch_size=10, interval=1.0,
                     cancel=None):
    picker = picker or FakePicker()
    return Republisher(
        cache=cache or FakeCache(),
        mongo=mongo or FakeMongo(),
        kafka_handler=kafka or FakeKafka(),
        picker_factory=lambda: picker,
        cancel_registry=cancel or CancelRegistry(),
        batch_size=batch_size,
        throttling_interval=interval,
    )


def test_cancel_registry_defaults_false_and_stores_flag():
    registry = CancelRegistry()
    assert registry.get("sub") is False
    registry.set("sub", True)
    assert registry.get("sub") is True
    registry.set("sub", False)
    assert registry.get("sub") is False


@pytest.mark.parametrize(
    "rate, delivery_type, expected_limit",
    [(10, "sse", 0), (10, "server_sent_event", 0), (0, "callback", 0), (-1, "callback", 0), (7, "callback", 7)],
)
def test_create_throttler_limit(rate, delivery_type, expected_limit):
    assert create_throttler(rate, delivery_type, "sub", 1.0).limit == expected_limit


def test_throttler_limits_within_window_and_resets():
    throttler = Throttler(2, 0.05)
    assert [throttler.acquire() for _ in range(3)] == [True, True, False]
    time.sleep(0.06)
    assert throttler.acquire() is True


def test_unlimited_throttler_always_grants():
    throttler = Throttler(0, 1.0)
    assert all(throttler.acquire() for _ in range(100))


def test_handle_republishing_entry_acquired_deletes_entry():
    cache = FakeCache()
    cache.set("testSubscriptionId", RepublishingCacheEntry(
        subscription_id="testSubscriptionId", republishing_up_to=datetime.now()))
    republisher = make_republisher(cache=cache)

    republisher.handle_republishing_entry(make_subscription("testSubscriptionId"))

    assert cache.contains_key("testSubscriptionId") is False
    assert cache.is_locked("testSubscriptionId") is False


def test_handle_republishing_entry_not_acquired_keeps_lock():
    cache = FakeCache()
    cache.set("testSubscriptionId", RepublishingCacheEntry(
        subscription_id="testSubscriptionId", republishing_up_to=datetime.now()))
    cache.lock("testSubscriptionId")
    mongo = FakeMongo()
    republisher = make_republisher(cache=cache, mongo=mongo)

    republisher.handle_republishing_entry(make_subscription("testSubscriptionId"))

    assert cache.is_locked("testSubscriptionId") is True
    assert cache.contains_key("testSubscriptionId") is True
    assert mongo.waiting_calls == []


def test_handle_republishing_entry_postponed_is_skipped():
    cache = FakeCache()
    cache.set("sub", RepublishingCacheEntry(
        subscription_id="sub", postponed_until=datetime.now(timezone.utc) + timedelta(hours=1)))
    mongo = FakeMongo()
    republisher = make_republisher(cache=cache, mongo=mongo)

    republisher.handle_republishing_entry(make_subscription("sub"))

    assert cache.contains_key("sub") is True
    assert mongo.waiting_calls == []


def test_handle_republishing_entry_keeps_entry_on_failure():
    cache = FakeCache()
    cache.set("sub", RepublishingCacheEntry(subscription_id="sub"))
    mongo = FakeMongo([make_messages(1)])
    picker = FakePicker(error=ConnectionError("broker down"))
    republisher = make_republisher(cache=cache, mongo=mongo, picker=picker)

    republisher.handle_republishing_entry(make_subscription("sub"))

    assert cache.contains_key("sub") is True
    assert cache.is_locked("sub") is False


def test_republish_events():
    mongo = FakeMongo([make_messages(2)])
    kafka = FakeKafka()
    picker = FakePicker()
    republisher = make_republisher(mongo=mongo, kafka=kafka, picker=picker, batch_size=10)

    republisher.republish_pending_events(make_subscription(), RepublishingCacheEntry(subscription_id="sub123"))

    assert len(mongo.waiting_calls) == 1
    assert mongo.waiting_calls[0][1] == "sub123"
    assert len(picker.picked) == 2
    assert [(c[1], c[2], c[3]) for c in kafka.calls] == [("CALLBACK", NEW_CALLBACK, False)] * 2
    assert picker.closed is True


def test_republish_events_throttled():
    mongo = FakeMongo([make_messages(5)])
    kafka = FakeKafka()
    picker = FakePicker()
    republisher = make_republisher(mongo=mongo, kafka=kafka, picker=picker, batch_size=6, interval=0.05)

    started = time.monotonic()
    republisher.republish_pending_events(
        make_subscription(redeliveries=2), RepublishingCacheEntry(subscription_id="sub123"))

    assert len(picker.picked) == 5
    assert len(kafka.calls) == 5
    assert time.monotonic() - started >= 0.05


def test_republish_events_unthrottled():
    mongo = FakeMongo([make_messages(50)])
    kafka = FakeKafka()
    picker = FakePicker()
    republisher = make_republisher(mongo=mongo, kafka=kafka, picker=picker, batch_size=51)

    republisher.republish_pending_events(
        make_subscription("sub124", redeliveries=0), RepublishingCacheEntry(subscription_id="sub124"))

    assert len(picker.picked) == 50
    assert all(c[1] == "CALLBACK" and c[2] == NEW_CALLBACK for c in kafka.calls)
    assert len(kafka.calls) == 50


def test_republish_events_pages_with_last_timestamp():
    first = make_messages(2)
    second = make_messages(1, start_offset=200)
    mongo = FakeMongo([first, second])
    kafka = FakeKafka()
    republisher = make_republisher(mongo=mongo, kafka=kafka, batch_size=2)

    republisher.republish_pending_events(make_subscription(), RepublishingCacheEntry(subscription_id="sub123"))

    assert [call[0] for call in mongo.waiting_calls] == [None, first[-1].timestamp]
    assert len(kafka.calls) == 3


def test_republish_events_after_sse_uses_processed_query():
    mongo = FakeMongo([make_messages(1)])
    kafka = FakeKafka()
    republisher = make_republisher(mongo=mongo, kafka=kafka)

    republisher.republish_pending_events(
        make_subscription(), RepublishingCacheEntry(subscription_id="sub123", old_delivery_type="sse"))

    assert len(mongo.processed_calls) == 1
    assert mongo.waiting_calls == []
    assert len(kafka.calls) == 1


def test_matching_delivery_type_and_callback_are_not_changed():
    message = StatusMessage(
        topic="test-topic",
        coordinates=Coordinates(partition=0, offset=1),
        delivery_type="CALLBACK",
        properties={"callbackUrl": NEW_CALLBACK},
    )
    kafka = FakeKafka()
    republisher = make_republisher(mongo=FakeMongo([[message]]), kafka=kafka)

    republisher.republish_pending_events(make_subscription(), RepublishingCacheEntry(subscription_id="sub123"))

    assert [(c[1], c[2]) for c in kafka.calls] == [("", "")]


def test_message_without_coordinates_is_skipped():
    messages = [StatusMessage(topic="test-topic")] + make_messages(1)
    picker = FakePicker()
    kafka = FakeKafka()
    republisher = make_republisher(mongo=FakeMongo([messages]), kafka=kafka, picker=picker)

    republisher.republish_pending_events(make_subscription(), RepublishingCacheEntry(subscription_id="sub123"))

    assert len(picker.picked) == 1
    assert len(kafka.calls) == 1


@pytest.mark.parametrize("error", [ConnectionError("down"), PartitionLeaderError("no leader")])
def test_retriable_pick_error_is_raised(error):
    picker = FakePicker(error=error)
    republisher = make_republisher(mongo=FakeMongo([make_messages(2)]), picker=picker)

    with pytest.raises(type(error)):
        republisher.republish_pending_events(make_subscription(), RepublishingCacheEntry(subscription_id="sub123"))
    assert picker.closed is True


def test_other_pick_error_skips_message():
    picker = FakePicker(error=LookupError("missing"))
    kafka = FakeKafka()
    republisher = make_republisher(mongo=FakeMongo([make_messages(3)]), kafka=kafka, picker=picker)

    republisher.republish_pending_events(make_subscription(), RepublishingCacheEntry(subscription_id="sub123"))

    assert len(picker.picked) == 3
    assert kafka.calls == []


def test_picker_factory_error_is_raised():
    def failing_factory():
        raise RuntimeError("no brokers")

    republisher = Republisher(FakeCache(), FakeMongo(), FakeKafka(), failing_factory,
                              CancelRegistry(), 10, 1.0)
    with pytest.raises(RuntimeError, match="no brokers"):
        republisher.republish_pending_events(make_subscription(), RepublishingCacheEntry(subscription_id="sub123"))


def test_cancellation_stops_republishing():
    cancel = CancelRegistry()
    kafka = FakeKafka(on_call=lambda: cancel.set("sub123", True))
    republisher = make_republisher(mongo=FakeMongo([make_messages(5)]), kafka=kafka, cancel=cancel)

    republisher.republish_pending_events(make_subscription(), RepublishingCacheEntry(subscription_id="sub123"))

    assert len(kafka.calls) == 1
    assert cancel.get("sub123") is True


def test_unlock_locked_entry():
    cache = FakeCache()
    cache.set("testSubscriptionId", RepublishingCacheEntry(subscription_id="testSubscriptionId"))
    cache.lock("testSubscriptionId")

    make_republisher(cache=cache).unlock("testSubscriptionId")

    assert cache.is_locked("testSubscriptionId") is False


def test_unlock_unlocked_entry():
    cache = FakeCache()
    cache.set("testSubscriptionId", RepublishingCacheEntry(subscription_id="testSubscriptionId"))

    make_republisher(cache=cache).unlock("testSubscriptionId")

    assert cache.is_locked("testSubscriptionId") is False
    assert cache.contains_key("testSubscriptionId") is True


@pytest.mark.parametrize("locked", [True, False])
def test_force_delete_entry(locked):
    cache = FakeCache()
    cache.set("testSubscriptionId", RepublishingCacheEntry(subscription_id="testSubscriptionId"))
    if locked:
        cache.lock("testSubscriptionId")

    make_republisher(cache=cache).force_delete("testSubscriptionId")

    assert cache.contains_key("testSubscriptionId") is False
    assert cache.is_locked("testSubscriptionId") is False


def test_force_delete_propagates_unlock_error():
    cache = FakeCache()
    cache.set("sub", RepublishingCacheEntry(subscription_id="sub"))
    cache.fail_force_unlock = True

    with pytest.raises(RuntimeError, match="force unlock failed"):
        make_republisher(cache=cache).force_delete("sub")
    assert cache.contains_key("sub") is True