# golaris

`golaris` is a library that keeps event delivery in a publish/subscribe
pipeline healthy. It republishes events that got stuck, probes subscriber
callback endpoints, reacts to subscription changes, and tracks open circuit
breakers as a gauge. It works against caches, a message bus and a database
that you pass in. It does not create them itself.

## Installation

```
pip install golaris
```

To run the tests:

```
pip install "golaris[test]"
pytest
```

## Modules

### `golaris.models`

These are plain dataclasses shared by the other modules:

- `SubscriptionResource`
- `Coordinates`
- `StatusMessage`, which is built from a database document with
  `StatusMessage.from_document`
- `CircuitBreakerMessage`
- `RepublishingCacheEntry`
- `HealthCheckCacheEntry`

The two cache entry types convert to and from camel-case dicts with
`to_dict` / `from_dict`. Timestamps are stored as ISO 8601 strings.

### `golaris.mongo`

`Connection(collection, batch_size)` wraps a pymongo collection of status
messages. Its finders return `(messages, last_timestamp)`. Results are sorted
by `timestamp` and limited to `batch_size`. If you pass the returned
`last_timestamp` back in, you get the next page.

- `find_waiting_messages`: `WAITING` messages of one subscription.
- `find_processed_messages_by_delivery_type_sse`: `PROCESSED`
  server-sent-event messages of one subscription.
- `find_delivering_messages_by_delivery_type`: `DELIVERING` messages.
- `find_failed_messages_with_callback_url_not_found_exception`: `FAILED`
  messages whose error type is the callback-URL-not-found exception.
- `find_distinct_subscriptions_for_waiting_events`: the subscription ids of
  `WAITING` callback messages modified within a time range.

`connect(url, database, collection, batch_size)` opens a client, pings the
server and returns a `Connection`.

### `golaris.kafka`

- `update_message` rewrites a `ConsumerMessage` as a `ProducerMessage`. It
  sets the delivery type (`CALLBACK`, `SERVER_SENT_EVENT` or `SSE`) and the
  callback URL, empties the callback URL for server-sent events, and marks
  the status `PROCESSED`.
- `copy_headers` replaces any `clientId` header with `golaris`.
- `update_metadata` builds a `METADATA` record that clears an event's error
  fields.
- `Handler(producer)` sends the rewritten record, plus the metadata record
  when `error_params` is true, through `producer.send_messages(list)`. If the
  send fails, the exception is raised again.
- `Picker(consumer)` fetches the record a `StatusMessage` points at. It calls
  `consumer.consume_partition(topic, partition, offset)`, which must return
  an object with `messages()` and `close()`.

### `golaris.republish`

`Republisher` goes through the pending events of a subscription and sends
them again:

- `handle_republishing_entry(subscription)` locks the subscription's
  `RepublishingCacheEntry`, republishes its events and deletes the entry.
  Postponed and already locked entries are skipped.
- `republish_pending_events(subscription, entry)` pages through `WAITING`
  messages. If the entry's old delivery type was server-sent events, it pages
  through `PROCESSED` SSE messages instead. Each record is picked and
  republished with the subscription's current delivery type and callback
  URL. Picker errors that are `OSError` or `PartitionLeaderError` are raised
  so the job is retried. Other errors skip the message.
- `force_delete(subscription_id)` and `unlock(subscription_id)` manage the
  entry's lock.

The cache passed to `Republisher` must provide `get`, `set`, `delete`,
`is_locked`, `try_lock(key, timeout)`, `unlock` and `force_unlock`.

`Throttler(limit, interval)` allows at most `limit` acquisitions per
`interval` seconds. A limit of zero or less means no throttling.
`create_throttler` disables throttling for server-sent-event subscriptions.

`CancelRegistry` holds thread-safe per-subscription flags. A running job
checks them and stops when its flag is set.

```python
from golaris.mongo import connect
from golaris.republish import CancelRegistry, Republisher

mongo = connect("mongodb://localhost:27017", "horizon", "status", batch_size=100)

republisher = Republisher(
    cache=republishing_cache,      # your lockable key/value store
    mongo=mongo,
    kafka_handler=kafka_handler,   # a golaris.kafka.Handler
    picker_factory=make_picker,    # returns a golaris.kafka.Picker
    cancel_registry=CancelRegistry(),
    batch_size=100,
    throttling_interval=1.0,
)

republisher.handle_republishing_entry(subscription)
```

### `golaris.healthcheck`

`HealthChecker` has these methods:

- `prepare(subscription)` fetches or creates the `HealthCheckCacheEntry`
  keyed `environment:method:callback` and tries to lock it with a lease.
  The cache must provide `get`, `set` and `try_lock_with_lease`.
- `execute_health_request` calls the endpoint with a bearer token and the
  publisher and subscriber id headers.
- `check_consumer_health` gets a token and calls the endpoint. It records the
  status code in the cache. If the request fails, it records 0 and raises
  the error again.
- `is_in_cool_down` tells whether an entry was checked within the cool-down
  time.

`get_http_method` returns `GET` for subscriptions that enforce GET health
checks and `HEAD` for all others.

`get_credentials_for_environment` does two things:

- It substitutes the environment for `<realm>` in the security URL.
- It looks up the client secret from `environment=secret` pairs. A pair
  without `=` raises `ValueError`.

### `golaris.listener`

`SubscriptionListener.on_update` reacts to the first relevant change in a
subscription:

- its delivery type
- a circuit-breaker opt-out
- its callback URL
- its redeliveries per second

In each case it cancels and removes any running republishing entry and then
writes a fresh entry. A change from callback to SSE, and an opt-out, also
close the subscription's circuit breaker. No entry is written while the
circuit breaker is open.

`on_delete` force-deletes the entry of a removed subscription and cancels
its job.

### `golaris.scheduler`

`Scheduler` holds two checks:

- `check_open_circuit_breakers`
- `check_republishing_entries`

Each check hands every entry that has a known subscription to its handler,
and runs each handler in its own thread. A circuit breaker without a
subscription is closed. A republishing entry without a subscription is
deleted. Either case ends that pass.

Jobs are registered with `add_job(interval, func, initial_delay)` and run
in background threads between `start()` and `stop()`. You can also use the
scheduler as a context manager:

```python
scheduler.add_job(30.0, scheduler.check_open_circuit_breakers)
scheduler.add_job(10.0, scheduler.check_republishing_entries, initial_delay=5.0)
with scheduler:
    ...
```

### `golaris.metrics`

`CircuitBreakerMetrics` keeps a `golaris_open_circuit_breakers` gauge per
subscription, subscriber, event type and environment:

- `populate_from_cache` loads the gauge from the circuit breakers in the
  cache.
- `on_add`, `on_update` and `on_delete` follow changes to the cache.
- `render` returns the gauge in the Prometheus text format.

Recording is a no-op unless the metrics are enabled.

### `golaris.logsetup` and `golaris.utils`

`set_log_level(level)` configures the `golaris` logger to write to stdout
and returns the level it used:

- At debug level it writes console lines.
- At every other level it writes JSON lines.
- An unknown level name falls back to `info`.

`if_then_else` is a small conditional helper.

## What the package does not do

- There is no command and no long-running service to start. You wire the
  pieces together yourself.
- It has no distributed cache client. The republishing, health-check,
  circuit-breaker and subscription caches are objects you supply.
- It has no message-bus client. The producer and consumer given to
  `Handler` and `Picker` are yours.
- It does not fetch OAuth2 tokens itself. `HealthChecker` takes a
  `token_provider` callable.
- It does not close or reopen circuit breakers on its own. The
  `close_circuit_breaker` and `handle_open_circuit_breaker` callables come
  from you.
- It has no HTTP endpoint for metrics and no trace exporter.
  `CircuitBreakerMetrics.render` only returns the text.