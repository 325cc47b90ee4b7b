"""Prometheus-style gauges describing the open circuit breakers."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, Mapping, Optional, Protocol

from golaris.models import CIRCUIT_BREAKER_STATUS_OPEN, CircuitBreakerMessage
from golaris.utils import if_then_else

logger = logging.getLogger(__name__)

NAMESPACE = "golaris"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
_LABELS = ("subscriptionId", "subscriberId", "eventType", "environment")


class _CircuitBreakerSource(Protocol):
    def values(self) -> Iterable[CircuitBreakerMessage]: ...


class _SubscriptionSource(Protocol):
    def get(self, subscription_id: str) -> Any: ...


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_value(value: float) -> str:
    if value == int(value):
        return str(int(value))
    return repr(value)


class GaugeVec:
    """A gauge with one value per combination of label values."""

    def __init__(self, name: str, help_text: str, label_names: Iterable[str]) -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Mapping[str, str]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"labels {sorted(labels)} do not match {sorted(self.label_names)}"
            )
        return tuple(labels[name] for name in self.label_names)

    def set(self, labels: Mapping[str, str], value: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def get(self, labels: Mapping[str, str]) -> Optional[float]:
        """Return the value for ``labels``, or None if it was never set."""
        key = self._key(labels)
        with self._lock:
            return self._values.get(key)

    def delete_partial_match(self, labels: Mapping[str, str]) -> int:
        """Remove every series whose labels include ``labels``; return how many."""
        positions = {self.label_names.index(name): value for name, value in labels.items()}
        with self._lock:
            doomed = [
                key
                for key in self._values
                if all(key[index] == value for index, value in positions.items())
            ]
            for key in doomed:
                del self._values[key]
        return len(doomed)

    def render(self) -> str:
        """Return the gauge in the Prometheus text exposition format."""
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} gauge"]
        order = sorted(range(len(self.label_names)), key=lambda i: self.label_names[i])
        with self._lock:
            items = sorted(self._values.items())
        for key, value in items:
            pairs = ",".join(f'{self.label_names[i]}="{_escape(key[i])}"' for i in order)
            lines.append(f"{self.name}{{{pairs}}} {_format_value(value)}")
        return "\n".join(lines) + "\n"


class CircuitBreakerMetrics:
    """Keeps the open-circuit-breaker gauge in step with the circuit breaker cache."""

    def __init__(
        self,
        circuit_breakers: _CircuitBreakerSource,
        subscriptions: _SubscriptionSource,
        enabled: bool,
    ) -> None:
        self.circuit_breakers = circuit_breakers
        self.subscriptions = subscriptions
        self.enabled = enabled
        self.open_circuit_breakers = GaugeVec(
            f"{NAMESPACE}_open_circuit_breakers",
            "The amount of open circuit-breakers.",
            _LABELS,
        )

    def record(
        self,
        subscription_id: str,
        subscriber_id: str,
        event_type: str,
        environment: str,
        is_open: bool,
    ) -> None:
        if not self.enabled:
            return
        self.open_circuit_breakers.set(
            {
                "subscriptionId": subscription_id,
                "subscriberId": subscriber_id,
                "eventType": event_type,
                "environment": environment,
            },
            float(if_then_else(is_open, 1, 0)),
        )

    def lookup_subscriber_id(self, subscription_id: str) -> str:
        """Return the subscriber of a subscription, or ``unknown``."""
        try:
            subscription = self.subscriptions.get(subscription_id)
        except Exception:
            subscription = None
        if subscription is None:
            logger.warning(
                "could not look up subscriberId for metric (subscriptionId %s)", subscription_id
            )
            return "unknown"
        return subscription.subscriber_id

    def _record_message(self, subscription_id: str, message: CircuitBreakerMessage) -> None:
        self.record(
            subscription_id,
            self.lookup_subscriber_id(subscription_id),
            message.event_type,
            message.environment,
            message.status == CIRCUIT_BREAKER_STATUS_OPEN,
        )

    def populate_from_cache(self) -> None:
        """Record every circuit breaker currently in the cache."""
        try:
            circuit_breakers = list(self.circuit_breakers.values())
        except Exception as err:
            logger.warning("could not initialize metrics from circuit-breakers map: %s", err)
            circuit_breakers = []
        for circuit_breaker in circuit_breakers:
            self._record_message(circuit_breaker.subscription_id, circuit_breaker)

    def on_add(self, key: str, message: CircuitBreakerMessage) -> None:
        self._record_message(key, message)

    def on_update(
        self, key: str, message: CircuitBreakerMessage, old_message: CircuitBreakerMessage
    ) -> None:
        self._record_message(key, message)

    def on_delete(self, key: str) -> None:
        self.open_circuit_breakers.delete_partial_match({"subscriptionId": key})

    def on_error(self, error: BaseException) -> None:
        logger.warning("could not listen for circuitbreaker changes: %s", error)

    def render(self) -> str:
        """Return all metrics in the Prometheus text exposition format."""
        return self.open_circuit_breakers.render()