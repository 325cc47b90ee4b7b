"""Data records shared by the caches, the database and the message bus."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

CIRCUIT_BREAKER_STATUS_OPEN = "OPEN"
CIRCUIT_BREAKER_STATUS_CLOSED = "CLOSED"


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat()


@dataclass
class SubscriptionResource:
    """A subscription as held in the subscription cache."""

    subscription_id: str = ""
    environment: str = ""
    callback: str = ""
    delivery_type: str = ""
    publisher_id: str = ""
    subscriber_id: str = ""
    enforce_get_health_check: bool = False
    circuit_breaker_opt_out: bool = False
    redeliveries_per_second: int = 0


@dataclass(frozen=True)
class Coordinates:
    """Position of a record on the message bus."""

    partition: int
    offset: int


@dataclass
class StatusMessage:
    """Status document of one event delivery as stored in the database."""

    uuid: str = ""
    topic: str = ""
    coordinates: Optional[Coordinates] = None
    status: str = ""
    environment: str = ""
    delivery_type: str = ""
    subscription_id: str = ""
    event_id: str = ""
    event_type: str = ""
    properties: dict = field(default_factory=dict)
    timestamp: Any = None
    modified: Any = None

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "StatusMessage":
        """Build a message from a database document."""
        raw_coordinates = document.get("coordinates")
        coordinates = None
        if raw_coordinates is not None:
            coordinates = Coordinates(
                partition=int(raw_coordinates["partition"]),
                offset=int(raw_coordinates["offset"]),
            )
        event = document.get("event") or {}
        return cls(
            uuid=document.get("uuid", ""),
            topic=document.get("topic", ""),
            coordinates=coordinates,
            status=document.get("status", ""),
            environment=document.get("environment", ""),
            delivery_type=document.get("deliveryType", ""),
            subscription_id=document.get("subscriptionId", ""),
            event_id=event.get("id", ""),
            event_type=event.get("type", ""),
            properties=dict(document.get("properties") or {}),
            timestamp=document.get("timestamp"),
            modified=document.get("modified"),
        )


@dataclass
class CircuitBreakerMessage:
    """State of the circuit breaker of one subscription."""

    subscription_id: str = ""
    status: str = ""
    event_type: str = ""
    environment: str = ""
    loop_counter: int = 0


@dataclass
class RepublishingCacheEntry:
    """Marks a subscription whose pending events must be republished."""

    subscription_id: str
    republishing_up_to: Optional[datetime] = None
    postponed_until: Optional[datetime] = None
    old_delivery_type: str = ""
    subscription_change: bool = False

    def to_dict(self) -> dict:
        return {
            "subscriptionId": self.subscription_id,
            "republishingUpTo": _format_time(self.republishing_up_to),
            "postponedUntil": _format_time(self.postponed_until),
            "oldDeliveryType": self.old_delivery_type,
            "subscriptionChange": self.subscription_change,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RepublishingCacheEntry":
        return cls(
            subscription_id=data.get("subscriptionId", ""),
            republishing_up_to=_parse_time(data.get("republishingUpTo")),
            postponed_until=_parse_time(data.get("postponedUntil")),
            old_delivery_type=data.get("oldDeliveryType", ""),
            subscription_change=bool(data.get("subscriptionChange", False)),
        )


@dataclass
class HealthCheckCacheEntry:
    """Result of the last health check against one callback endpoint."""

    environment: str
    method: str
    callback_url: str
    last_checked: Optional[datetime] = None
    last_checked_status: int = 0

    def to_dict(self) -> dict:
        return {
            "environment": self.environment,
            "method": self.method,
            "callbackUrl": self.callback_url,
            "lastChecked": _format_time(self.last_checked),
            "lastCheckedStatus": self.last_checked_status,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HealthCheckCacheEntry":
        return cls(
            environment=data.get("environment", ""),
            method=data.get("method", ""),
            callback_url=data.get("callbackUrl", ""),
            last_checked=_parse_time(data.get("lastChecked")),
            last_checked_status=int(data.get("lastCheckedStatus", 0)),
        )