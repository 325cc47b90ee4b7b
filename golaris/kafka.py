"""Reading single records from and republishing records to the message bus."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from golaris.models import StatusMessage

logger = logging.getLogger(__name__)

Header = tuple  # (key: bytes, value: bytes)

_CLIENT_ID = b"clientId"
_DELIVERY_TYPES = {"CALLBACK", "SERVER_SENT_EVENT", "SSE"}
_SSE_TYPES = {"SERVER_SENT_EVENT", "SSE"}
_STATUS_PROCESSED = "PROCESSED"


@dataclass
class ConsumerMessage:
    """A record read from the message bus."""

    topic: str = ""
    partition: int = 0
    offset: int = 0
    key: bytes = b""
    value: bytes = b""
    headers: list = field(default_factory=list)


@dataclass
class ProducerMessage:
    """A record to be written to the message bus; the producer fills in the position."""

    topic: str
    key: bytes
    value: bytes
    headers: list = field(default_factory=list)
    partition: int = 0
    offset: int = 0


class _SyncProducer(Protocol):
    def send_messages(self, messages: list) -> None: ...


class _TraceContext(Protocol):
    def start_span(self, name: str) -> None: ...

    def end_current_span(self) -> None: ...

    def record_error(self, error: BaseException) -> None: ...

    def set_attribute(self, key: str, value: str) -> None: ...


def _key_text(message: ConsumerMessage) -> str:
    return message.key.decode("utf-8", errors="replace")


def _decode_object(raw: bytes) -> dict:
    try:
        value = json.loads(raw)
    except ValueError:
        logger.error("Could not unmarshal message value")
        raise
    if not isinstance(value, dict):
        logger.error("Could not unmarshal message value")
        raise ValueError("message value is not a JSON object")
    return value


def _encode(value: dict) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")


def copy_headers(headers: list) -> list:
    """Copy headers, replacing any client id header with this service's."""
    copied = [(key, value) for key, value in headers if key != _CLIENT_ID]
    copied.append((_CLIENT_ID, b"golaris"))
    return copied


def update_message(
    message: ConsumerMessage, new_delivery_type: str, new_callback_url: str
) -> ProducerMessage:
    """Return a copy of ``message`` marked processed, with delivery type and callback updated."""
    value = _decode_object(message.value)

    if new_delivery_type in _DELIVERY_TYPES:
        value["deliveryType"] = new_delivery_type

    if new_callback_url:
        additional = value.get("additionalFields")
        if not isinstance(additional, dict):
            additional = {}
            value["additionalFields"] = additional
        additional["callback-url"] = new_callback_url

    if new_delivery_type in _SSE_TYPES:
        additional = value.get("additionalFields")
        if isinstance(additional, dict) and "callback-url" in additional:
            logger.debug("Replacing callback-url in message with an empty string")
            additional["callback-url"] = ""

    value["status"] = _STATUS_PROCESSED

    return ProducerMessage(
        topic=message.topic,
        key=message.key,
        value=_encode(value),
        headers=copy_headers(message.headers),
    )


def update_metadata(message: ConsumerMessage) -> ProducerMessage:
    """Build the metadata record that clears the error fields of ``message``'s event."""
    value = _decode_object(message.value)
    event = value.get("event")
    if not isinstance(event, dict):
        raise ValueError("message value has no event object")

    metadata = {
        "uuid": value.get("uuid"),
        "event": {"id": event.get("id")},
        "errorMessage": "",
        "errorType": "",
    }
    return ProducerMessage(
        topic=message.topic,
        key=message.key,
        value=_encode(metadata),
        headers=[(b"type", b"METADATA")],
    )


class Handler:
    """Republishes records through a synchronous producer."""

    def __init__(self, producer: _SyncProducer) -> None:
        self.producer = producer

    def republish_message(
        self,
        trace_ctx: Optional[_TraceContext],
        message: ConsumerMessage,
        new_delivery_type: str,
        new_callback_url: str,
        error_params: bool,
    ) -> None:
        """Send an updated copy of ``message``, plus a metadata record if ``error_params``."""
        updated = update_message(message, new_delivery_type, new_callback_url)
        outgoing = [updated]

        if trace_ctx is not None:
            trace_ctx.start_span("produce message")
        try:
            if error_params:
                outgoing.append(update_metadata(message))

            try:
                self.producer.send_messages(outgoing)
            except Exception as err:
                logger.error("Could not send message with id %s to kafka: %s", _key_text(message), err)
                if trace_ctx is not None:
                    trace_ctx.record_error(err)
                raise

            logger.debug(
                "Message with id %s sent to kafka: newDeliveryType %s newCallBackUrl %s",
                _key_text(message),
                new_delivery_type,
                new_callback_url,
            )

            if trace_ctx is not None:
                trace_ctx.set_attribute("partition", str(updated.partition))
                trace_ctx.set_attribute("offset", str(updated.offset))
                logger.debug(
                    "Republished message uuid=%s partition=%d offset=%d",
                    _key_text(message),
                    updated.partition,
                    updated.offset,
                )
        finally:
            if trace_ctx is not None:
                trace_ctx.end_current_span()


class Picker:
    """Fetches the single record a status message points at."""

    def __init__(self, consumer: Any) -> None:
        self.consumer = consumer

    def close(self) -> None:
        try:
            self.consumer.close()
        except Exception as err:
            logger.error("Could not close picker gracefully: %s", err)

    def pick(self, status: StatusMessage) -> ConsumerMessage:
        """Return the record at the coordinates of ``status``."""
        if status.coordinates is None:
            raise ValueError("status message has no coordinates")
        partition = status.coordinates.partition
        offset = status.coordinates.offset
        part_consumer = self.consumer.consume_partition(status.topic, partition, offset)
        try:
            try:
                return next(iter(part_consumer.messages()))
            except StopIteration:
                raise LookupError(
                    f"no message at {status.topic}/{partition}/{offset}"
                ) from None
        finally:
            try:
                part_consumer.close()
            except Exception as err:
                logger.error("Could not close picker gracefully: %s", err)