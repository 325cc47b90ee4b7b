"""Queries against the status message collection."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pymongo import ASCENDING, MongoClient
from pymongo.errors import PyMongoError

from golaris.models import StatusMessage

logger = logging.getLogger(__name__)

_CALLBACK_URL_NOT_FOUND = "de.telekom.horizon.comet.exception.CallbackUrlNotFoundException"


class Connection:
    """Reads status messages from one collection in batches."""

    def __init__(self, collection: Any, batch_size: int) -> None:
        self.collection = collection
        self.batch_size = batch_size

    def _find_messages_by_query(
        self, query: dict, last_timestamp: Any
    ) -> tuple[list[StatusMessage], Any]:
        if last_timestamp is not None:
            query["timestamp"] = {"$gt": last_timestamp}
            logger.debug("Querying for messages with timestamp > %s", last_timestamp)

        try:
            cursor = self.collection.find(
                query, limit=self.batch_size, sort=[("timestamp", ASCENDING)]
            )
            documents = list(cursor)
        except PyMongoError as err:
            logger.error("Error finding documents: %s", err)
            raise

        messages: list[StatusMessage] = []
        try:
            for document in documents:
                messages.append(StatusMessage.from_document(document))
        except (KeyError, TypeError, ValueError) as err:
            logger.error("Error decoding messages from cursor (query %r): %s", query, err)

        last_timestamp_of_batch = messages[-1].timestamp if messages else None
        return messages, last_timestamp_of_batch

    def _distinct_field_by_query(self, query: dict, field_name: str) -> list:
        try:
            return list(self.collection.distinct(field_name, query))
        except PyMongoError:
            logger.error("Error finding distinct field %s in db", field_name)
            raise

    def find_distinct_subscriptions_for_waiting_events(
        self, begin_timestamp: datetime, end_timestamp: datetime
    ) -> list[str]:
        query = {
            "status": "WAITING",
            "deliveryType": "CALLBACK",
            "modified": {"$gte": begin_timestamp, "$lte": end_timestamp},
        }
        return [str(value) for value in self._distinct_field_by_query(query, "subscriptionId")]

    def find_waiting_messages(
        self, timestamp: datetime, last_timestamp: Any, subscription_id: str
    ) -> tuple[list[StatusMessage], Any]:
        query = {
            "status": "WAITING",
            "subscriptionId": subscription_id,
            "modified": {"$lte": timestamp},
        }
        return self._find_messages_by_query(query, last_timestamp)

    def find_processed_messages_by_delivery_type_sse(
        self, timestamp: datetime, last_timestamp: Any, subscription_id: str
    ) -> tuple[list[StatusMessage], Any]:
        query = {
            "status": "PROCESSED",
            "deliveryType": "SERVER_SENT_EVENT",
            "subscriptionId": subscription_id,
            "modified": {"$lte": timestamp},
        }
        return self._find_messages_by_query(query, last_timestamp)

    def find_delivering_messages_by_delivery_type(
        self, timestamp: datetime, last_timestamp: Any
    ) -> tuple[list[StatusMessage], Any]:
        query = {"status": "DELIVERING", "modified": {"$lte": timestamp}}
        return self._find_messages_by_query(query, last_timestamp)

    def find_failed_messages_with_callback_url_not_found_exception(
        self, timestamp: datetime, last_timestamp: Any
    ) -> tuple[list[StatusMessage], Any]:
        query = {
            "status": "FAILED",
            "errorType": _CALLBACK_URL_NOT_FOUND,
            "modified": {"$lte": timestamp},
        }
        return self._find_messages_by_query(query, last_timestamp)


def connect(url: str, database: str, collection: str, batch_size: int) -> Connection:
    """Connect to the database, check that the primary answers and return a connection."""
    logger.debug("Connecting to mongoDB")
    client = MongoClient(url)
    logger.debug("Sending ping to mongoDB")
    try:
        client.admin.command("ping")
    except PyMongoError:
        logger.error("Could not reach primary mongoDB node")
        raise
    logger.info("Connection to MongoDB established")
    return Connection(client[database][collection], batch_size)