"""Health checks against the callback endpoints of subscriptions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Protocol

import requests

from golaris.models import HealthCheckCacheEntry, SubscriptionResource

logger = logging.getLogger(__name__)

_LOCK_LEASE_SECONDS = 60.0
_LOCK_TIMEOUT_SECONDS = 0.1


class _HealthCheckCache(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def try_lock_with_lease(self, key: str, lease: float, timeout: float) -> bool: ...


TokenProvider = Callable[[str, str, str], str]


@dataclass
class PreparedHealthCheck:
    """A health-check cache entry together with its key and the outcome of locking it."""

    health_check_key: str
    health_check_entry: HealthCheckCacheEntry
    is_acquired: bool = False


def new_health_check_entry(
    subscription: SubscriptionResource, http_method: str
) -> HealthCheckCacheEntry:
    """Create a fresh cache entry for the subscription's callback endpoint."""
    return HealthCheckCacheEntry(
        environment=subscription.environment,
        method=http_method,
        callback_url=subscription.callback,
    )


def get_http_method(subscription: SubscriptionResource) -> str:
    """Return GET if the subscription enforces it, HEAD otherwise."""
    http_method = "HEAD"
    if subscription.enforce_get_health_check:
        http_method = "GET"
    logger.debug(
        "Using http-method %s for health checks of subscription %s",
        http_method,
        subscription.subscription_id,
    )
    return http_method


def get_credentials_for_environment(
    security_url: str, client_id: str, client_secrets: Iterable[str], environment: str
) -> tuple[str, str, str]:
    """Resolve issuer URL, client id and client secret for ``environment``.

    ``client_secrets`` holds ``environment=secret`` pairs; a pair without
    ``=`` raises ``ValueError``. An unknown environment yields an empty secret.
    """
    issuer_url = security_url.replace("<realm>", environment)
    secrets: dict[str, str] = {}
    for pair in client_secrets:
        name, separator, value = pair.partition("=")
        if not separator:
            raise ValueError(
                f"could not resolve secret '{pair}' for environment '{environment}'"
            )
        secrets[name] = value
    return issuer_url, client_id, secrets.get(environment, "")


def _now_like(reference: datetime) -> datetime:
    if reference.tzinfo is None:
        return datetime.now()
    return datetime.now(timezone.utc)


class HealthChecker:
    """Prepares, performs and records health checks of callback endpoints."""

    def __init__(
        self,
        cache: _HealthCheckCache,
        session: Optional[requests.Session],
        token_provider: TokenProvider,
        security_url: str,
        client_id: str,
        client_secrets: Iterable[str],
        cool_down_seconds: float,
    ) -> None:
        self.cache = cache
        self.session = session if session is not None else requests.Session()
        self.token_provider = token_provider
        self.security_url = security_url
        self.client_id = client_id
        self.client_secrets = list(client_secrets)
        self.cool_down_seconds = cool_down_seconds

    def is_in_cool_down(self, entry: HealthCheckCacheEntry) -> bool:
        """Tell whether the entry was checked less than the cool-down time ago."""
        last_checked = entry.last_checked
        if last_checked is None:
            return False
        elapsed = (_now_like(last_checked) - last_checked).total_seconds()
        return elapsed < self.cool_down_seconds

    def _update_entry(self, key: str, entry: HealthCheckCacheEntry, status_code: int) -> HealthCheckCacheEntry:
        updated = replace(
            entry, last_checked_status=status_code, last_checked=datetime.now(timezone.utc)
        )
        try:
            self.cache.set(key, updated)
        except Exception as err:
            logger.error("Failed to update HealthCheckCacheEntry for key %s: %s", key, err)
        return updated

    def prepare(self, subscription: SubscriptionResource) -> PreparedHealthCheck:
        """Fetch or create the subscription's health-check entry and try to lock it."""
        http_method = get_http_method(subscription)
        key = f"{subscription.environment}:{http_method}:{subscription.callback}"

        entry = None
        try:
            entry = self.cache.get(key)
        except Exception as err:
            logger.error("Error retrieving HealthCheckCacheEntry for key %s: %s", key, err)

        if entry is None:
            entry = new_health_check_entry(subscription, http_method)
            self.cache.set(key, entry)
            logger.debug("Creating new HealthCheckCacheEntry for key %s", key)

        try:
            acquired = self.cache.try_lock_with_lease(key, _LOCK_LEASE_SECONDS, _LOCK_TIMEOUT_SECONDS)
        except Exception:
            acquired = False

        return PreparedHealthCheck(health_check_key=key, health_check_entry=entry, is_acquired=acquired)

    def execute_health_request(
        self,
        callback_url: str,
        http_method: str,
        subscription: SubscriptionResource,
        token: str,
    ) -> requests.Response:
        """Call the callback endpoint with the consumer token and return the response."""
        logger.debug(
            "Performing health request for callback-url %s with http-method %s",
            callback_url,
            http_method,
        )
        headers = {
            "Authorization": f"Bearer {token}",
            "x-pubsub-publisher-id": subscription.publisher_id,
            "x-pubsub-subscriber-id": subscription.subscriber_id,
        }
        try:
            prepared = self.session.prepare_request(
                requests.Request(http_method, callback_url, headers=headers)
            )
        except requests.RequestException as err:
            raise ValueError(f"Failed to create request for URL {callback_url}: {err}") from err

        try:
            response = self.session.send(prepared)
        except requests.RequestException as err:
            raise ConnectionError(
                f"Failed to perform {http_method} request to {callback_url}: {err}"
            ) from err
        response.close()
        return response

    def check_consumer_health(
        self, prepared: PreparedHealthCheck, subscription: SubscriptionResource
    ) -> None:
        """Check the endpoint of ``prepared`` and record the status code in the cache.

        A failed request is recorded with status 0 and re-raised.
        """
        logger.debug("Checking consumer health")
        issuer_url, client_id, client_secret = get_credentials_for_environment(
            self.security_url, self.client_id, self.client_secrets, subscription.environment
        )

        try:
            token = self.token_provider(issuer_url, client_id, client_secret)
        except Exception as err:
            logger.error("Failed to retrieve OAuth2 token: %s", err)
            raise

        entry = prepared.health_check_entry
        try:
            response = self.execute_health_request(
                entry.callback_url, entry.method, subscription, token
            )
        except Exception as err:
            logger.info(
                "Failed to perform http-request for callback-url %s: %s", entry.callback_url, err
            )
            self._update_entry(prepared.health_check_key, entry, 0)
            raise

        logger.debug(
            "Received response for callback-url %s with http-status: %s",
            entry.callback_url,
            response.status_code,
        )
        prepared.health_check_entry = self._update_entry(
            prepared.health_check_key, entry, response.status_code
        )