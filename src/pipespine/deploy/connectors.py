"""Idempotent CDC connector registration against Kafka Connect.

Talks to the Kafka Connect REST API:

- ``POST /connectors`` with ``{"name": ..., "config": {...}}`` creates a
  connector (200/201).
- A 409 means the name is taken, or that the worker group is rebalancing.
  ``GET /connectors/{name}/config`` tells the two apart: a 404 there means
  a rebalance (retry), a 200 returns the live config to compare with.

Comparison ignores the ``name`` key Kafka Connect adds and compares values
as strings, since Connect stores every value as a string. An identical
config is ``ALREADY_REGISTERED``; a different one is ``CONFIG_CONFLICT``
and is never overwritten.

Transport errors and 5xx answers are transient and retried with bounded
exponential backoff (5 attempts, 1 s base, 16 s cap by default).

Tags:
    cdc, debezium, kafka-connect, registration, idempotency, httpx
"""

from __future__ import annotations

import threading
from typing import Any
from urllib.parse import quote

import httpx

from pipespine.core.errors import (
    Cancelled,
    ConfigConflict,
    ConfigurationError,
    RegistrationFailed,
    TransientError,
)
from pipespine.core.logging import get_logger
from pipespine.deploy.config import ConnectorConfig, validate_http_url
from pipespine.deploy.results import RegistrationOutcome, RegistrationResult
from pipespine.execution.retry import ExponentialBackoff, RetryContext, RetryStrategy

logger = get_logger(__name__)


def config_value(value: Any) -> str:
    """Render a config value the way Kafka Connect stores it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def normalize_config(config: dict[str, Any]) -> dict[str, str]:
    """String-valued copy of ``config`` without the server-managed ``name`` key."""
    return {key: config_value(value) for key, value in config.items() if key != "name"}


def diff_config(desired: dict[str, Any], existing: dict[str, Any]) -> list[str]:
    """Keys whose string values differ (or exist on one side only)."""
    left = normalize_config(desired)
    right = normalize_config(existing)
    return sorted(key for key in left.keys() | right.keys() if left.get(key) != right.get(key))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()[:200] or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text.strip()[:200]


class ConnectorRegistrar:
    """Registers connectors idempotently.

    Args:
        client: HTTP client (``httpx.MockTransport`` in tests).
        strategy: Retry strategy for transient failures.
        cancel_event: Set to abort backoff waits.
        request_timeout: Per-request HTTP timeout in seconds.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        strategy: RetryStrategy | None = None,
        cancel_event: threading.Event | None = None,
        request_timeout: float = 10.0,
    ):
        self._owns_client = client is None
        self._client = client or httpx.Client()
        self.strategy = strategy or ExponentialBackoff(max_attempts=5, base_delay=1.0, max_delay=16.0)
        self.cancel_event = cancel_event or threading.Event()
        self.request_timeout = request_timeout

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ConnectorRegistrar:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def register_connector(
        self,
        config: ConnectorConfig,
        endpoint: str | None = None,
    ) -> RegistrationResult:
        """Create ``config`` on the Kafka Connect ``endpoint`` if it is not there yet.

        Args:
            config: Connector to register.
            endpoint: Kafka Connect base URL; defaults to ``config.endpoint``.

        Returns:
            RegistrationResult; never raises for network or server failures.

        Raises:
            ConfigurationError: The endpoint URL is malformed.
        """
        base = (endpoint or config.endpoint).rstrip("/")
        try:
            validate_http_url(base)
        except ValueError as exc:
            raise ConfigurationError(str(exc)).with_context(
                connector=config.name, url=base
            ) from exc

        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "connector.retrying",
                connector=config.name,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )

        ctx = RetryContext(self.strategy, cancel_event=self.cancel_event, on_retry=_on_retry)

        try:
            outcome = ctx.run(lambda: self._attempt(config, base))
        except Cancelled:
            logger.warning("connector.cancelled", connector=config.name, attempts=ctx.attempts)
            return RegistrationResult(
                connector=config.name,
                outcome=RegistrationOutcome.CANCELLED,
                attempts=ctx.attempts,
                error="cancelled",
            )
        except ConfigConflict as exc:
            logger.error("connector.conflict", connector=config.name, keys=exc.keys)
            return RegistrationResult(
                connector=config.name,
                outcome=RegistrationOutcome.CONFIG_CONFLICT,
                attempts=ctx.attempts,
                error=exc.message,
                conflicting_keys=tuple(exc.keys),
            )
        except TransientError as exc:
            failure = RegistrationFailed(
                f"gave up after {ctx.attempts} attempts: {exc.message}", cause=exc
            ).with_context(
                connector=config.name, url=base, elapsed_seconds=round(ctx.elapsed_seconds, 3)
            )
            logger.error("connector.failed", **failure.to_dict())
            return RegistrationResult(
                connector=config.name,
                outcome=RegistrationOutcome.FAILED,
                attempts=ctx.attempts,
                error=failure.message,
            )
        except RegistrationFailed as exc:
            logger.error("connector.failed", connector=config.name, error=exc.message)
            return RegistrationResult(
                connector=config.name,
                outcome=RegistrationOutcome.FAILED,
                attempts=ctx.attempts,
                error=exc.message,
            )

        logger.info(
            "connector.registered",
            connector=config.name,
            outcome=outcome.value,
            attempts=ctx.attempts,
        )
        return RegistrationResult(connector=config.name, outcome=outcome, attempts=ctx.attempts)

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, url, timeout=self.request_timeout, **kwargs)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise ConfigurationError(f"cannot reach {url!r}: {exc}", cause=exc) from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"{method} {url} failed: {exc}", cause=exc).with_context(
                url=url
            ) from exc

    def _attempt(self, config: ConnectorConfig, base: str) -> RegistrationOutcome:
        payload = {
            "name": config.name,
            "config": {key: config_value(value) for key, value in config.config.items()},
        }
        response = self._request("POST", f"{base}/connectors", json=payload)

        if response.status_code in (200, 201):
            return RegistrationOutcome.REGISTERED
        if response.status_code == 409:
            return self._compare_existing(config, base)
        self._raise_for_status(response)
        raise RegistrationFailed(f"unexpected HTTP {response.status_code} from POST /connectors")

    def _compare_existing(self, config: ConnectorConfig, base: str) -> RegistrationOutcome:
        url = f"{base}/connectors/{quote(config.name, safe='')}/config"
        response = self._request("GET", url)

        if response.status_code == 404:
            raise TransientError(
                "POST returned 409 but the connector does not exist (rebalance in progress)"
            ).with_context(connector=config.name, http_status=409)
        if response.status_code != 200:
            self._raise_for_status(response)

        try:
            existing = response.json()
        except ValueError as exc:
            raise RegistrationFailed(f"invalid JSON from {url}", cause=exc) from exc
        if not isinstance(existing, dict):
            raise RegistrationFailed(
                f"unexpected config payload from {url}: expected an object, got {type(existing).__name__}"
            ).with_context(connector=config.name, url=url)

        keys = diff_config(config.config, existing)
        if keys:
            raise ConfigConflict(config.name, keys)
        return RegistrationOutcome.ALREADY_REGISTERED

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        """5xx is transient, any other non-success is a permanent failure."""
        status = response.status_code
        message = f"HTTP {status} from {response.request.method} {response.request.url}: {_error_message(response)}"
        if status >= 500:
            raise TransientError(message).with_context(http_status=status)
        raise RegistrationFailed(message).with_context(http_status=status)
