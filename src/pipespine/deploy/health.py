"""HTTP readiness polling for services.

``HealthChecker`` polls one service's health URL until it answers with the
expected status (and body), the service's startup timeout elapses, or the
run is cancelled. It never raises for an unhealthy service: the outcome is
always a terminal ``HealthStatus``. Only a URL that can never be polled
(malformed, unsupported scheme) raises ``ConfigurationError``.

Example:
    >>> checker = HealthChecker()
    >>> status = checker.check_until_healthy(spec, timeout=60, poll_interval=2)
    >>> status.state
    <HealthState.HEALTHY: 'HEALTHY'>

Tags:
    health, readiness, polling, httpx
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import httpx

from pipespine.core.errors import ConfigurationError, HealthCheckTimeout
from pipespine.core.logging import get_logger
from pipespine.deploy.config import HealthCheckSpec, ServiceSpec
from pipespine.deploy.results import HealthState, HealthStatus

logger = get_logger(__name__)


class HealthChecker:
    """Polls service health endpoints.

    Args:
        client: HTTP client to poll with. One is created (and closed by
            ``close()``) when omitted; tests pass a client built on
            ``httpx.MockTransport``.
        cancel_event: Set to stop polling at the next poll boundary.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._owns_client = client is None
        self._client = client or httpx.Client(follow_redirects=True)
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HealthChecker:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def probe(self, check: HealthCheckSpec) -> str | None:
        """Run one health request. Returns None when ready, else the reason."""
        try:
            response = self._client.get(check.url, timeout=check.request_timeout)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise ConfigurationError(
                f"health URL {check.url!r} cannot be polled: {exc}", cause=exc
            ).with_context(url=check.url) from exc
        except httpx.HTTPError as exc:
            return f"{type(exc).__name__}: {exc}"

        if response.status_code != check.expect_status:
            return f"HTTP {response.status_code} (expected {check.expect_status})"
        if check.body_contains and check.body_contains not in response.text:
            return f"response body does not contain {check.body_contains!r}"
        return None

    def check_until_healthy(
        self,
        spec: ServiceSpec,
        timeout: float,
        poll_interval: float,
    ) -> HealthStatus:
        """Poll ``spec``'s health URL until healthy, timed out or cancelled.

        The first poll happens immediately; later polls are ``poll_interval``
        apart, and one final poll happens at the deadline.

        Returns:
            HealthStatus in HEALTHY, TIMED_OUT or CANCELLED state, carrying
            the number of polls made and the last observed error.

        Raises:
            ConfigurationError: The health URL is malformed.
        """
        status = HealthStatus(service=spec.name, state=HealthState.STARTING)
        if spec.health is None:
            logger.debug("health.no_check", service=spec.name)
            return status.transition(HealthState.HEALTHY)

        deadline = self._clock() + timeout
        polls = 0
        last_error: str | None = None

        while True:
            if self.cancel_event.is_set():
                return status.transition(
                    HealthState.CANCELLED, polls=polls, last_error=last_error or "cancelled"
                )

            polls += 1
            last_error = self.probe(spec.health)
            if last_error is None:
                logger.info("health.healthy", service=spec.name, polls=polls)
                return status.transition(HealthState.HEALTHY, polls=polls)

            logger.debug("health.poll_failed", service=spec.name, poll=polls, error=last_error)

            remaining = deadline - self._clock()
            if remaining <= 0:
                error = HealthCheckTimeout(
                    f"not healthy after {timeout:g}s: {last_error}"
                ).with_context(service=spec.name, url=spec.health.url, polls=polls)
                logger.warning("health.timed_out", timeout=timeout, **error.to_dict())
                return status.transition(
                    HealthState.TIMED_OUT, polls=polls, last_error=error.message
                )

            if self.cancel_event.wait(min(poll_interval, remaining)):
                return status.transition(
                    HealthState.CANCELLED, polls=polls, last_error=last_error
                )
