"""Dependency-ordered, health-gated service bring-up.

``ServiceSequencer.bring_up()`` starts every declared service once all of
its dependencies have reached a terminal state:

- all dependencies HEALTHY: start it, then poll it until healthy
- any dependency FAILED / TIMED_OUT / CANCELLED: mark it FAILED without
  starting it, and keep going with unrelated branches

Ready services run concurrently on a bounded ``ThreadPoolExecutor``. The
coordinator blocks on ``concurrent.futures.wait(FIRST_COMPLETED)`` between
scheduling passes. Each worker writes only its own entry of the status
mapping, so the mapping needs no lock.

Example:
    >>> sequencer = ServiceSequencer(manager, HealthChecker(), timeouts={"db": 60})
    >>> statuses = sequencer.bring_up(config.services)
    >>> statuses["db"].state
    <HealthState.HEALTHY: 'HEALTHY'>
"""

from __future__ import annotations

import contextvars
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from pipespine.core.errors import ConfigurationError, ServiceStartError
from pipespine.core.logging import get_logger
from pipespine.deploy.config import ServiceSpec
from pipespine.deploy.health import HealthChecker
from pipespine.deploy.planner import plan_order
from pipespine.deploy.results import HealthState, HealthStatus
from pipespine.deploy.services import ServiceManager

logger = get_logger(__name__)


class ServiceSequencer:
    """Brings services up in dependency order.

    Args:
        manager: Starts services (``docker compose`` in production).
        checker: Polls health endpoints.
        timeouts: Resolved startup timeout per service name. Services not
            listed fall back to their own ``startup_timeout``, then
            ``default_timeout``.
        default_timeout: Run-level startup timeout.
        poll_interval: Seconds between health polls.
        concurrency: Maximum services starting/polling at once.
        cancel_event: External cancellation signal; defaults to the
            checker's event so polls and scheduling observe the same signal.
    """

    def __init__(
        self,
        manager: ServiceManager,
        checker: HealthChecker,
        timeouts: Mapping[str, float] | None = None,
        default_timeout: float | None = None,
        poll_interval: float = 2.0,
        concurrency: int = 4,
        cancel_event: threading.Event | None = None,
    ):
        if concurrency < 1:
            raise ConfigurationError(f"concurrency must be at least 1, got {concurrency}")
        self.manager = manager
        self.checker = checker
        self.timeouts = dict(timeouts or {})
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self.concurrency = concurrency
        self.cancel_event = cancel_event or checker.cancel_event

    def _resolve_timeouts(self, specs: list[ServiceSpec]) -> dict[str, float]:
        resolved: dict[str, float] = {}
        missing = []
        for spec in specs:
            timeout = self.timeouts.get(spec.name) or spec.startup_timeout or self.default_timeout
            if timeout is None:
                missing.append(spec.name)
            else:
                resolved[spec.name] = timeout
        if missing:
            raise ConfigurationError(f"no startup timeout for services {missing}")
        return resolved

    def bring_up(self, specs: Iterable[ServiceSpec]) -> dict[str, HealthStatus]:
        """Start all services and wait for each to reach a terminal state.

        Returns:
            Terminal ``HealthStatus`` per service, in topological order.

        Raises:
            CyclicDependencyError: Before anything is started.
            ConfigurationError: Unknown dependency or unresolvable timeout,
                before anything is started.
        """
        specs = list(specs)
        order = plan_order(specs)
        timeouts = self._resolve_timeouts(specs)
        by_name = {spec.name: spec for spec in specs}

        statuses: dict[str, HealthStatus] = {name: HealthStatus(service=name) for name in order}
        pending = list(order)
        running: dict[Future[None], str] = {}

        logger.info("sequencer.started", services=order, concurrency=self.concurrency)

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="pipespine-service"
        ) as pool:
            while pending or running:
                if self.cancel_event.is_set() and pending:
                    for name in pending:
                        statuses[name] = statuses[name].transition(
                            HealthState.CANCELLED, last_error="cancelled before start"
                        )
                    logger.warning("sequencer.cancelled", not_started=pending)
                    pending = []

                self._schedule(pool, pending, running, statuses, by_name, timeouts)

                if not running:
                    continue

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    try:
                        future.result()
                    except BaseException:
                        # Stop the rest of the run before propagating.
                        self.cancel_event.set()
                        logger.exception("sequencer.worker_crashed", service=name)
                        raise

        logger.info(
            "sequencer.finished",
            healthy=[n for n, s in statuses.items() if s.healthy],
            unhealthy=[n for n, s in statuses.items() if not s.healthy],
        )
        return statuses

    def _schedule(
        self,
        pool: ThreadPoolExecutor,
        pending: list[str],
        running: dict[Future[None], str],
        statuses: dict[str, HealthStatus],
        by_name: dict[str, ServiceSpec],
        timeouts: dict[str, float],
    ) -> None:
        """Start every ready service that fits and fail those with unmet deps.

        Repeats until a pass changes nothing, since failing one service can
        settle its dependents in the same pass.
        """
        progressed = True
        while progressed:
            progressed = False
            for name in list(pending):
                deps = by_name[name].depends_on
                if not all(statuses[d].state.is_terminal for d in deps):
                    continue

                unmet = [d for d in deps if not statuses[d].healthy]
                if unmet:
                    pending.remove(name)
                    statuses[name] = statuses[name].transition(
                        HealthState.FAILED,
                        last_error=f"dependency unmet: {', '.join(unmet)}",
                    )
                    logger.warning("sequencer.dependency_unmet", service=name, unmet=unmet)
                    progressed = True
                elif len(running) < self.concurrency:
                    pending.remove(name)
                    statuses[name] = statuses[name].transition(HealthState.STARTING)
                    ctx = contextvars.copy_context()
                    future = pool.submit(
                        ctx.run, self._bring_up_one, by_name[name], timeouts[name], statuses
                    )
                    running[future] = name
                    progressed = True

    def _bring_up_one(
        self,
        spec: ServiceSpec,
        timeout: float,
        statuses: dict[str, HealthStatus],
    ) -> None:
        """Worker: start one service and poll it. Writes only ``statuses[spec.name]``."""
        status = statuses[spec.name]
        if self.cancel_event.is_set():
            statuses[spec.name] = status.transition(
                HealthState.CANCELLED, last_error="cancelled before start"
            )
            return

        try:
            self.manager.start(spec.name)
        except ServiceStartError as exc:
            logger.error("sequencer.start_failed", service=spec.name, error=str(exc))
            statuses[spec.name] = status.transition(HealthState.FAILED, last_error=str(exc))
            return

        logger.info("sequencer.service_started", service=spec.name, timeout=timeout)
        statuses[spec.name] = self.checker.check_until_healthy(spec, timeout, self.poll_interval)
