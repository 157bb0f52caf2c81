"""Top-level bring-up driver.

One ``Orchestrator.run()`` is one pass through::

    INIT -> SEQUENCING_SERVICES -> REGISTERING_CONNECTORS -> REPORTING -> DONE

INIT resolves timeouts, checks the dependency graph, runs the service
manager preflight and writes declared files. Configuration and cycle errors
raise out of ``run()`` before any service starts; everything after that is
recorded in the returned ``RunReport``. A run never retries itself.

Example:
    >>> config = load_config("pipeline.yaml")
    >>> report = Orchestrator(config, RunSettings.from_env()).run()
    >>> report.exit_code
    0
"""

from __future__ import annotations

import threading
from enum import Enum

import httpx

from pipespine.core.logging import LogContext, get_logger
from pipespine.deploy.config import PipelineConfig, RunSettings, resolve_timeouts
from pipespine.deploy.connectors import ConnectorRegistrar
from pipespine.deploy.files import prepare_files
from pipespine.deploy.health import HealthChecker
from pipespine.deploy.planner import plan_order, plan_stages
from pipespine.deploy.reporter import StatusReporter
from pipespine.deploy.results import (
    HealthStatus,
    RegistrationOutcome,
    RegistrationResult,
    RunReport,
    utcnow,
)
from pipespine.deploy.sequencer import ServiceSequencer
from pipespine.deploy.services import ComposeServiceManager, ServiceManager
from pipespine.execution.retry import RetryStrategy

logger = get_logger(__name__)


class RunPhase(str, Enum):
    """Orchestrator states."""

    INIT = "INIT"
    SEQUENCING_SERVICES = "SEQUENCING_SERVICES"
    REGISTERING_CONNECTORS = "REGISTERING_CONNECTORS"
    REPORTING = "REPORTING"
    DONE = "DONE"


class Orchestrator:
    """Drives one bring-up run.

    Parameters
    ----------
    config
        Validated pipeline configuration.
    settings
        Per-run settings (CLI flags / environment).
    manager
        Service manager; ``docker compose`` when omitted.
    client
        HTTP client shared by health checks and connector registration.
    retry_strategy
        Backoff for connector registration.
    cancel_event
        External cancellation signal (set by the CLI's signal handlers).
    """

    def __init__(
        self,
        config: PipelineConfig,
        settings: RunSettings | None = None,
        manager: ServiceManager | None = None,
        client: httpx.Client | None = None,
        retry_strategy: RetryStrategy | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.settings = settings or RunSettings()
        self.manager = manager or ComposeServiceManager(config)
        self.client = client
        self.retry_strategy = retry_strategy
        self.cancel_event = cancel_event or threading.Event()
        self.reporter = StatusReporter(config.services, config.connectors)
        self.state = RunPhase.INIT

    @property
    def poll_interval(self) -> float:
        return self.settings.poll_interval or self.config.defaults.poll_interval

    @property
    def concurrency(self) -> int:
        return self.settings.concurrency or self.config.defaults.concurrency

    def cancel(self) -> None:
        """Request cancellation; in-flight polls stop at their next boundary."""
        logger.warning("orchestrator.cancel_requested")
        self.cancel_event.set()

    def _enter(self, phase: RunPhase) -> None:
        logger.info("orchestrator.phase", phase=phase.value, previous=self.state.value)
        self.state = phase

    def run(self) -> RunReport:
        """Execute the run and return its report.

        Raises
        ------
        ConfigurationError
            Invalid configuration, unresolvable timeout, or Docker missing.
        CyclicDependencyError
            The service graph has a cycle.
        """
        started_at = utcnow()
        with LogContext(run_id=self.settings.run_id):
            self.state = RunPhase.INIT
            logger.info(
                "orchestrator.phase",
                phase=RunPhase.INIT.value,
                services=len(self.config.services),
                connectors=len(self.config.connectors),
                dry_run=self.settings.dry_run,
            )

            timeouts = resolve_timeouts(self.config, self.settings)
            order = plan_order(self.config.services)
            stages = plan_stages(self.config.services)

            if self.settings.dry_run:
                self._enter(RunPhase.REPORTING)
                report = self.reporter.build_report(
                    {name: HealthStatus(service=name) for name in order},
                    [],
                    run_id=self.settings.run_id,
                    started_at=started_at,
                    dry_run=True,
                    plan=stages,
                )
                self._enter(RunPhase.DONE)
                return report

            self.manager.preflight()
            prepare_files(self.config.files, self.config.base_dir)

            checker = HealthChecker(client=self.client, cancel_event=self.cancel_event)
            registrar = ConnectorRegistrar(
                client=self.client,
                strategy=self.retry_strategy,
                cancel_event=self.cancel_event,
            )
            try:
                self._enter(RunPhase.SEQUENCING_SERVICES)
                sequencer = ServiceSequencer(
                    self.manager,
                    checker,
                    timeouts=timeouts,
                    poll_interval=self.poll_interval,
                    concurrency=self.concurrency,
                    cancel_event=self.cancel_event,
                )
                statuses = sequencer.bring_up(self.config.services)

                self._enter(RunPhase.REGISTERING_CONNECTORS)
                results = self._register_connectors(registrar, statuses)
            finally:
                checker.close()
                registrar.close()

            self._enter(RunPhase.REPORTING)
            report = self.reporter.build_report(
                statuses,
                results,
                run_id=self.settings.run_id,
                started_at=started_at,
                cancelled=self.cancel_event.is_set(),
                plan=stages,
            )
            self._enter(RunPhase.DONE)
            logger.info(
                "orchestrator.finished",
                success=report.success,
                exit_code=report.exit_code,
                summary=report.summary,
            )
            return report

    def _register_connectors(
        self,
        registrar: ConnectorRegistrar,
        statuses: dict[str, HealthStatus],
    ) -> list[RegistrationResult]:
        """Register connectors one at a time, in configuration order."""
        results: list[RegistrationResult] = []
        for connector in self.config.connectors:
            if self.cancel_event.is_set():
                results.append(
                    RegistrationResult(
                        connector=connector.name,
                        outcome=RegistrationOutcome.CANCELLED,
                        error="cancelled before registration",
                    )
                )
                continue

            unmet = [
                dep
                for dep in connector.depends_on
                if dep not in statuses or not statuses[dep].healthy
            ]
            if unmet:
                logger.warning("connector.skipped", connector=connector.name, unmet=unmet)
                results.append(
                    RegistrationResult(
                        connector=connector.name,
                        outcome=RegistrationOutcome.SKIPPED,
                        error=f"dependency not healthy: {', '.join(unmet)}",
                    )
                )
                continue

            results.append(registrar.register_connector(connector))
        return results
