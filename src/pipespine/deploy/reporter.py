"""Run report aggregation and persistence.

``StatusReporter.build_report()`` is pure aggregation: terminal service
statuses plus connector registration results in, one frozen ``RunReport``
out. ``write_report()`` persists it as JSON.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from pathlib import Path

from pipespine.core.logging import get_logger
from pipespine.deploy.config import ConnectorConfig, ServiceSpec
from pipespine.deploy.results import (
    ConnectorOutcome,
    HealthState,
    HealthStatus,
    RegistrationResult,
    RunReport,
    ServiceOutcome,
    utcnow,
)

logger = get_logger(__name__)


class StatusReporter:
    """Builds ``RunReport`` values.

    Args:
        services: Declared services; supplies ``required`` and ``url``.
            Services missing here count as required.
        connectors: Declared connectors; supplies ``required``.
    """

    def __init__(
        self,
        services: Iterable[ServiceSpec] = (),
        connectors: Iterable[ConnectorConfig] = (),
    ):
        self._services = {s.name: s for s in services}
        self._connectors = {c.name: c for c in connectors}

    def build_report(
        self,
        statuses: Mapping[str, HealthStatus],
        registration_results: Sequence[RegistrationResult],
        *,
        run_id: str = "",
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        cancelled: bool = False,
        dry_run: bool = False,
        plan: Sequence[Sequence[str]] = (),
    ) -> RunReport:
        """Aggregate outcomes into a report.

        ``statuses`` iteration order (topological) is the report's service
        order; ``registration_results`` order (configuration order) is its
        connector order.
        """
        completed_at = completed_at or utcnow()
        started_at = started_at or completed_at

        services = tuple(self._service_outcome(name, status) for name, status in statuses.items())
        connectors = tuple(self._connector_outcome(result) for result in registration_results)

        if dry_run:
            success = True
        else:
            success = not cancelled and all(
                svc.state == HealthState.HEALTHY for svc in services if svc.required
            ) and all(
                result.succeeded
                for result in registration_results
                if self._connector_required(result.connector)
            )

        return RunReport(
            run_id=run_id,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=(completed_at - started_at).total_seconds(),
            services=services,
            connectors=connectors,
            success=success,
            cancelled=cancelled,
            dry_run=dry_run,
            plan=tuple(tuple(stage) for stage in plan),
            summary=self.summarize(services, connectors, cancelled=cancelled, dry_run=dry_run),
        )

    def _service_outcome(self, name: str, status: HealthStatus) -> ServiceOutcome:
        spec = self._services.get(name)
        return ServiceOutcome(
            name=name,
            state=status.state,
            required=spec.required if spec else True,
            cause=None if status.healthy else status.last_error,
            polls=status.polls,
            last_checked=status.last_checked,
            url=spec.url if spec else None,
        )

    def _connector_required(self, name: str) -> bool:
        spec = self._connectors.get(name)
        return spec.required if spec else True

    def _connector_outcome(self, result: RegistrationResult) -> ConnectorOutcome:
        return ConnectorOutcome(
            name=result.connector,
            outcome=result.outcome,
            required=self._connector_required(result.connector),
            cause=None if result.succeeded else result.error,
            attempts=result.attempts,
        )

    @staticmethod
    def summarize(
        services: Sequence[ServiceOutcome],
        connectors: Sequence[ConnectorOutcome],
        *,
        cancelled: bool = False,
        dry_run: bool = False,
    ) -> str:
        """One-line human summary, e.g. ``"2/3 services healthy, 1/1 connectors registered"``."""
        if dry_run:
            return f"dry run: {len(services)} services, {len(connectors)} connectors planned"
        healthy = sum(1 for s in services if s.state == HealthState.HEALTHY)
        registered = sum(
            1 for c in connectors if c.outcome.value in ("REGISTERED", "ALREADY_REGISTERED")
        )
        text = (
            f"{healthy}/{len(services)} services healthy, "
            f"{registered}/{len(connectors)} connectors registered"
        )
        if cancelled:
            text += " (cancelled)"
        return text


def write_report(report: RunReport, path: str | Path) -> Path:
    """Write ``report`` as indented JSON, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    logger.info("report.written", path=str(path))
    return path
