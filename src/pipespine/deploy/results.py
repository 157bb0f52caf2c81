"""Result models for pipespine.

Pydantic v2 models capturing the structured outcome of a bring-up run. The
models form a small hierarchy: per-service ``HealthStatus`` values and
per-connector ``RegistrationResult`` values roll up into one immutable
``RunReport``.

Key Concepts:
    HealthState: PENDING, STARTING, HEALTHY, FAILED, TIMED_OUT, CANCELLED.
    HealthStatus: One service's latest observed state. A new instance is
        produced on every transition (models are frozen).
    RegistrationOutcome: REGISTERED, ALREADY_REGISTERED, CONFIG_CONFLICT,
        FAILED, SKIPPED, CANCELLED.
    RunReport: Frozen aggregate; ``exit_code`` maps it onto the CLI
        contract (0 success, 1 partial failure, 2 cancelled).

Architecture Decisions:
    - Frozen models: a report is never mutated once built; transitions
      create new ``HealthStatus`` instances via ``transition()``.
    - ``model_dump_json(indent=2)`` is the persistence format.

Tags:
    results, models, pydantic, status, reporting
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Service health
# ---------------------------------------------------------------------------


class HealthState(str, Enum):
    """Lifecycle state of a single service during bring-up."""

    PENDING = "PENDING"
    STARTING = "STARTING"
    HEALTHY = "HEALTHY"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self not in (HealthState.PENDING, HealthState.STARTING)


class HealthStatus(BaseModel):
    """Latest observed health of one service."""

    model_config = ConfigDict(frozen=True)

    service: str
    state: HealthState = HealthState.PENDING
    last_checked: datetime | None = None
    last_error: str | None = None
    polls: int = 0

    def transition(self, state: HealthState, **changes: Any) -> HealthStatus:
        """Return a copy in ``state``, stamped with the current time."""
        changes.setdefault("last_checked", utcnow())
        return self.model_copy(update={"state": state, **changes})

    @property
    def healthy(self) -> bool:
        return self.state == HealthState.HEALTHY


# ---------------------------------------------------------------------------
# Connector registration
# ---------------------------------------------------------------------------


class RegistrationOutcome(str, Enum):
    """Result of registering one connector."""

    REGISTERED = "REGISTERED"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    CONFIG_CONFLICT = "CONFIG_CONFLICT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


class RegistrationResult(BaseModel):
    """Outcome of ``ConnectorRegistrar.register_connector``."""

    model_config = ConfigDict(frozen=True)

    connector: str
    outcome: RegistrationOutcome
    attempts: int = 0
    error: str | None = None
    conflicting_keys: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.outcome in (
            RegistrationOutcome.REGISTERED,
            RegistrationOutcome.ALREADY_REGISTERED,
        )


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------


class ServiceOutcome(BaseModel):
    """One line of the report's service section."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: HealthState
    required: bool = True
    cause: str | None = None
    polls: int = 0
    last_checked: datetime | None = None
    url: str | None = None


class ConnectorOutcome(BaseModel):
    """One line of the report's connector section."""

    model_config = ConfigDict(frozen=True)

    name: str
    outcome: RegistrationOutcome
    required: bool = True
    cause: str | None = None
    attempts: int = 0


class RunReport(BaseModel):
    """Immutable summary of one bring-up run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    started_at: datetime
    completed_at: datetime
    duration_seconds: float = 0.0
    services: tuple[ServiceOutcome, ...] = ()
    connectors: tuple[ConnectorOutcome, ...] = ()
    success: bool = False
    cancelled: bool = False
    dry_run: bool = False
    plan: tuple[tuple[str, ...], ...] = Field(
        default=(),
        description="Bring-up stages (services that may start together)",
    )
    summary: str = ""

    @property
    def exit_code(self) -> int:
        """0 = success, 1 = partial failure, 2 = cancelled."""
        if self.cancelled:
            return 2
        return 0 if self.success else 1

    @property
    def failures(self) -> list[str]:
        """Human-readable lines for every service/connector that did not succeed."""
        lines = []
        for svc in self.services:
            if svc.state != HealthState.HEALTHY and not self.dry_run:
                lines.append(f"service {svc.name}: {svc.state.value} ({svc.cause or 'no detail'})")
        for conn in self.connectors:
            if conn.outcome not in (
                RegistrationOutcome.REGISTERED,
                RegistrationOutcome.ALREADY_REGISTERED,
            ) and not self.dry_run:
                lines.append(
                    f"connector {conn.name}: {conn.outcome.value} ({conn.cause or 'no detail'})"
                )
        return lines
