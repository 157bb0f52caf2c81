"""
Structured error types for pipespine.

Every failure the bring-up core can observe has a typed error carrying a
category, a retry flag, structured context, and an optional chained cause.
The split between *fatal* and *recorded* errors drives the run's control
flow:

    ┌─────────────────────────────────────────────────────────────────┐
    │                      PipespineError                              │
    │  (category, retryable, context, cause)                          │
    ├─────────────────────────────────────────────────────────────────┤
    │  Fatal (abort the run before any start attempt)                 │
    │    ConfigurationError ── DockerNotFoundError                    │
    │    CyclicDependencyError                                        │
    │                                                                  │
    │  Recorded (isolated per service / connector)                    │
    │    HealthCheckTimeout   ServiceStartError                       │
    │    RegistrationFailed   ConfigConflict                          │
    │                                                                  │
    │  Retry signalling                                               │
    │    TransientError (retryable=True)                              │
    │                                                                  │
    │  Run-level                                                       │
    │    Cancelled                                                     │
    └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> err = CyclicDependencyError(["connect", "kafka", "connect"])
    >>> err.cycle
    ['connect', 'kafka', 'connect']
    >>> err.to_dict()["category"]
    'ORCHESTRATION'

    >>> TransientError("connect endpoint returned 503").retryable
    True

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories for classification and routing."""

    NETWORK = "NETWORK"
    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    ORCHESTRATION = "ORCHESTRATION"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        run_id: Bring-up run identifier
        service: Service the error relates to
        connector: Connector the error relates to
        url: URL that was being accessed
        http_status: HTTP status code if applicable
        metadata: Additional key-value pairs
    """

    run_id: str | None = None
    service: str | None = None
    connector: str | None = None
    url: str | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["run_id", "service", "connector", "url", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class PipespineError(Exception):
    """Base class for all pipespine errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override either per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> PipespineError:
        """Add context to this error (fluent API).

        Usage:
            raise ServiceStartError("compose exited 1").with_context(service="kafka")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# FATAL ERRORS
# =============================================================================


class ConfigurationError(PipespineError):
    """Malformed pipeline configuration: aborts before any start attempt."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class DockerNotFoundError(ConfigurationError):
    """Raised when the Docker CLI or the compose plugin is not available."""


class CyclicDependencyError(PipespineError):
    """Raised when the service dependency graph contains a cycle."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False

    def __init__(self, cycle: list[str], **kwargs: Any):
        self.cycle = cycle
        super().__init__(
            f"Cycle detected in service dependencies: {' -> '.join(cycle)}",
            **kwargs,
        )

    @property
    def services(self) -> list[str]:
        """Distinct services on the cycle, in path order."""
        return list(dict.fromkeys(self.cycle))


# =============================================================================
# RECORDED (PER-SERVICE / PER-CONNECTOR) ERRORS
# =============================================================================


class TransientError(PipespineError):
    """Temporary condition that may succeed on retry."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class HealthCheckTimeout(PipespineError):
    """A service did not report healthy within its startup timeout."""

    default_category = ErrorCategory.NETWORK
    default_retryable = False


class ServiceStartError(PipespineError):
    """The external service manager failed to start a service."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class RegistrationFailed(PipespineError):
    """Connector registration failed after exhausting retries."""

    default_category = ErrorCategory.NETWORK
    default_retryable = False


class ConfigConflict(PipespineError):
    """A connector exists under the same name with a different configuration."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, connector: str, keys: list[str], **kwargs: Any):
        self.connector = connector
        self.keys = keys
        super().__init__(
            f"Connector {connector!r} already exists with different configuration "
            f"(differing keys: {', '.join(keys)})",
            **kwargs,
        )


# =============================================================================
# RUN-LEVEL
# =============================================================================


class Cancelled(PipespineError):
    """The run received an external cancellation signal."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


def is_fatal(error: Exception) -> bool:
    """True for errors that abort the whole run."""
    return isinstance(error, (ConfigurationError, CyclicDependencyError, Cancelled))


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "PipespineError",
    "ConfigurationError",
    "DockerNotFoundError",
    "CyclicDependencyError",
    "TransientError",
    "HealthCheckTimeout",
    "ServiceStartError",
    "RegistrationFailed",
    "ConfigConflict",
    "Cancelled",
    "is_fatal",
]
