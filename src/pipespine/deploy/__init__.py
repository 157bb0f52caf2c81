"""deploy - Dependency-ordered, health-gated bring-up of a CDC pipeline stack.

A pipeline is a set of containerised services (database, broker, Kafka
Connect, scheduler, storage) plus the CDC connectors that tie them
together. This package replaces "``docker compose up -d`` and sleep 30"
with an explicit plan: start each service only once its dependencies are
healthy, poll it until it is healthy itself, then register connectors
exactly once and report what happened.

Key Concepts:
    PipelineConfig: Pydantic model loaded from YAML (services, connectors,
        files, defaults).
    ServiceSequencer: Starts ready services concurrently on a bounded pool;
        a failed dependency fails its dependents without starting them.
    HealthChecker: httpx-based readiness polling with a per-service timeout.
    ConnectorRegistrar: Idempotent Kafka Connect registration with
        exponential backoff for transient errors.
    StatusReporter: Pure aggregation into a frozen ``RunReport``.
    Orchestrator: INIT -> SEQUENCING_SERVICES -> REGISTERING_CONNECTORS ->
        REPORTING -> DONE.

Architecture Decisions:
    - subprocess-only: Uses the ``docker compose`` CLI via subprocess, not
      ``docker-py``.
    - Threads, not asyncio: a ``ThreadPoolExecutor`` bounds concurrency and
      a ``threading.Event`` carries cancellation into every wait.
    - Pydantic v2 for config and results: ``model_dump_json()`` is the
      report format.

Related Modules:
    - :mod:`pipespine.deploy.config` - Configuration models and loading
    - :mod:`pipespine.deploy.results` - Status and report models
    - :mod:`pipespine.deploy.planner` - Topological order and cycle detection
    - :mod:`pipespine.deploy.health` - Health polling
    - :mod:`pipespine.deploy.services` - ``docker compose`` service manager
    - :mod:`pipespine.deploy.sequencer` - Concurrent bring-up
    - :mod:`pipespine.deploy.connectors` - Connector registration
    - :mod:`pipespine.deploy.reporter` - Report building and persistence
    - :mod:`pipespine.deploy.files` - Declared file preparation
    - :mod:`pipespine.deploy.orchestrator` - Run state machine
    - :mod:`pipespine.cli.deploy` - CLI commands

Tags:
    deploy, docker, compose, health-check, cdc, kafka-connect, orchestration

Example:
    >>> from pipespine.deploy import Orchestrator, RunSettings, load_config
    >>> report = Orchestrator(load_config("pipeline.yaml"), RunSettings(dry_run=True)).run()
    >>> report.plan
    (('postgres', 'zookeeper'), ('kafka',), ('connect',))
"""

from pipespine.deploy.config import (
    ConnectorConfig,
    FileAsset,
    HealthCheckSpec,
    PipelineConfig,
    RunDefaults,
    RunSettings,
    ServiceSpec,
    load_config,
)
from pipespine.deploy.connectors import ConnectorRegistrar
from pipespine.deploy.health import HealthChecker
from pipespine.deploy.orchestrator import Orchestrator, RunPhase
from pipespine.deploy.planner import plan_order, plan_stages
from pipespine.deploy.reporter import StatusReporter, write_report
from pipespine.deploy.results import (
    HealthState,
    HealthStatus,
    RegistrationOutcome,
    RegistrationResult,
    RunReport,
)
from pipespine.deploy.sequencer import ServiceSequencer
from pipespine.deploy.services import ComposeServiceManager, ServiceManager

__all__ = [
    # Config
    "ConnectorConfig",
    "FileAsset",
    "HealthCheckSpec",
    "PipelineConfig",
    "RunDefaults",
    "RunSettings",
    "ServiceSpec",
    "load_config",
    # Results
    "HealthState",
    "HealthStatus",
    "RegistrationOutcome",
    "RegistrationResult",
    "RunReport",
    # Components
    "ComposeServiceManager",
    "ConnectorRegistrar",
    "HealthChecker",
    "Orchestrator",
    "RunPhase",
    "ServiceManager",
    "ServiceSequencer",
    "StatusReporter",
    "plan_order",
    "plan_stages",
    "write_report",
]
