"""Configuration models for pipespine.

A pipeline is declared in one YAML file: the services to bring up (with
their dependencies and health checks), the CDC connectors to register once
the stack is healthy, and any files that must exist before ``docker compose``
runs. Pydantic v2 validates the file; everything that is wrong with it
surfaces as a single ``ConfigurationError`` before any service starts.

Example file::

    project_name: cdc-pipeline
    compose_files: [docker-compose.yml]
    defaults:
      startup_timeout: 120
      poll_interval: 2
      concurrency: 4
    services:
      - name: postgres
        health: {url: "http://localhost:8001/health"}
      - name: connect
        depends_on: [postgres, kafka]
        health: {url: "http://localhost:8083/connectors"}
        url: http://localhost:8083
    connectors:
      - name: postgres-connector
        endpoint: http://localhost:8083
        depends_on: [connect]
        config:
          connector.class: io.debezium.connector.postgresql.PostgresConnector
          database.password: ${POSTGRES_PASSWORD}

Key Concepts:
    PipelineConfig: Root model (services, connectors, files, defaults).
    ServiceSpec: One service; name, depends_on, health, startup_timeout.
    ConnectorConfig: One connector; name is the idempotency key.
    RunSettings: Per-invocation knobs (timeout, concurrency, dry-run).
        ``from_env()`` reads ``PIPESPINE_*``; keyword overrides win.

Architecture Decisions:
    - ``${VAR}`` / ``${VAR:-default}`` interpolation happens on the raw YAML
      tree before validation, so secrets never live in the file.
    - Per-service timeouts are explicit. A service with neither its own
      ``startup_timeout`` nor a run-level default is a configuration error.

Tags:
    config, settings, pydantic, yaml, environment
"""

from __future__ import annotations

import os
import re
import uuid
from pathlib import Path
from typing import Any

import httpx
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from pipespine.core.errors import ConfigurationError

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def validate_http_url(value: str) -> str:
    """Return ``value`` if it is an absolute http(s) URL, else raise ValueError."""
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError) as exc:
        raise ValueError(f"malformed URL {value!r}: {exc}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError(f"expected an absolute http(s) URL, got {value!r}")
    return value


class HealthCheckSpec(BaseModel):
    """HTTP readiness probe for a service."""

    url: str = Field(description="URL polled with HTTP GET")
    expect_status: int = Field(default=200, description="Status code that means ready")
    body_contains: str | None = Field(
        default=None,
        description="Optional substring the response body must contain",
    )
    request_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Per-request HTTP timeout in seconds",
    )

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        return validate_http_url(value)


class ServiceSpec(BaseModel):
    """A service managed by the bring-up sequencer."""

    name: str = Field(min_length=1)
    depends_on: list[str] = Field(default_factory=list)
    health: HealthCheckSpec | None = Field(
        default=None,
        description="Readiness probe; without one the service is healthy once started",
    )
    startup_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds to wait for the service to become healthy",
    )
    required: bool = Field(
        default=True,
        description="Whether the run's success depends on this service",
    )
    url: str | None = Field(default=None, description="User-facing access URL")

    # A self-dependency is left for the planner, which reports it as a cycle.
    @field_validator("depends_on")
    @classmethod
    def _no_duplicate_deps(cls, deps: list[str]) -> list[str]:
        if len(deps) != len(set(deps)):
            raise ValueError(f"duplicate dependencies: {deps}")
        return deps


class ConnectorConfig(BaseModel):
    """A CDC connector registered against a Kafka Connect endpoint."""

    name: str = Field(min_length=1, description="Connector name, the idempotency key")
    config: dict[str, Any] = Field(default_factory=dict)
    endpoint: str = Field(description="Kafka Connect base URL")
    depends_on: list[str] = Field(
        default_factory=list,
        description="Services that must be healthy before registering",
    )
    required: bool = True

    @field_validator("endpoint")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        return validate_http_url(value.rstrip("/"))


class FileAsset(BaseModel):
    """A file materialised before services start (init SQL, storage XML, DAGs)."""

    path: str = Field(min_length=1, description="Path relative to the config file")
    content: str = ""
    overwrite: bool = False


class RunDefaults(BaseModel):
    """Run-level defaults declared in the configuration file."""

    startup_timeout: float | None = Field(default=None, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)
    concurrency: int = Field(default=4, ge=1)


class PipelineConfig(BaseModel):
    """Root configuration: everything one bring-up run needs."""

    project_name: str | None = None
    compose_files: list[str] = Field(default_factory=list)
    env_file: str | None = None
    defaults: RunDefaults = Field(default_factory=RunDefaults)
    services: list[ServiceSpec] = Field(default_factory=list)
    connectors: list[ConnectorConfig] = Field(default_factory=list)
    files: list[FileAsset] = Field(default_factory=list)
    base_dir: Path = Field(default=Path("."), exclude=True)

    @model_validator(mode="after")
    def _check_references(self) -> PipelineConfig:
        names = [s.name for s in self.services]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate service names: {duplicates}")

        known = set(names)
        for svc in self.services:
            missing = [d for d in svc.depends_on if d not in known]
            if missing:
                raise ValueError(f"service {svc.name!r} depends on unknown services: {missing}")

        connector_names = [c.name for c in self.connectors]
        duplicates = sorted({n for n in connector_names if connector_names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate connector names: {duplicates}")
        for conn in self.connectors:
            missing = [d for d in conn.depends_on if d not in known]
            if missing:
                raise ValueError(f"connector {conn.name!r} depends on unknown services: {missing}")
        return self

    def service(self, name: str) -> ServiceSpec:
        for svc in self.services:
            if svc.name == name:
                return svc
        raise KeyError(name)


class RunSettings(BaseModel):
    """Per-invocation settings layered over the file's ``defaults``.

    Override precedence: kwargs (CLI flags) > PIPESPINE_* env vars > file
    defaults.
    """

    timeout: float | None = Field(default=None, gt=0, description="Default startup timeout")
    poll_interval: float | None = Field(default=None, gt=0)
    concurrency: int | None = Field(default=None, ge=1)
    dry_run: bool = False
    run_id: str = Field(default="", description="Unique run identifier (auto-generated)")

    @model_validator(mode="after")
    def _set_defaults(self) -> RunSettings:
        if not self.run_id:
            self.run_id = uuid.uuid4().hex[:12]
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> RunSettings:
        """Create settings from PIPESPINE_* environment variables."""
        env_map = {
            "timeout": "PIPESPINE_TIMEOUT",
            "poll_interval": "PIPESPINE_POLL_INTERVAL",
            "concurrency": "PIPESPINE_CONCURRENCY",
            "dry_run": "PIPESPINE_DRY_RUN",
        }
        values: dict[str, Any] = {}
        for field_name, env_var in env_map.items():
            env_val = os.environ.get(env_var)
            if env_val is None or env_val == "":
                continue
            try:
                if field_name in ("timeout", "poll_interval"):
                    values[field_name] = float(env_val)
                elif field_name == "concurrency":
                    values[field_name] = int(env_val)
                else:
                    values[field_name] = env_val.lower() in ("true", "1", "yes")
            except ValueError as exc:
                raise ConfigurationError(f"{env_var}={env_val!r} is not a valid value") from exc
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(_format_validation_error(exc)) from exc


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def interpolate_env(value: Any, environ: dict[str, str] | None = None) -> Any:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in every string of a YAML tree."""
    env = os.environ if environ is None else environ

    if isinstance(value, dict):
        return {k: interpolate_env(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_env(v, env) for v in value]
    if not isinstance(value, str):
        return value

    def _replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        if name in env:
            return env[name]
        if default is not None:
            return default
        raise ConfigurationError(f"environment variable {name} is not set")

    return _ENV_PATTERN.sub(_replace, value)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "invalid configuration: " + "; ".join(parts)


def parse_config(
    data: Any,
    base_dir: Path | None = None,
    environ: dict[str, str] | None = None,
) -> PipelineConfig:
    """Validate a raw mapping (already parsed from YAML) into a PipelineConfig."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("configuration root must be a mapping")
    data = interpolate_env(data, environ)
    try:
        config = PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc
    if base_dir is not None:
        config.base_dir = base_dir
    return config


def load_config(path: str | Path, environ: dict[str, str] | None = None) -> PipelineConfig:
    """Load and validate a pipeline configuration file.

    Raises:
        ConfigurationError: The file is missing, is not valid YAML, or does
            not describe a valid pipeline.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"cannot read configuration {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {path}: {exc}") from exc
    return parse_config(data, base_dir=path.resolve().parent, environ=environ)


def resolve_timeouts(
    config: PipelineConfig,
    settings: RunSettings | None = None,
) -> dict[str, float]:
    """Resolve each service's startup timeout.

    The service's own ``startup_timeout`` wins, then the run-level default
    (``settings.timeout``, then ``config.defaults.startup_timeout``).

    Raises:
        ConfigurationError: A service has no resolvable timeout.
    """
    default = settings.timeout if settings and settings.timeout else config.defaults.startup_timeout
    timeouts: dict[str, float] = {}
    missing = []
    for svc in config.services:
        timeout = svc.startup_timeout or default
        if timeout is None:
            missing.append(svc.name)
        else:
            timeouts[svc.name] = timeout
    if missing:
        raise ConfigurationError(
            f"no startup timeout for services {missing}: set startup_timeout on the "
            "service, defaults.startup_timeout, or pass --timeout"
        )
    return timeouts
