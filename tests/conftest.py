"""
Shared pytest fixtures for pipespine tests.

This module provides:
- FakeServiceManager: in-process stand-in for ``docker compose``
- HealthServer: scripted ``httpx.MockTransport`` handler for health URLs
- KafkaConnectStub: in-memory Kafka Connect REST API
- Spec factories for services and pipeline configs

Nothing here needs Docker or the network.
"""

from __future__ import annotations

import json
import sys
import threading
from collections import Counter
from pathlib import Path

import httpx
import pytest
import structlog

# Ensure pipespine package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pipespine.core.errors import ServiceStartError  # noqa: E402
from pipespine.core.logging import clear_context  # noqa: E402
from pipespine.deploy.config import HealthCheckSpec, ServiceSpec  # noqa: E402
from pipespine.deploy.connectors import ConnectorRegistrar  # noqa: E402
from pipespine.deploy.services import ServiceManager  # noqa: E402
from pipespine.execution.retry import ExponentialBackoff  # noqa: E402


class FakeServiceManager(ServiceManager):
    """Records start calls; services named in ``fail`` raise ServiceStartError."""

    def __init__(self, fail: tuple[str, ...] = ()):
        self.fail = set(fail)
        self.started: list[str] = []
        self.preflight_calls = 0
        self.stopped = False
        self._lock = threading.Lock()

    def preflight(self) -> None:
        self.preflight_calls += 1

    def start(self, name: str) -> None:
        with self._lock:
            self.started.append(name)
        if name in self.fail:
            raise ServiceStartError(f"{name}: container exited with code 1")

    def stop_all(self) -> None:
        self.stopped = True


class HealthServer:
    """MockTransport handler answering health polls per host.

    ``ready_after[host]`` is the number of failing polls before the host
    answers 200; ``None`` (or a missing host) means it never does.
    """

    def __init__(self, ready_after: dict[str, int | None] | None = None, body: str = "ok"):
        self.ready_after = ready_after or {}
        self.body = body
        self.calls: Counter[str] = Counter()
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        with self._lock:
            self.calls[host] += 1
            count = self.calls[host]
        after = self.ready_after.get(host)
        if after is None or count <= after:
            return httpx.Response(503, text="starting")
        return httpx.Response(200, text=self.body)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


def make_service(
    name: str,
    depends_on: list[str] | None = None,
    health: bool = True,
    timeout: float | None = 1.0,
    required: bool = True,
) -> ServiceSpec:
    """ServiceSpec whose health URL is ``http://<name>.test/health``."""
    return ServiceSpec(
        name=name,
        depends_on=depends_on or [],
        health=HealthCheckSpec(url=f"http://{name}.test/health") if health else None,
        startup_timeout=timeout,
        required=required,
    )


@pytest.fixture(autouse=True)
def _clean_log_context():
    clear_context()
    yield
    clear_context()
    # configure_logging binds the current stderr, which capture replaces per test.
    structlog.reset_defaults()


@pytest.fixture
def fake_manager() -> FakeServiceManager:
    return FakeServiceManager()


@pytest.fixture
def pipeline_yaml(tmp_path: Path) -> Path:
    """Minimal valid pipeline file: postgres -> connect, one connector."""
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        """
project_name: cdc
compose_files: [docker-compose.yml]
defaults:
  startup_timeout: 30
  poll_interval: 0.01
services:
  - name: postgres
    health: {url: "http://postgres.test/health"}
  - name: connect
    depends_on: [postgres]
    health: {url: "http://connect.test/connectors"}
    url: http://localhost:8083
connectors:
  - name: postgres-connector
    endpoint: http://connect.test
    depends_on: [connect]
    config:
      connector.class: io.debezium.connector.postgresql.PostgresConnector
      database.hostname: postgres
      database.port: 5432
""",
        encoding="utf-8",
    )
    return path


class KafkaConnectStub:
    """Just enough of the Kafka Connect REST API.

    ``fail_first`` responses are answered with ``fail_with`` (a status code,
    or an exception class for transport errors) before normal behaviour.
    """

    def __init__(self, fail_first: int = 0, fail_with: int | type[Exception] = 503):
        self.connectors: dict[str, dict[str, str]] = {}
        self.fail_first = fail_first
        self.fail_with = fail_with
        self.requests: list[tuple[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self.fail_first > 0:
            self.fail_first -= 1
            if isinstance(self.fail_with, int):
                return httpx.Response(
                    self.fail_with, json={"error_code": self.fail_with, "message": "boom"}
                )
            raise self.fail_with("connection refused", request=request)

        if request.url.path == "/connectors":
            if request.method == "GET":
                return httpx.Response(200, json=sorted(self.connectors))
            body = json.loads(request.content)
            if body["name"] in self.connectors:
                return httpx.Response(
                    409,
                    json={"error_code": 409, "message": f"Connector {body['name']} already exists"},
                )
            self.connectors[body["name"]] = {**body["config"], "name": body["name"]}
            return httpx.Response(201, json=body)

        parts = request.url.path.strip("/").split("/")
        if request.method == "GET" and len(parts) == 3 and parts[2] == "config":
            existing = self.connectors.get(parts[1])
            if existing is None:
                return httpx.Response(404, json={"error_code": 404, "message": "not found"})
            return httpx.Response(200, json=existing)

        return httpx.Response(404)

    def registrar(self, **kwargs) -> ConnectorRegistrar:
        kwargs.setdefault("strategy", ExponentialBackoff(max_attempts=5, base_delay=0.0))
        return ConnectorRegistrar(client=httpx.Client(transport=httpx.MockTransport(self)), **kwargs)
