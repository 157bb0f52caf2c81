"""Tests for ConnectorRegistrar against an in-memory Kafka Connect (httpx.MockTransport)."""

from __future__ import annotations

import threading

import httpx
import pytest

from conftest import KafkaConnectStub
from pipespine.core.errors import ConfigurationError
from pipespine.deploy.config import ConnectorConfig
from pipespine.deploy.connectors import ConnectorRegistrar, config_value, diff_config
from pipespine.deploy.results import RegistrationOutcome
from pipespine.execution.retry import ExponentialBackoff

ENDPOINT = "http://connect.test:8083"


def _connector(**config) -> ConnectorConfig:
    return ConnectorConfig(
        name="postgres-connector",
        endpoint=ENDPOINT,
        config={
            "connector.class": "io.debezium.connector.postgresql.PostgresConnector",
            "database.hostname": "postgres",
            "database.port": 5432,
            **config,
        },
    )


class TestIdempotency:
    def test_registers_new_connector(self):
        stub = KafkaConnectStub()
        result = stub.registrar().register_connector(_connector())

        assert result.outcome == RegistrationOutcome.REGISTERED
        assert result.succeeded
        assert result.attempts == 1
        assert stub.connectors["postgres-connector"]["database.port"] == "5432"

    def test_second_identical_registration_is_already_registered(self):
        stub = KafkaConnectStub()
        registrar = stub.registrar()
        registrar.register_connector(_connector())

        result = registrar.register_connector(_connector())

        assert result.outcome == RegistrationOutcome.ALREADY_REGISTERED
        assert result.succeeded
        assert ("GET", "/connectors/postgres-connector/config") in stub.requests

    def test_different_config_is_conflict_and_not_overwritten(self):
        stub = KafkaConnectStub()
        registrar = stub.registrar()
        registrar.register_connector(_connector())

        result = registrar.register_connector(_connector(**{"database.port": 5433, "slot.name": "x"}))

        assert result.outcome == RegistrationOutcome.CONFIG_CONFLICT
        assert not result.succeeded
        assert result.conflicting_keys == ("database.port", "slot.name")
        assert stub.connectors["postgres-connector"]["database.port"] == "5432"
        assert not any(method == "PUT" for method, _ in stub.requests)

    def test_endpoint_argument_overrides_config(self):
        stub = KafkaConnectStub()
        registrar = stub.registrar()
        registrar.register_connector(_connector(), endpoint="http://other.test:8083/")
        assert stub.connectors

    def test_rebalance_409_then_404_is_retried(self):
        stub = KafkaConnectStub(fail_first=1, fail_with=409)
        result = stub.registrar().register_connector(_connector())

        # 409 on POST, 404 on config lookup (rebalance), then a clean POST.
        assert result.outcome == RegistrationOutcome.REGISTERED
        assert result.attempts == 2


class TestRetries:
    def test_transient_5xx_retried_then_succeeds(self):
        stub = KafkaConnectStub(fail_first=2, fail_with=503)
        result = stub.registrar().register_connector(_connector())

        assert result.outcome == RegistrationOutcome.REGISTERED
        assert result.attempts == 3

    def test_connection_refused_retried(self):
        stub = KafkaConnectStub(fail_first=1, fail_with=httpx.ConnectError)
        result = stub.registrar().register_connector(_connector())

        assert result.outcome == RegistrationOutcome.REGISTERED
        assert result.attempts == 2

    def test_gives_up_after_five_attempts(self):
        stub = KafkaConnectStub(fail_first=100, fail_with=503)
        result = stub.registrar().register_connector(_connector())

        assert result.outcome == RegistrationOutcome.FAILED
        assert result.attempts == 5
        assert len(stub.requests) == 5
        assert "gave up after 5 attempts" in result.error

    def test_client_error_fails_immediately(self):
        stub = KafkaConnectStub(fail_first=1, fail_with=400)
        result = stub.registrar().register_connector(_connector())

        assert result.outcome == RegistrationOutcome.FAILED
        assert result.attempts == 1
        assert "HTTP 400" in result.error
        assert "boom" in result.error

    def test_cancelled_during_backoff(self):
        event = threading.Event()
        stub = KafkaConnectStub(fail_first=100, fail_with=503)
        registrar = stub.registrar(
            strategy=ExponentialBackoff(max_attempts=5, base_delay=60.0), cancel_event=event
        )
        threading.Timer(0.05, event.set).start()

        result = registrar.register_connector(_connector())

        assert result.outcome == RegistrationOutcome.CANCELLED
        assert result.attempts == 1


class TestConfigurationErrors:
    def test_malformed_endpoint(self):
        stub = KafkaConnectStub()
        with pytest.raises(ConfigurationError):
            stub.registrar().register_connector(_connector(), endpoint="ftp://connect.test")
        assert stub.requests == []

    def test_unsupported_protocol_from_transport(self):
        def handler(request):
            raise httpx.UnsupportedProtocol("nope", request=request)

        registrar = ConnectorRegistrar(client=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(ConfigurationError):
            registrar.register_connector(_connector())


class TestComparison:
    def test_values_compared_as_strings(self):
        assert diff_config({"port": 5432, "snapshot": True}, {"port": "5432", "snapshot": "true"}) == []

    def test_name_key_ignored(self):
        assert diff_config({"a": "1"}, {"a": "1", "name": "postgres-connector"}) == []

    def test_missing_and_extra_keys_differ(self):
        assert diff_config({"a": "1", "b": "2"}, {"a": "1", "c": "3"}) == ["b", "c"]

    @pytest.mark.parametrize(
        "value, expected", [(True, "true"), (False, "false"), (None, ""), (5432, "5432"), ("x", "x")]
    )
    def test_config_value(self, value, expected):
        assert config_value(value) == expected


class TestUnexpectedResponses:
    @pytest.mark.parametrize("payload", [["not", "a", "mapping"], None, "config"])
    def test_non_object_config_is_failed_not_raised(self, payload):
        calls = []

        def handler(request):
            calls.append(request.method)
            if request.method == "POST":
                return httpx.Response(409, json={"error_code": 409, "message": "exists"})
            return httpx.Response(200, json=payload)

        registrar = ConnectorRegistrar(
            client=httpx.Client(transport=httpx.MockTransport(handler)),
            strategy=ExponentialBackoff(max_attempts=5, base_delay=0.0),
        )
        result = registrar.register_connector(_connector())

        assert result.outcome == RegistrationOutcome.FAILED
        assert result.attempts == 1
        assert "unexpected config payload" in result.error
        assert calls == ["POST", "GET"]
