"""
Tests for pipespine.core.logging.

Tests verify:
- JSON output carries ECS field names and bound context
- DEBUG logs are suppressed at INFO level
- LogContext binds and unbinds run_id
"""

import json

import structlog

from pipespine.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
)


def _json_lines(text):
    return [json.loads(line) for line in text.splitlines() if line.strip()]


class TestConfigureLogging:
    """configure_logging output format."""

    def test_json_output_uses_ecs_names(self, capsys):
        configure_logging(level="INFO", json_format=True, service="pipespine-test")
        get_logger("tests.logging").info("sequencer.service_started", service="kafka")

        [record] = _json_lines(capsys.readouterr().err)
        assert record["event"] == "sequencer.service_started"
        assert record["service"] == "kafka"
        assert record["log.level"] == "info"
        assert record["service.name"] == "pipespine-test"
        assert record["logger"] == "tests.logging"
        assert "@timestamp" in record

    def test_debug_suppressed_at_info(self, capsys):
        configure_logging(level="INFO", json_format=True)
        logger = get_logger("tests.logging")
        logger.debug("health.poll_failed")
        logger.info("health.healthy")

        events = [r["event"] for r in _json_lines(capsys.readouterr().err)]
        assert events == ["health.healthy"]

    def test_module_level_logger_follows_later_configuration(self, capsys):
        early = get_logger("pipespine.deploy.health")
        configure_logging(level="WARNING", json_format=True)
        early.info("health.healthy")
        early.warning("health.timed_out", service="kafka")

        [record] = _json_lines(capsys.readouterr().err)
        assert record["event"] == "health.timed_out"
        assert record["logger"] == "pipespine.deploy.health"
        assert "logger_name" not in record

    def test_logs_go_to_stderr(self, capsys):
        configure_logging(level="INFO", json_format=True)
        get_logger().warning("orchestrator.cancel_requested")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "orchestrator.cancel_requested" in captured.err


class TestContext:
    """Bound context via structlog contextvars."""

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_log_context_binds_and_unbinds(self):
        with LogContext(run_id="abc123"):
            assert structlog.contextvars.get_contextvars()["run_id"] == "abc123"
        assert "run_id" not in structlog.contextvars.get_contextvars()

    def test_bound_context_appears_in_output(self, capsys):
        configure_logging(level="INFO", json_format=True)
        bind_context(run_id="r-1")
        get_logger("tests.logging").info("orchestrator.phase", phase="INIT")

        [record] = _json_lines(capsys.readouterr().err)
        assert record["run_id"] == "r-1"
        assert record["phase"] == "INIT"
