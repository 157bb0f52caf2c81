"""Tests for StatusReporter and the RunReport model."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import make_service
from pipespine.deploy.config import ConnectorConfig
from pipespine.deploy.reporter import StatusReporter, write_report
from pipespine.deploy.results import (
    HealthState,
    HealthStatus,
    RegistrationOutcome,
    RegistrationResult,
    utcnow,
)


def _status(name, state, error=None, polls=1):
    return HealthStatus(service=name, state=state, last_error=error, polls=polls)


def _registered(name, outcome=RegistrationOutcome.REGISTERED, error=None):
    return RegistrationResult(connector=name, outcome=outcome, attempts=1, error=error)


@pytest.fixture
def reporter():
    return StatusReporter(
        services=[
            make_service("postgres"),
            make_service("connect", ["postgres"]),
            make_service("minio", required=False),
        ],
        connectors=[
            ConnectorConfig(name="pg", endpoint="http://connect:8083"),
            ConnectorConfig(name="audit", endpoint="http://connect:8083", required=False),
        ],
    )


class TestBuildReport:
    def test_all_healthy_is_success(self, reporter):
        report = reporter.build_report(
            {
                "postgres": _status("postgres", HealthState.HEALTHY, polls=2),
                "connect": _status("connect", HealthState.HEALTHY),
            },
            [_registered("pg")],
            run_id="r1",
        )
        assert report.success is True
        assert report.exit_code == 0
        assert [s.name for s in report.services] == ["postgres", "connect"]
        assert report.services[0].polls == 2
        assert report.failures == []
        assert report.summary == "2/2 services healthy, 1/1 connectors registered"

    def test_already_registered_counts_as_success(self, reporter):
        report = reporter.build_report(
            {"postgres": _status("postgres", HealthState.HEALTHY)},
            [_registered("pg", RegistrationOutcome.ALREADY_REGISTERED)],
        )
        assert report.success is True

    def test_required_service_failure(self, reporter):
        report = reporter.build_report(
            {
                "postgres": _status("postgres", HealthState.TIMED_OUT, "not healthy after 60s"),
                "connect": _status("connect", HealthState.FAILED, "dependency unmet: postgres", 0),
            },
            [],
        )
        assert report.success is False
        assert report.exit_code == 1
        assert report.services[1].cause == "dependency unmet: postgres"
        assert report.failures == [
            "service postgres: TIMED_OUT (not healthy after 60s)",
            "service connect: FAILED (dependency unmet: postgres)",
        ]

    def test_optional_failures_do_not_fail_run(self, reporter):
        report = reporter.build_report(
            {
                "postgres": _status("postgres", HealthState.HEALTHY),
                "minio": _status("minio", HealthState.FAILED, "exit 1"),
            },
            [
                _registered("pg"),
                _registered("audit", RegistrationOutcome.CONFIG_CONFLICT, "differs"),
            ],
        )
        assert report.success is True
        assert report.services[1].required is False
        assert report.connectors[1].cause == "differs"
        assert len(report.failures) == 2

    def test_connector_failure(self, reporter):
        report = reporter.build_report(
            {"postgres": _status("postgres", HealthState.HEALTHY)},
            [_registered("pg", RegistrationOutcome.SKIPPED, "dependency not healthy: connect")],
        )
        assert report.success is False
        assert report.connectors[0].outcome == RegistrationOutcome.SKIPPED

    def test_cancelled_run(self, reporter):
        report = reporter.build_report(
            {"postgres": _status("postgres", HealthState.CANCELLED, "cancelled")},
            [],
            cancelled=True,
        )
        assert report.success is False
        assert report.exit_code == 2
        assert report.summary.endswith("(cancelled)")

    def test_dry_run(self, reporter):
        report = reporter.build_report(
            {"postgres": HealthStatus(service="postgres")},
            [],
            dry_run=True,
            plan=[["postgres"], ["connect"]],
        )
        assert report.success is True
        assert report.exit_code == 0
        assert report.plan == (("postgres",), ("connect",))
        assert report.failures == []

    def test_duration(self, reporter):
        started = utcnow()
        report = reporter.build_report(
            {}, [], started_at=started, completed_at=started + timedelta(seconds=12.5)
        )
        assert report.duration_seconds == 12.5

    def test_unknown_service_counts_as_required(self):
        report = StatusReporter().build_report({"x": _status("x", HealthState.FAILED, "boom")}, [])
        assert report.services[0].required is True
        assert report.success is False

    def test_service_url_carried(self):
        spec = make_service("connect").model_copy(update={"url": "http://localhost:8083"})
        report = StatusReporter([spec]).build_report(
            {"connect": _status("connect", HealthState.HEALTHY)}, []
        )
        assert report.services[0].url == "http://localhost:8083"

    def test_report_is_frozen(self, reporter):
        report = reporter.build_report({}, [])
        with pytest.raises(ValidationError):
            report.success = False


class TestWriteReport:
    def test_writes_json(self, reporter, tmp_path):
        report = reporter.build_report(
            {"postgres": _status("postgres", HealthState.HEALTHY)}, [_registered("pg")], run_id="r42"
        )
        path = write_report(report, tmp_path / "out" / "report.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["run_id"] == "r42"
        assert data["success"] is True
        assert data["services"][0]["state"] == "HEALTHY"
        assert data["connectors"][0]["outcome"] == "REGISTERED"


class TestHealthStatus:
    def test_transition_returns_new_instance(self):
        pending = HealthStatus(service="kafka")
        starting = pending.transition(HealthState.STARTING)

        assert pending.state == HealthState.PENDING
        assert starting.state == HealthState.STARTING
        assert starting.last_checked is not None

    def test_terminal_states(self):
        assert not HealthState.PENDING.is_terminal
        assert not HealthState.STARTING.is_terminal
        for state in (
            HealthState.HEALTHY,
            HealthState.FAILED,
            HealthState.TIMED_OUT,
            HealthState.CANCELLED,
        ):
            assert state.is_terminal
