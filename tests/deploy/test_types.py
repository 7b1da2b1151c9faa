"""Tests for hostdeploy.deploy.types: severity-tagged results."""

import logging

import pytest

from hostdeploy.deploy.types import DeployError, Severity, StepResult, report


def test_deploy_error_str():
    err = DeployError("proxy", "Nginx configuration test failed")
    assert str(err) == "proxy: Nginx configuration test failed"
    assert err.step == "proxy"


def test_report_logs_warnings_and_continues(caplog):
    caplog.set_level(logging.INFO)
    results = [
        StepResult.ok("health", "frontend health check passed"),
        StepResult.warning("health", "backend health check failed"),
        StepResult.skipped("certificates"),
    ]
    assert report(results) == results
    assert "frontend health check passed" in caplog.text
    assert any(r.levelno == logging.WARNING and "backend" in r.message for r in caplog.records)


def test_report_raises_on_fatal():
    with pytest.raises(DeployError) as exc:
        report([StepResult.ok("x"), StepResult.fatal("repositories", "missing SchoolBase-FE")])
    assert exc.value.step == "repositories"


def test_severity_constructors():
    assert StepResult.fatal("a", "b").severity is Severity.FATAL
    assert StepResult.warning("a", "b").severity is Severity.WARNING
    assert StepResult.skipped("a").severity is Severity.SKIPPED
