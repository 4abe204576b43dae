"""
Tests for the process logging configuration.
"""
from event_atlas.core import logging_config
from event_atlas.core.config import settings
from event_atlas.core.logging_config import build_logging_config, configure_logging


def test_line_format_names_the_process_role():
    config = build_logging_config("INFO", "worker")

    line_format = config["formatters"]["event_atlas"]["format"]
    assert "worker[%(process)d]" in line_format
    assert config["loggers"]["event_atlas"] == {"level": "INFO"}
    assert config["loggers"]["botocore"] == {"level": "WARNING"}
    assert config["loggers"]["sqlalchemy.engine"] == {"level": "WARNING"}


def test_sql_statements_are_logged_only_when_enabled():
    assert build_logging_config("DEBUG", "api", log_sql=True)["loggers"]["sqlalchemy.engine"] == {"level": "INFO"}


def test_configure_logging_runs_once_unless_forced(monkeypatch):
    applied = []
    monkeypatch.setattr(logging_config, "dictConfig", applied.append)
    monkeypatch.setattr(logging_config, "_configured_role", None)
    monkeypatch.setattr(settings, "log_sql", False)

    configure_logging("debug", role="api")
    configure_logging("info", role="worker")
    configure_logging("info", role="worker", force=True)

    assert [config["root"]["level"] for config in applied] == ["DEBUG", "INFO"]
    assert "worker[" in applied[-1]["formatters"]["event_atlas"]["format"]
    assert logging_config._configured_role == "worker"
