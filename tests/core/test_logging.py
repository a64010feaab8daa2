"""Tests for structured logging configuration."""

import json

import structlog

from appspine.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
)


class TestConfigureLogging:
    def teardown_method(self):
        clear_context()
        structlog.reset_defaults()

    def test_json_output_has_ecs_fields(self, capsys):
        configure_logging(level="INFO", json_format=True, service="app-spine-test")
        get_logger("t").info("reconcile.started", generation=3)
        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "reconcile.started"
        assert record["generation"] == 3
        assert record["log.level"] == "info"
        assert record["service.name"] == "app-spine-test"
        assert "@timestamp" in record

    def test_level_filtering(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        get_logger("t").info("quiet")
        assert "quiet" not in capsys.readouterr().out

    def test_log_context_binds_and_unbinds(self, capsys):
        configure_logging(level="INFO", json_format=True)
        logger = get_logger("t")
        with LogContext(app="default/web", attempt=2):
            logger.info("inside")
        logger.info("outside")
        lines = [json.loads(x) for x in capsys.readouterr().out.strip().splitlines()]
        inside = next(r for r in lines if r["event"] == "inside")
        outside = next(r for r in lines if r["event"] == "outside")
        assert inside["app"] == "default/web"
        assert inside["attempt"] == 2
        assert "app" not in outside

    def test_bind_context(self, capsys):
        configure_logging(level="INFO", json_format=True)
        bind_context(cluster="prod")
        get_logger("t").info("bound")
        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert record["cluster"] == "prod"
