"""Tests for structured logging setup."""

from __future__ import annotations

import json

import pytest

from chicon.core.logging import bind_context, configure_logging, get_logger, unbind_context


@pytest.fixture(autouse=True)
def _reset_context():
    yield
    unbind_context("request_id")


class TestLogging:
    def test_json_lines_on_stderr(self, capsys):
        configure_logging(level="INFO", json_format=True)
        get_logger("chicon.test").info("sandbox.started", container="chicon-1")

        captured = capsys.readouterr()
        assert captured.out == ""
        event = json.loads(captured.err.strip().splitlines()[-1])
        assert event["event"] == "sandbox.started"
        assert event["container"] == "chicon-1"
        assert event["service"] == "chicon-runner"
        assert event["level"] == "info"

    def test_request_id_bound(self, capsys):
        configure_logging(level="INFO", json_format=True)
        bind_context(request_id="req-42")
        get_logger("chicon.test").info("execution.finished")

        event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert event["request_id"] == "req-42"

    def test_level_filtering(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        logger = get_logger("chicon.test")
        logger.info("hidden")
        logger.warning("shown")

        lines = capsys.readouterr().err.strip().splitlines()
        assert [json.loads(line)["event"] for line in lines] == ["shown"]

    def test_module_logger_created_before_configuration(self, capsys):
        logger = get_logger("chicon.early")
        configure_logging(level="ERROR", json_format=True)
        logger.warning("filtered")
        assert capsys.readouterr().err == ""

    def test_named_logger_binds(self, capsys):
        configure_logging(level="INFO", json_format=True)
        get_logger("chicon.execution.scheduler").bind(stage="provision").info("stage.entered")

        event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert event["stage"] == "provision"
