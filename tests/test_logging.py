"""Tests for console and structured logging setup."""

import json
import logging

import pytest
import structlog

from gjallarhorn import logging as app_log
from gjallarhorn.config import Config


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    app_log.set_console_enabled(True)


def test_configure_writes_json_lines(tmp_home):
    config = Config()
    app_log.configure(config, console=False)

    structlog.get_logger("gjallarhorn.test").info(
        "worker_state_changed", old="launching", new="denied"
    )
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = config.log_path.read_text().splitlines()
    event = json.loads(lines[-1])
    assert event["event"] == "worker_state_changed"
    assert event["new"] == "denied"
    assert event["level"] == "info"
    assert event["source"] == "client"
    assert "ts" in event


def test_configure_respects_level(tmp_home):
    config = Config()
    config.system.log_level = "warning"
    app_log.configure(config, console=False)

    structlog.get_logger("gjallarhorn.test").info("quiet")
    structlog.get_logger("gjallarhorn.test").warning("loud")
    for handler in logging.getLogger().handlers:
        handler.flush()

    events = [json.loads(line)["event"] for line in config.log_path.read_text().splitlines()]
    assert events == ["loud"]


def test_configure_worker_logs_to_stderr(capsys):
    app_log.configure_worker()
    structlog.get_logger("gjallarhorn.test").info("probe_cycle_complete", cycle=1)

    captured = capsys.readouterr()
    assert captured.out == ""
    event = json.loads(captured.err.strip().splitlines()[-1])
    assert event["event"] == "probe_cycle_complete"
    assert event["source"] == "worker"


def test_console_helpers(capsys):
    app_log.worker_error("smartctl not found")
    assert "Worker reported: smartctl not found" in capsys.readouterr().err


def test_console_can_be_silenced(capsys):
    app_log.set_console_enabled(False)
    app_log.worker_denied("dismissed")
    app_log.monitor_started(500, True)
    assert capsys.readouterr().err == ""
