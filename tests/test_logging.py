"""Structured logging configuration tests."""
import json
import logging

import structlog

from tracklink.logging_config import configure_logging


def teardown_function():
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()


def test_json_output(capsys):
    configure_logging("INFO", "json")
    structlog.get_logger("uplink").info("Delivered", persisted_id=7)

    line = capsys.readouterr().out.strip().splitlines()[-1]
    record = json.loads(line)
    assert record["event"] == "Delivered"
    assert record["persisted_id"] == 7
    assert record["level"] == "info"
    assert record["logger"] == "uplink"
    assert "timestamp" in record


def test_level_filter(capsys):
    configure_logging("WARNING", "json")
    log = structlog.get_logger("queue")
    log.info("hidden")
    log.warning("shown")

    out = capsys.readouterr().out
    assert "hidden" not in out
    assert "shown" in out
