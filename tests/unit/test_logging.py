from __future__ import annotations

import json

from deskpilot.core.telemetry.logging import configure_logging, get_logger


def test_logger_emits_structured_fields(capsys):
    configure_logging("INFO")
    logger = get_logger("test.logger")
    logger.info("session_rekeyed", old_id="a", new_id="b", messages=3)
    line = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert line["event"] == "session_rekeyed"
    assert line["old_id"] == "a"
    assert line["messages"] == 3
    assert line["level"] == "info"
    assert line["component"] == "test.logger"
    assert "timestamp" in line


def test_level_filtering_and_stderr(capsys):
    configure_logging("WARNING", to_stderr=True)
    try:
        logger = get_logger("test.filter")
        logger.info("hidden_event")
        logger.warning("schema_newer_than_supported", current_version=9)
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "hidden_event" not in captured.err
        assert '"schema_newer_than_supported"' in captured.err
    finally:
        configure_logging("INFO")
