import json
import logging

from golaris.logsetup import LOGGER_NAME, set_log_level


def test_set_valid_log_level():
    result = set_log_level("debug")
    assert result == logging.DEBUG
    assert logging.getLogger(LOGGER_NAME).level == logging.DEBUG


def test_set_invalid_log_level():
    result = set_log_level("invalid")
    assert result == logging.INFO
    assert logging.getLogger(LOGGER_NAME).level == logging.INFO


def test_level_name_is_case_insensitive():
    assert set_log_level("ERROR") == logging.ERROR


def test_replaces_previous_handlers():
    assert set_log_level("info") == logging.INFO
    assert set_log_level("warn") == logging.WARNING
    logger = logging.getLogger(LOGGER_NAME)
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING


def test_info_level_writes_json_lines(capsys):
    set_log_level("info")
    logging.getLogger(LOGGER_NAME).info("hello %s", "world")
    line = capsys.readouterr().out.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["level"] == "info"
    assert payload["message"] == "hello world"
    assert "T" in payload["time"]


def test_debug_level_writes_console_format(capsys):
    set_log_level("debug")
    logging.getLogger(LOGGER_NAME).debug("detail")
    line = capsys.readouterr().out.strip().splitlines()[-1]
    assert line.endswith("DBG detail")


def test_messages_below_level_are_dropped(capsys):
    set_log_level("error")
    logging.getLogger(LOGGER_NAME).info("hidden")
    assert "hidden" not in capsys.readouterr().out