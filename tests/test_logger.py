import json
import logging

from adnormalizer.logger import JsonFormatter, configure_logging, get_logger


def _record(level, msg, **extra):
    logger = logging.getLogger("adnormalizer.test")
    return logger.makeRecord("adnormalizer.test", level, "file.py", 12, msg, (), None, func="fn", extra=extra)


def test_info_record_has_message_and_attrs():
    entry = json.loads(JsonFormatter().format(_record(logging.INFO, "hello", creativeId="abc")))
    assert entry["level"] == "INFO"
    assert entry["msg"] == "hello"
    assert entry["creativeId"] == "abc"
    assert "source" not in entry


def test_error_record_has_source():
    entry = json.loads(JsonFormatter().format(_record(logging.ERROR, "boom")))
    assert entry["level"] == "ERROR"
    assert entry["source"]["line"] == 12
    assert entry["source"]["function"] == "fn"


def test_warning_is_named_warn():
    entry = json.loads(JsonFormatter().format(_record(logging.WARNING, "careful")))
    assert entry["level"] == "WARN"


def test_configure_logging_levels():
    assert configure_logging("debug").level == logging.DEBUG
    assert configure_logging("WARN").level == logging.WARNING
    assert configure_logging("error").level == logging.ERROR
    assert configure_logging("bogus").level == logging.INFO


def test_configure_logging_reads_environment(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    assert configure_logging().level == logging.DEBUG


def test_configure_logging_does_not_stack_handlers():
    count = len(configure_logging("info").handlers)
    assert len(configure_logging("info").handlers) == count


def test_logging_writes_json_to_stdout(capsys):
    configure_logging("info")
    get_logger("probe").info("hello there", extra={"jobId": "job-1"})
    get_logger("probe").debug("hidden")
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["msg"] == "hello there"
    assert entry["jobId"] == "job-1"


def test_get_logger_names():
    assert get_logger("config").name == "adnormalizer.config"
    assert get_logger().name == "adnormalizer"
    assert get_logger("adnormalizer.api").name == "adnormalizer.api"