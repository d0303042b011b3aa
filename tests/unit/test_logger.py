"""
Unit tests for logging setup.

Tests:
- JSON lines carry position context
- Plain-text lines append context
- setup_logging handlers and log file creation
"""

import json
import logging

import pytest

from trader_tony.utils.logger import ContextFormatter, JSONFormatter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(**extra):
    record = logging.LogRecord(
        "trader_tony.position.manager", logging.INFO, __file__, 10,
        "Position closed", None, None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context():
    line = JSONFormatter().format(make_record(position_id="pos_1", price=94.0, unrelated="x"))
    data = json.loads(line)

    assert data["message"] == "Position closed"
    assert data["level"] == "INFO"
    assert data["position_id"] == "pos_1"
    assert data["price"] == 94.0
    assert "unrelated" not in data


def test_context_formatter_appends_ids():
    line = ContextFormatter().format(make_record(position_id="pos_1", token_id="MINT"))

    assert line.endswith("Position closed [position_id=pos_1 token_id=MINT]")
    assert "[" not in ContextFormatter().format(make_record())


def test_setup_logging_writes_file(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "engine.log"

    root = setup_logging("debug", log_file=str(log_file), json_format=True)
    logging.getLogger("trader_tony.test").info("hello", extra={"token_id": "MINT"})
    for handler in root.handlers:
        handler.flush()

    assert root.level == logging.DEBUG
    assert len(root.handlers) == 2
    entry = json.loads(log_file.read_text().strip().splitlines()[-1])
    assert entry["message"] == "hello"
    assert entry["token_id"] == "MINT"
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
