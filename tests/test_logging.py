"""Tests for logging setup and per-thread context fields."""

import json
import logging
import threading

import pytest

from workflow_automation.core.logging import clear_logging_context, get_logger, logging_context, setup_logging


@pytest.fixture
def log_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level

    path = tmp_path / "logs" / "engine.log"
    setup_logging(level="DEBUG", log_file=str(path), structured=True)
    added = [handler for handler in root.handlers if handler not in saved_handlers]
    yield path

    for handler in added:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(saved_level)
    clear_logging_context()


def read_entries(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_structured_lines_carry_context(log_file):
    logger = get_logger("workflow_automation.tests")

    with logging_context(execution_id="exec-1", workflow_id="wf-1"):
        logger.info("node started")
    logger.info("outside")

    inside, outside = read_entries(log_file)[-2:]
    assert inside["message"] == "node started"
    assert inside["level"] == "INFO"
    assert inside["execution_id"] == "exec-1"
    assert inside["workflow_id"] == "wf-1"
    assert "execution_id" not in outside


def test_nested_context_restores_outer_fields(log_file):
    logger = get_logger("workflow_automation.tests")

    with logging_context(request_id="req-1"):
        with logging_context(execution_id="exec-2"):
            logger.info("inner")
        logger.info("outer")

    inner, outer = read_entries(log_file)[-2:]
    assert inner["request_id"] == "req-1" and inner["execution_id"] == "exec-2"
    assert outer["request_id"] == "req-1"
    assert "execution_id" not in outer


def test_context_is_per_thread(log_file):
    logger = get_logger("workflow_automation.tests")

    def worker():
        logger.info("from worker")

    with logging_context(execution_id="exec-main"):
        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()

    entry = next(e for e in read_entries(log_file) if e["message"] == "from worker")
    assert "execution_id" not in entry


def test_exception_details_are_recorded(log_file):
    logger = get_logger("workflow_automation.tests")

    try:
        raise ValueError("bad node")
    except ValueError:
        logger.error("node failed", exc_info=True)

    entry = read_entries(log_file)[-1]
    assert entry["exception"]["type"] == "ValueError"
    assert entry["exception"]["message"] == "bad node"
