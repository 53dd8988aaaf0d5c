import io
import json
import logging
import logging.handlers

import pytest

from logger import LogCategory, get_category_logger, remove_engine_handlers, setup_logging


def test_json_lines_to_stream():
    stream = io.StringIO()
    setup_logging(level="info", json_format=True, stream=stream)
    get_category_logger(LogCategory.BACKTEST).info("Backtest finished")
    get_category_logger(LogCategory.BACKTEST).debug("hidden")

    lines = stream.getvalue().strip().splitlines()
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record['level'] == "INFO"
    assert record['logger'] == "engine.backtest"
    assert record['message'] == "Backtest finished"
    assert record['timestamp'].endswith("+00:00")


def test_text_format():
    stream = io.StringIO()
    setup_logging(level=logging.WARNING, stream=stream)
    logging.getLogger("backtester").warning("drawdown 12%")
    assert "| WARNING  | backtester | drawdown 12%" in stream.getvalue()


def test_exception_is_included():
    stream = io.StringIO()
    setup_logging(json_format=True, stream=stream)
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        logging.getLogger("engine.system").exception("failed")
    record = json.loads(stream.getvalue().strip())
    assert "RuntimeError: boom" in record['exception']


def test_rotating_file_with_compression(tmp_path):
    log_file = tmp_path / "logs" / "engine.log"
    root = setup_logging(log_file=str(log_file), compress_backups=True, stream=io.StringIO())
    logging.getLogger("engine.training").info("Episode 1")

    file_handler = next(h for h in root.handlers if isinstance(h, logging.handlers.RotatingFileHandler))
    file_handler.flush()
    assert "Episode 1" in log_file.read_text()

    file_handler.doRollover()
    assert (tmp_path / "logs" / "engine.log.1.gz").exists()


def test_repeat_setup_replaces_only_own_handlers():
    root = logging.getLogger()
    foreign = logging.NullHandler()
    root.addHandler(foreign)
    try:
        setup_logging(stream=io.StringIO())
        setup_logging(stream=io.StringIO())
        own = [h for h in root.handlers if getattr(h, '_algot_engine', False)]
        assert len(own) == 1
        remove_engine_handlers()
        assert foreign in root.handlers
    finally:
        root.removeHandler(foreign)


def test_unknown_level():
    with pytest.raises(ValueError):
        setup_logging(level="verbose")


def test_category_names():
    assert get_category_logger(LogCategory.SIGNAL).name == "engine.signal"
    assert get_category_logger(LogCategory.SYSTEM).name == "engine.system"
