"""
Engine Logging
==============

Logging setup for the decision engine command line and host
applications.

- Console output in a pipe-separated text format or one JSON object per line
- Optional rotating log file (gzip-compressed backups)
- Category loggers for filtering: engine.signal, engine.training,
  engine.backtest, engine.system

The SMC analyzer, the RL agent and the backtester log through their
category logger; the remaining modules use ``logging.getLogger(__name__)``.
Handlers are installed here, once, by the application entry point.
"""

import gzip
import json
import logging
import logging.handlers
import os
import shutil
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import pytz

ROOT_CATEGORY = "engine"

TEXT_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class LogCategory(Enum):
    """Log categories for filtering"""
    SIGNAL = "signal"
    TRAINING = "training"
    BACKTEST = "backtest"
    SYSTEM = "system"


class JsonFormatter(logging.Formatter):
    """JSON log formatter"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=pytz.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def _compress_namer(name: str) -> str:
    return name + ".gz"


def _compress_rotator(source: str, dest: str):
    with open(source, 'rb') as f_in:
        with gzip.open(dest, 'wb') as f_out:
            shutil.copyfileobj(f_in, f_out)
    os.remove(source)


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def setup_logging(
    level: Union[int, str] = logging.INFO,
    json_format: bool = False,
    log_file: Optional[str] = None,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    compress_backups: bool = False,
    stream=None,
) -> logging.Logger:
    """
    Configure the root logger

    Args:
        level: Level name or number
        json_format: Emit JSON lines instead of text
        log_file: Optional path of a rotating log file
        max_file_size_mb: Rotation size
        backup_count: Rotated files to keep
        compress_backups: gzip rotated files
        stream: Console stream (stderr by default)

    Returns:
        The configured root logger
    """
    resolved = _resolve_level(level)
    formatter = JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(resolved)
    remove_engine_handlers(root)

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(resolved)
    _install(root, console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(resolved)
        if compress_backups:
            file_handler.namer = _compress_namer
            file_handler.rotator = _compress_rotator
        _install(root, file_handler)

    return root


def _install(logger: logging.Logger, handler: logging.Handler):
    handler._algot_engine = True
    logger.addHandler(handler)


def remove_engine_handlers(logger: Optional[logging.Logger] = None):
    """Detach and close handlers added by ``setup_logging``, leaving others alone"""
    logger = logger or logging.getLogger()
    for handler in list(logger.handlers):
        if getattr(handler, '_algot_engine', False):
            logger.removeHandler(handler)
            handler.close()


def get_category_logger(category: LogCategory) -> logging.Logger:
    """Logger named ``engine.<category>``"""
    return logging.getLogger(f"{ROOT_CATEGORY}.{category.value}")
