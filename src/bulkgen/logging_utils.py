"""Logging setup for the orchestrator: coloured console plus a rotating run log."""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping

LOGGER_NAME = "bulkgen"
LOG_FILENAME = "bulkgen.log"

# attributes LoggingObserver attaches through ``extra=``
TASK_FIELDS = ("task_id", "item_id", "phase", "field", "sub_key", "status")

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


class ConsoleFormatter(logging.Formatter):
    """Colours the level name only, and only when stderr is a terminal."""

    def __init__(self, *, use_color: bool) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
        self.use_color = use_color and sys.stderr.isatty()

    def formatMessage(self, record: logging.LogRecord) -> str:  # pragma: no cover - tty only
        if not self.use_color or record.levelno not in _LEVEL_COLORS:
            return super().formatMessage(record)
        original = record.levelname
        record.levelname = f"{_LEVEL_COLORS[record.levelno]}{original}{_RESET}"
        try:
            return super().formatMessage(record)
        finally:
            record.levelname = original


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line, carrying task context when the record has it."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in TASK_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(config: Mapping[str, object]) -> logging.Logger:
    """Attach console and (optionally) file handlers to the ``bulkgen`` logger.

    Recognised keys: ``console_level``, ``file_level``, ``json_logs``,
    ``color`` and ``log_dir``. Calling it again replaces earlier handlers.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(_coerce_level(config.get("console_level")))
    console.setFormatter(ConsoleFormatter(use_color=bool(config.get("color", True))))
    logger.addHandler(console)

    log_dir = config.get("log_dir")
    if log_dir:
        logger.addHandler(
            _file_handler(
                Path(str(log_dir)),
                level=_coerce_level(config.get("file_level"), default=logging.DEBUG),
                json_logs=bool(config.get("json_logs")),
            )
        )

    # keep httpx request lines out of the run log
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger


def _file_handler(directory: Path, *, level: int, json_logs: bool) -> logging.Handler:
    directory.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        directory / LOG_FILENAME,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)
    if json_logs:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    return handler


def _coerce_level(level: object, default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        value = logging.getLevelName(level.strip().upper())
        if isinstance(value, int):
            return value
    return default


__all__ = ["LOGGER_NAME", "JsonLineFormatter", "configure_logging"]
