from __future__ import annotations

import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping

from sheetstore.utils.config import get_data_root

LOG_LEVEL_ENV = "SHEETSTORE_LOG_LEVEL"
LOG_DIR_ENV = "SHEETSTORE_LOG_DIR"


def log_directory() -> Path:
    configured = os.getenv(LOG_DIR_ENV)
    return Path(configured).expanduser() if configured else get_data_root() / "logs"


def configure_logging() -> None:
    """Readable lines on stdout, one JSON object per line in ``<log dir>/app.log``."""
    level = getattr(logging, os.getenv(LOG_LEVEL_ENV, "INFO").upper(), logging.INFO)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter())

    destination = log_directory() / "app.log"
    destination.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(destination)
    file_handler.setFormatter(JsonFormatter())

    logging.basicConfig(level=level, handlers=[console_handler, file_handler])


def get_logger(name: str) -> logging.Logger:
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def _encode(event: str, fields: Mapping[str, Any]) -> str:
    return json.dumps({"event": event, **fields}, default=str)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)


def _split_event(message: str) -> tuple[str | None, dict[str, Any]]:
    """Return the event name and fields of a structured message, or ``(None, {})``."""
    try:
        payload = json.loads(message)
    except json.JSONDecodeError:
        return None, {}
    if not isinstance(payload, dict) or "event" not in payload:
        return None, {}
    event = payload.pop("event")
    return str(event), payload


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        event, fields = _split_event(message)
        data: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
            "severity": record.levelname,
        }
        if event is None:
            data["message"] = message
        else:
            data["event"] = event
            data.update(fields)
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        event, fields = _split_event(message)
        line = " | ".join(
            (
                time.strftime("%H:%M:%S", time.localtime(record.created)),
                f"{record.levelname:<8}",
                record.name,
                " ".join([event or message, *(f"{key}={fields[key]}" for key in sorted(fields))]),
            )
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def log_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.info(_encode(event, fields))


def log_warning(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.warning(_encode(event, fields))


@contextmanager
def log_timing(logger: logging.Logger, event: str, **fields: Any) -> Iterator[None]:
    """Wrap a block in ``<event>.start`` and ``<event>.complete`` or ``<event>.error``.

    Errors carrying a ``kind`` are expected domain failures and are logged as
    warnings with their message; anything else is logged with its traceback.
    Both re-raise.
    """
    started = time.perf_counter()
    logger.info(_encode(f"{event}.start", fields))
    try:
        yield
    except Exception as error:
        failure = {
            **fields,
            "elapsed_ms": _elapsed_ms(started),
            "error": type(error).__name__,
        }
        if getattr(error, "kind", None) is not None:
            logger.warning(_encode(f"{event}.error", {**failure, "message": str(error)}))
        else:
            logger.exception(_encode(f"{event}.error", failure))
        raise
    logger.info(_encode(f"{event}.complete", {**fields, "elapsed_ms": _elapsed_ms(started)}))
