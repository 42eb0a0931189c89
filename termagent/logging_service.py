"""Logging collaborator with correlation ids and a SECURITY level.

The correlation id lives in a ContextVar and is stamped onto every record by
CorrelationIdFilter, so log lines from adapters, the run client and tools can
be tied back to one stream attempt.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Any

from termagent.config import Settings

SECURITY = 25
logging.addLevelName(SECURITY, "SECURITY")

_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s [%(correlation_id)s] %(message)s"
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "security": SECURITY,
}

_correlation_id: ContextVar[str | None] = ContextVar("termagent_correlation_id", default=None)


class CorrelationIdFilter(logging.Filter):
    """Adds ``record.correlation_id`` ("-" when none is set)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or "-"
        return True


class LoggingService:
    """Thin wrapper over a stdlib logger with structured metadata."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("termagent")

    def debug(self, message: str, **meta: Any) -> None:
        self._log(logging.DEBUG, message, meta)

    def info(self, message: str, **meta: Any) -> None:
        self._log(logging.INFO, message, meta)

    def warn(self, message: str, **meta: Any) -> None:
        self._log(logging.WARNING, message, meta)

    def error(self, message: str, **meta: Any) -> None:
        self._log(logging.ERROR, message, meta)

    def security(self, message: str, **meta: Any) -> None:
        self._log(SECURITY, message, meta)

    def set_correlation_id(self, correlation_id: str | None) -> None:
        _correlation_id.set(correlation_id)

    def get_correlation_id(self) -> str | None:
        return _correlation_id.get()

    def clear_correlation_id(self) -> None:
        _correlation_id.set(None)

    def _log(self, level: int, message: str, meta: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        # Logging must never break the caller
        try:
            if meta:
                self._logger.log(level, "%s %s", message, json.dumps(meta, default=str))
            else:
                self._logger.log(level, "%s", message)
        except (TypeError, ValueError):
            self._logger.log(level, "%s %r", message, meta)


def configure_logging(settings: Settings) -> None:
    """Install handlers on the ``termagent`` logger tree.

    Logs go to a daily-rotated file under ``logging.log_dir`` (14 files
    kept) and, if ``logging.console`` is set, to stderr.  Console output
    is off by default so log lines do not interleave with the chat.
    """
    root = logging.getLogger("termagent")
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if settings.logging.disable_logging:
        root.addHandler(logging.NullHandler())
        root.propagate = False
        return

    root.setLevel(_LEVELS.get(settings.logging.log_level, logging.INFO))
    formatter = logging.Formatter(_LOG_FORMAT)
    correlation = CorrelationIdFilter()

    handlers: list[logging.Handler] = []
    if settings.logging.log_dir:
        log_dir = Path(settings.logging.log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                log_dir / "termagent.log", when="midnight", backupCount=14, encoding="utf-8"
            )
        )
    if settings.logging.console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if not handlers:
        handlers.append(logging.NullHandler())

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(correlation)
        root.addHandler(handler)
    root.propagate = False
