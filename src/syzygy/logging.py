"""Structured logging configuration (structlog)."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(level: str = "info", json_file: Path | None = None) -> None:
    """Configure structlog for console output, optionally mirrored to a JSON-lines file.

    Logs go to stderr so command output on stdout stays machine-readable.
    Call once at process startup.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_file is not None:
        processors.append(_JsonFileMirror(json_file))
    processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_json_file_logger(log_path: Path) -> structlog.BoundLogger:
    """Return a structlog logger that writes JSON lines to *log_path*.

    Creates an independent logger backed by a stdlib FileHandler,
    bypassing the global console configuration.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(str(log_path), mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)

    stdlib_logger = logging.getLogger(f"syzygy.json.{log_path}")
    stdlib_logger.handlers = [file_handler]
    stdlib_logger.setLevel(logging.DEBUG)
    stdlib_logger.propagate = False

    return structlog.wrap_logger(
        stdlib_logger,
        processors=[structlog.processors.JSONRenderer()],
    )


class _JsonFileMirror:
    """Processor that copies every event dict to a JSON-lines file logger."""

    def __init__(self, log_path: Path) -> None:
        self._logger = get_json_file_logger(log_path)

    def __call__(
        self, logger: object, method_name: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        _ = logger
        payload = dict(event_dict)
        event = payload.pop("event", "")
        name = method_name if method_name in _LEVELS else "error"
        getattr(self._logger, name)(event, **payload)
        return event_dict
