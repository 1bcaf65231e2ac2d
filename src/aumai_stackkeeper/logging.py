"""Logging configuration for aumai-stackkeeper."""

from __future__ import annotations

import logging
import sys

import structlog

from .config import Settings

SUMMARY_LOGGER = "aumai_stackkeeper.summary"


def setup_logging(settings: Settings) -> None:
    """Configure structured logging to stdout and the appended run log."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    file_handler: logging.Handler | None = None
    try:
        file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        handlers.append(file_handler)
    except OSError as exc:
        print(f"[WARN] log file {settings.log_file} not writable: {exc}", file=sys.stderr)

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # The rendered summary is echoed to the console by the CLI; keep it file-only
    summary = logging.getLogger(SUMMARY_LOGGER)
    summary.handlers = [file_handler] if file_handler is not None else [logging.NullHandler()]
    summary.setLevel(logging.INFO)
    summary.propagate = False

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            (
                structlog.processors.JSONRenderer()
                if settings.log_json
                else structlog.dev.ConsoleRenderer(colors=False)
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Reduce noise from HTTP and engine clients
    for name in ("httpx", "httpcore", "docker", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)


def summary_logger() -> logging.Logger:
    """Plain logger that appends rendered report lines to the run log."""
    return logging.getLogger(SUMMARY_LOGGER)
