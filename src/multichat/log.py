"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

# Event fields whose values must never reach the log output
SECRET_FIELDS = frozenset({"api_key", "encrypted_key", "plaintext", "signature", "stripe_secret_key", "webhook_secret"})


def redact_secrets(logger, method_name: str, event_dict: dict) -> dict:
    for field in SECRET_FIELDS.intersection(event_dict):
        event_dict[field] = "***"
    return event_dict


def setup_logging(level: str = "INFO", log_format: str = "console") -> None:
    """Configure structlog for the process.

    ``log_format`` is ``console`` for the human-readable dev renderer or
    ``json`` for one JSON object per line.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secrets,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info if log_format == "json" else structlog.dev.set_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
