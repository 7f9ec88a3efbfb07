"""structlog + stdlib logging configuration."""

from __future__ import annotations

import logging

import structlog

from .config import Settings, get_settings

_LOGGING_CONFIGURED = False


def configure_logging(settings: Settings | None = None) -> None:
    """Initialize structlog and stdlib logging formatting (idempotent)."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    resolved = settings or get_settings()
    level = getattr(logging, resolved.log_level.upper(), logging.INFO)
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if resolved.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    elif resolved.log_rich_enabled:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "catalog_id"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        # Rendered lines go through stdlib logging (stderr), keeping stdout for command output.
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)

    # aiosqlite DEBUG output is per-cursor noise
    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    _LOGGING_CONFIGURED = True


def reset_logging_state() -> None:
    """Test helper so configure_logging can run again with different settings."""
    global _LOGGING_CONFIGURED
    _LOGGING_CONFIGURED = False
    structlog.reset_defaults()
