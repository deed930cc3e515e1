"""Structured logging for the agent service.

structlog renders JSON in production and ConsoleRenderer in dev; the stdlib
bridge routes uvicorn, FastAPI, anthropic and aiosqlite records through the
same chain. The engine binds ``session_id`` and ``workspace_id`` as context
variables for the length of a turn, so tool and store lines logged during it
carry them without passing them around.

Tool errors and SQL text can be arbitrarily long and may echo credentials,
so two processors run before rendering: values under credential-like keys
are masked and long strings are clipped.
"""

import logging
import logging.config

import structlog

DEFAULT_MAX_VALUE_CHARS = 2000
REDACTED = "[redacted]"

# Substrings of event keys whose values never reach the log
SENSITIVE_KEY_PARTS = ("api_key", "authorization", "password", "secret", "access_token", "auth_token")


def redact_sensitive_values(logger, method, event_dict):
    """Mask values whose key looks like a credential (``anthropic_api_key``, ``auth_token``...)."""
    for key in event_dict:
        lowered = key.lower()
        if any(part in lowered for part in SENSITIVE_KEY_PARTS):
            event_dict[key] = REDACTED
    return event_dict


def truncate_long_values(max_chars: int = DEFAULT_MAX_VALUE_CHARS):
    """Processor factory clipping string values longer than ``max_chars``."""

    def processor(logger, method, event_dict):
        for key, value in event_dict.items():
            if key != "event" and isinstance(value, str) and len(value) > max_chars:
                event_dict[key] = f"{value[:max_chars]}... [{len(value) - max_chars} chars truncated]"
        return event_dict

    return processor


def configure_structlog(
    log_level: str = "INFO",
    json_logs: bool = True,
    max_value_chars: int = DEFAULT_MAX_VALUE_CHARS,
) -> None:
    """Configure structlog and route stdlib logging through it.

    Must run before the rest of the package is imported: structlog caches
    the processor chain on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: True for JSON output (production), False for ConsoleRenderer (dev)
        max_value_chars: Longest string value kept intact in a log entry
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        redact_sensitive_values,
        truncate_long_values(max_value_chars),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
            "anthropic": {"level": "WARNING"},
            "aiosqlite": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
