"""Structured logging — structlog for app code, stdlib bridged onto the same output.

Every record carries the request correlation id when one is set. Webhook
bodies and signature headers never reach the log stream: the processor chain
masks them wherever they appear as event keys.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

# Third-party loggers that only speak up at WARNING and above
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "stripe")

# Event keys whose values are replaced before rendering
REDACTED_KEYS = frozenset({"raw_body", "raw_payload", "signature_header", "stripe_signature"})


def add_correlation_id(logger, method, event_dict):
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_secrets(logger, method, event_dict):
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def _shared_processors() -> list:
    """Processors applied to structlog and stdlib records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _renderer(json_logs: bool):
    return structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()


def _stdlib_config(log_level: str, json_logs: bool, pre_chain: list) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    _renderer(json_logs),
                ],
                "foreign_pre_chain": pre_chain,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    }


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the logging pipeline. Call before other app modules create loggers.

    Args:
        log_level: root level for both structlog and stdlib loggers
        json_logs: one JSON object per line; False renders for a terminal
    """
    shared = _shared_processors()
    logging.config.dictConfig(_stdlib_config(log_level, json_logs, shared))

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
