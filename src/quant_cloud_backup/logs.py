from __future__ import annotations

from datetime import UTC, datetime
import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SENSITIVE_KEYS = ("api_key", "apikey", "authorization", "bearer", "token", "secret", "password")


def add_timestamp(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = datetime.now(tz=UTC).replace(microsecond=0).isoformat()
    return event_dict


def redact_sensitive_values(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
    def redact(key: str, value: Any) -> Any:
        if isinstance(value, dict):
            return {inner_key: redact(str(inner_key), inner_value) for inner_key, inner_value in value.items()}
        if isinstance(value, str) and any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            return "***REDACTED***"
        return value

    for key in list(event_dict.keys()):
        event_dict[key] = redact(key, event_dict[key])
    return event_dict


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_timestamp,
        redact_sensitive_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
