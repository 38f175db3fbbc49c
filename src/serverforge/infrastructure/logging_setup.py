"""Central structlog bootstrap."""

from __future__ import annotations

import logging
from typing import Any, MutableMapping

import structlog


_LOG_CONFIGURED = False

_SECRET_KEYS = frozenset({
    "api_key",
    "authorization",
    "service_credential",
    "x-api-key",
})
MASKED_SECRET = "********"


def mask_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credential-bearing keys, including inside nested header dicts."""
    del logger, method_name
    for key, value in list(event_dict.items()):
        if str(key).lower() in _SECRET_KEYS and value:
            event_dict[key] = MASKED_SECRET
        elif isinstance(value, dict):
            event_dict[key] = {
                k: (MASKED_SECRET if str(k).lower() in _SECRET_KEYS and v else v)
                for k, v in value.items()
            }
    return event_dict


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure stdlib logging and structlog once per process."""
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    normalized = str(level or "INFO").upper()
    log_level = getattr(logging, normalized, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        mask_secrets,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _LOG_CONFIGURED = True
