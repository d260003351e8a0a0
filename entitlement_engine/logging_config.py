"""structlog setup for the entitlement engine.

Every event carries the app name, logger name and level. Request handlers add
request_id, product_id and purchase_token through contextvars. Purchase tokens
are credentials, so any ``purchase_token`` field is shortened before rendering
no matter where it was bound.
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

APP_NAME = "entitlement-engine"

TOKEN_LOG_LENGTH = 20
_ELLIPSIS = "..."

# Fields rendered through short_token() by shorten_purchase_tokens
TOKEN_FIELDS = ("purchase_token", "purchaseToken")


def short_token(token: str) -> str:
    """Shorten a purchase token to its first 20 characters.

    Already shortened tokens are returned unchanged.
    """
    if len(token) <= TOKEN_LOG_LENGTH:
        return token
    if token.endswith(_ELLIPSIS) and len(token) == TOKEN_LOG_LENGTH + len(_ELLIPSIS):
        return token
    return token[:TOKEN_LOG_LENGTH] + _ELLIPSIS


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["app"] = APP_NAME
    return event_dict


def shorten_purchase_tokens(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Shorten purchase tokens bound under any of TOKEN_FIELDS."""
    for field in TOKEN_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str):
            event_dict[field] = short_token(value)
    return event_dict


def is_debug_mode() -> bool:
    return os.getenv("LOG_LEVEL", "INFO").upper() == "DEBUG"


def drop_debug_in_production(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop debug events (per-receipt evaluation traces) unless LOG_LEVEL=DEBUG."""
    if method_name == "debug" and not is_debug_mode():
        raise structlog.DropEvent
    return event_dict


def _renderer(json_format: bool) -> Processor:
    if json_format:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stdout.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    include_timestamp: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines if True, console output otherwise
        include_timestamp: Add a UTC ISO-8601 ``timestamp`` field
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        shorten_purchase_tokens,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
    ]
    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    if level > logging.DEBUG:
        processors.append(drop_debug_in_production)
    processors.extend(
        [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(json_format),
        ]
    )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging_from_env() -> None:
    """Configure logging from LOG_LEVEL and LOG_FORMAT (json or console)."""
    configure_logging(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        json_format=os.getenv("LOG_FORMAT", "json").lower() == "json",
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind values included in every subsequent event of the current context.

    Example:
        bind_context(request_id="abc123", product_id="mindtrainer_pro_monthly")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
