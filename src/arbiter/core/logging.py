"""
structlog configuration for the settlement worker.

Every record goes through the standard library root logger so aiohttp,
httpx and tenacity output ends up in the same stream. Records carry the
service name, an ISO UTC timestamp and the log level; the final renderer
is either JSON lines (for shipping) or the structlog console renderer.
"""
import logging
import sys
from typing import Any, Optional

import structlog

SERVICE_NAME = "arbiter"

# Libraries that log every request at INFO.
_CHATTY_LOGGERS = ("aiohttp.access", "httpx", "httpcore")


def _add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _handlers(level: int, log_file: Optional[str]) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def _renderer(json_output: bool) -> list[structlog.types.Processor]:
    if json_output:
        return [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ]
    return [
        structlog.dev.ConsoleRenderer(
            colors=sys.stdout.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )
    ]


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> structlog.stdlib.BoundLogger:
    """Route structlog through stdlib logging at `level`.

    Args:
        level: Level name; unknown names fall back to INFO.
        json_output: Render JSON lines instead of console output.
        log_file: Also append records to this file.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=_handlers(log_level, log_file),
        force=True,
    )
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *_renderer(json_output),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return get_logger()


def get_logger(name: str = SERVICE_NAME) -> structlog.stdlib.BoundLogger:
    """Logger named under the service ("app" -> "arbiter.app")."""
    if name != SERVICE_NAME and not name.startswith(f"{SERVICE_NAME}."):
        name = f"{SERVICE_NAME}.{name}"
    return structlog.get_logger(name)
