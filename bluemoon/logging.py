import logging
import logging.config
from threading import Lock
from typing import Any

import structlog
import structlog.contextvars
import structlog.stdlib

from .config import Settings

SERVICE_NAME = "bluemoon-rewards"

_LOGGING_INITIALISED = False
_LOGGING_LOCK = Lock()


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(level.upper())
    if isinstance(resolved, str):
        return logging.INFO
    return int(resolved)


def configure_logging(settings: Settings) -> None:
    """Configure structlog on top of stdlib logging, once per process."""

    global _LOGGING_INITIALISED
    if _LOGGING_INITIALISED:
        return

    with _LOGGING_LOCK:
        if _LOGGING_INITIALISED:
            return

        level = _resolve_level(settings.log_level)
        timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
        shared_processors: list[Any] = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            timestamper,
        ]
        # Rendering happens once, in the stdlib formatter below.
        render_processors: list[Any] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
        if settings.log_json:
            render_processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
        else:
            render_processors.append(structlog.dev.ConsoleRenderer())

        structlog.configure(
            processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "structlog": {
                        "()": structlog.stdlib.ProcessorFormatter,
                        "foreign_pre_chain": shared_processors,
                        "processors": render_processors,
                    }
                },
                "handlers": {
                    "default": {
                        "class": "logging.StreamHandler",
                        "formatter": "structlog",
                        "level": level,
                    }
                },
                "loggers": {
                    "": {
                        "handlers": ["default"],
                        "level": level,
                        "propagate": True,
                    },
                    "uvicorn.access": {
                        "handlers": ["default"],
                        "level": level,
                        "propagate": False,
                    },
                },
            }
        )

        structlog.contextvars.bind_contextvars(service=SERVICE_NAME)
        _LOGGING_INITIALISED = True


def bind_actor(user_id: str) -> None:
    structlog.contextvars.bind_contextvars(actor=user_id)


def clear_actor() -> None:
    structlog.contextvars.unbind_contextvars("actor")
