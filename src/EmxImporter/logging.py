# logging.py

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler

import structlog
from sqlalchemy.engine import make_url
from structlog.contextvars import bound_contextvars, merge_contextvars

from EmxImporter.config import Settings

DEFAULT_LOG_PATH = "logs/emx_importer.jsonl"

# Libraries whose records should end up in the importer's JSON stream
_PROPAGATED_LOGGERS = ("sqlalchemy.engine", "alembic", "aiosqlite", "asyncio")


def _level_of(name: str | None, fallback: int) -> int:
    return getattr(logging, (name or "").upper(), fallback)


def _handler_level_name(settings: Settings | None, level_field: str, legacy_flag: str) -> str:
    """Per-handler level: the explicit level wins, else the legacy on/off flag."""
    base = settings.logging_level if settings is not None else "INFO"
    if settings is None:
        return base
    explicit = getattr(settings, level_field, None)
    if explicit:
        return explicit.upper()
    return base if getattr(settings, legacy_flag, True) else "NONE"


def _json_formatter() -> structlog.stdlib.ProcessorFormatter:
    # Renders structlog events and plain stdlib records alike
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=[structlog.processors.add_log_level, merge_contextvars],
    )


def _build_handlers(settings: Settings | None, default_level: int) -> list[logging.Handler]:
    formatter = _json_formatter()
    handlers: list[logging.Handler] = []

    console = _handler_level_name(settings, "logging_console", "logging_to_console")
    if console != "NONE":
        stream = logging.StreamHandler()
        stream.setLevel(_level_of(console, default_level))
        handlers.append(stream)

    to_file = _handler_level_name(settings, "logging_file", "logging_to_file")
    if to_file != "NONE":
        path = settings.logging_file_path if settings is not None else DEFAULT_LOG_PATH
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        rotating = RotatingFileHandler(
            path,
            maxBytes=settings.logging_max_bytes if settings is not None else 5_000_000,
            backupCount=settings.logging_backup_count if settings is not None else 5,
        )
        rotating.setLevel(_level_of(to_file, default_level))
        handlers.append(rotating)

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(settings: Settings | None = None) -> None:
    """Initialize structlog + stdlib logging for an import run.

    Events are JSON lines on the console and/or a rotating file, each with
    its own level from the [logging] config. With ``logging_enabled`` off
    only warnings and above are kept.
    """
    level = _level_of(settings.logging_level if settings else "INFO", logging.INFO)
    if settings is not None and not settings.logging_enabled:
        level = logging.WARNING

    logging.captureWarnings(True)
    logging.basicConfig(level=level, handlers=_build_handlers(settings, level), force=True)
    for name in _PROPAGATED_LOGGERS:
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def import_log_context(**fields: object) -> Iterator[None]:
    """Attach ``fields`` (import id, action, user) to every event logged inside."""
    with bound_contextvars(**fields):
        yield


def redact_settings(settings: Settings) -> dict:
    """Settings as a dict safe to log: the database password is hidden."""
    data = settings.model_dump()
    url = make_url(settings.database_url)
    if url.password:
        data["database_url"] = url.render_as_string(hide_password=True)
    return data
