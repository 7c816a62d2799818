"""
Structured logging for the appliance repository.

Every module logs through ``get_logger(__name__)`` with snake_case event
names and keyword context. ``setup_logging`` routes those events to a
rolling JSONL file and to the console. Credentials that reach a log call
(device passwords, credential secrets) are masked before rendering.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from appliance_repo.config import LoggingConfig, get_config

if TYPE_CHECKING:
    from structlog.types import Processor

SERVICE_NAME = "appliance-repo"
DEFAULT_LOG_DIR = "logs"
DEFAULT_LOG_FILE = "appliance-repo.jsonl"
ROTATE_BYTES = 10 * 1024 * 1024
ROTATE_KEEP = 5

MASK = "***"
SENSITIVE_KEYS = frozenset({"password", "secret", "passwd", "credential_secret"})


def _mask_sensitive(
    _logger: logging.Logger, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = MASK
    return event_dict


def _add_origin(
    _logger: logging.Logger, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    event_dict["service"] = SERVICE_NAME
    event_dict["pid"] = os.getpid()
    return event_dict


def _flatten_exception(
    _logger: logging.Logger, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Repository errors log their code and context; anything else its type and message."""
    error = event_dict.pop("exception", None)
    if error is None:
        return event_dict
    to_dict = getattr(error, "to_dict", None)
    if callable(to_dict):
        event_dict["exception"] = to_dict()
    else:
        event_dict["exception"] = {"type": type(error).__name__, "message": str(error)}
    return event_dict


def _pre_chain(for_file: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        _mask_sensitive,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]
    if for_file:
        chain += [_add_origin, _flatten_exception]
    chain.append(structlog.processors.UnicodeDecoder())
    return chain


def _formatter(pre_chain: list[Processor], renderer: Processor) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def _file_handler(path: Path, level: int) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(path), maxBytes=ROTATE_BYTES, backupCount=ROTATE_KEEP, encoding="utf-8"
    )
    handler.setFormatter(_formatter(_pre_chain(for_file=True), structlog.processors.JSONRenderer()))
    handler.setLevel(level)
    return handler


def _console_handler(fmt: str, level: int) -> logging.Handler:
    renderer: Processor
    if fmt.lower() == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=False, exception_formatter=structlog.dev.plain_traceback
        )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_formatter(_pre_chain(for_file=False), renderer))
    handler.setLevel(level)
    return handler


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str | None = None,
    format: str | None = None,
    log_dir: str | None = None,
    log_file: str | None = None,
    enable_console: bool = True,
    enable_file: bool = True,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Keyword arguments override the matching ``LoggingConfig`` values.
    ``LoggingConfig.file`` sets the JSONL path unless ``log_dir`` or
    ``log_file`` is given.

    Args:
        config: Logging settings, defaults to the process configuration.
        level: Minimum level name.
        format: Console renderer, ``json`` or ``plain``.
        log_dir: Directory of the JSONL file.
        log_file: File name of the JSONL file.
        enable_console: Attach the console handler.
        enable_file: Attach the rolling JSONL file handler.
    """
    config = config or get_config().logging
    log_level = getattr(logging, (level or config.level).upper(), logging.INFO)

    structlog.configure(
        processors=[
            *_pre_chain(for_file=True),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []
    if enable_file:
        if config.file and log_dir is None and log_file is None:
            path = Path(config.file)
        else:
            path = get_log_file_path(log_dir, log_file)
        handlers.append(_file_handler(path, log_level))
    if enable_console:
        handlers.append(_console_handler(format or config.format, log_level))

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(log_level)


def get_logger(name: str | None = None) -> Any:
    """
    Get a structured logger.

    Example:
        logger = get_logger(__name__)
        logger.info("device_created", serial_number="0123ABC")
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind fields to every later entry in the current context, e.g. ``writer="orchestrator-1"``."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def with_context(**kwargs: Any) -> Iterator[None]:
    """Bind fields for the duration of a block, as ``Repository.save`` does with ``operation``."""
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


def get_log_file_path(log_dir: str | None = None, log_file: str | None = None) -> Path:
    return Path(log_dir or DEFAULT_LOG_DIR) / (log_file or DEFAULT_LOG_FILE)
