"""Structured logging for contentsync.

Two rotating files under the log directory:

- ``engine.log``: every event, human readable
- ``sync.log``: JSON, only events from ``contentsync.sync.*`` (the
  export/import intents, the dependency queue and bulk runs)

Hosts embedding the engine can skip the files and pass ``console=True``
to get the human readable stream on stderr instead.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

ENGINE_LOG = "engine.log"
SYNC_LOG = "sync.log"
SYNC_LOGGER_PREFIX = "contentsync.sync"

_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5

_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite")

_shared_processors: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


def _rotating(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_level: str = "info", log_dir: Path | None = None, *, console: bool = False) -> None:
    """Configure structlog on top of stdlib logging.

    Parameters
    ----------
    log_level:
        Level name (``debug``, ``info``, ``warning``, ...).  Unknown names
        fall back to ``info``.
    log_dir:
        Where ``engine.log`` and ``sync.log`` go.  None means no files.
    console:
        Also render events to stderr.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            *_shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    human_formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
        foreign_pre_chain=_shared_processors,
    )
    json_formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=_shared_processors,
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_rotating(log_dir / ENGINE_LOG, human_formatter))

        sync_handler = _rotating(log_dir / SYNC_LOG, json_formatter)
        sync_handler.addFilter(logging.Filter(SYNC_LOGGER_PREFIX))
        root.addHandler(sync_handler)

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(human_formatter)
        root.addHandler(stream)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    def _excepthook(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_tb: object,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
            return
        logging.getLogger("contentsync").critical(
            "Unhandled exception",
            exc_info=(exc_type, exc_value, exc_tb),
        )

    sys.excepthook = _excepthook  # type: ignore[assignment]
