from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from structlog.types import Processor

from core.config import LoggingCfg


def _shared_processors() -> list[Processor]:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _install_handler(handler: logging.Handler, renderer: Processor, level: str) -> None:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=_shared_processors(),
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level.upper())
    root_logger.addHandler(handler)


def setup_json_logging(log_dir: str, level: str = "INFO") -> structlog.stdlib.BoundLogger:
    """Configure structlog to emit NDJSON lines into ``log_dir/app.ndjson``."""

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path / "app.ndjson", encoding="utf-8")
    _install_handler(handler, structlog.processors.JSONRenderer(), level)
    _configure_structlog()
    return structlog.stdlib.get_logger()


def setup_console_logging(level: str = "INFO") -> structlog.stdlib.BoundLogger:
    """Configure structlog to emit human-readable lines on stderr."""

    handler = logging.StreamHandler(sys.stderr)
    _install_handler(handler, structlog.dev.ConsoleRenderer(colors=False), level)
    _configure_structlog()
    return structlog.stdlib.get_logger()


def setup_logging(cfg: LoggingCfg) -> structlog.stdlib.BoundLogger:
    """Pick the JSON file sink or the console sink from ``cfg``."""

    if cfg.json_format:
        return setup_json_logging(str(cfg.log_dir), cfg.level)
    return setup_console_logging(cfg.level)
