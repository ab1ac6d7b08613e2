from __future__ import annotations

import json
import logging
from pathlib import Path

from core.config import LoggingCfg
from core.logging import setup_json_logging, setup_logging


def read_last_line(path: Path) -> str:
    with path.open("r", encoding="utf-8") as fh:
        lines = fh.readlines()
    return lines[-1].strip()


def flush_root() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_json_logging_snapshot(tmp_path: Path) -> None:
    logger = setup_json_logging(str(tmp_path))

    logger.info("service started", service="ganache", pid=4242)
    flush_root()

    payload = json.loads(read_last_line(tmp_path / "app.ndjson"))

    assert payload["event"] == "service started"
    assert payload["service"] == "ganache"
    assert payload["pid"] == 4242


def test_stdlib_loggers_share_the_json_sink(tmp_path: Path) -> None:
    setup_logging(LoggingCfg(level="DEBUG", json_format=True, log_dir=tmp_path))

    logging.getLogger("controller.service").warning("pid %d still alive", 17)
    flush_root()

    payload = json.loads(read_last_line(tmp_path / "app.ndjson"))

    assert payload["event"] == "pid 17 still alive"
    assert payload["level"] == "warning"
    assert payload["logger"] == "controller.service"
