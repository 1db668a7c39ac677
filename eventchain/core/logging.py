"""eventchain.core.logging

Stdlib logging setup.

Components never call this; they take an injected ``logging.Logger``. Only
entry points (CLI, application bootstrap) configure handlers.

Log messages are snake_case event names. Context rides in ``extra``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

from eventchain.core.config import LoggingConfig

ROOT_LOGGER = "eventchain"

# Attributes every LogRecord carries; anything else came from ``extra``.
_RESERVED = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys() | {"message", "asctime"}
)


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED}


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        out.update(_extras(record))
        if record.exc_info:
            out["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(out, sort_keys=True, default=str)


class KeyValueFormatter(logging.Formatter):
    """Human-readable: ``<ts> <level> <logger> <event> k=v ...``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _extras(record)
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        return line


def configure_logging(cfg: LoggingConfig, *, stream: TextIO | None = None) -> logging.Logger:
    """Attach a single handler to the ``eventchain`` logger. Idempotent."""

    logger = logging.getLogger(ROOT_LOGGER)
    for h in list(logger.handlers):
        logger.removeHandler(h)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonLineFormatter() if cfg.json_output else KeyValueFormatter())
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, cfg.level))
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child of the ``eventchain`` logger, e.g. ``get_logger("ledger.service")``."""

    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
