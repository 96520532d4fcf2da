"""Structured JSON logging and calculation ID context."""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

from feederflow.config import settings

calculation_id_var: ContextVar[str] = ContextVar("calculation_id", default="")

_EXTRA_FIELDS = ("device_id", "node_id", "iterations", "residual_v", "current_a", "status")


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter with calculation ID injection."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        cid = calculation_id_var.get("")
        if cid:
            log_entry["calculation_id"] = cid

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry)


@contextmanager
def calculation_context(calculation_id: str | None = None) -> Iterator[str]:
    """Tag every log record emitted inside the block with a calculation ID."""
    cid = calculation_id or str(uuid.uuid4())[:8]
    token = calculation_id_var.set(cid)
    try:
        yield cid
    finally:
        calculation_id_var.reset(token)


def setup_logging(json_format: bool | None = None, level: str | int | None = None) -> None:
    """Configure root logger. Unset arguments come from settings; use json_format=True for batch runs."""
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper() if level is None else level)

    handler = logging.StreamHandler()
    if settings.json_logs if json_format is None else json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()
    root.addHandler(handler)
