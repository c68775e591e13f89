"""Structured JSON logging and analysis-state context."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

from gridsens.config import settings

state_id_var: ContextVar[str] = ContextVar("state_id", default="")


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter with analysis state injection."""

    def format(self, record: logging.LogRecord) -> str:
        import json

        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        state_id = state_id_var.get("")
        if state_id:
            log_entry["state"] = state_id

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Include extra fields
        for key in ("network", "iterations", "status", "duration_ms"):
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry)


class StateContextFilter(logging.Filter):
    """Prefix plain-text records with the current contingency/strategy id."""

    def filter(self, record: logging.LogRecord) -> bool:
        state_id = state_id_var.get("")
        record.state = f"[{state_id}] " if state_id else ""
        return True


@contextmanager
def log_context(state_id: str) -> Iterator[None]:
    """Tag every record emitted inside the block with ``state_id``."""
    token = state_id_var.set(state_id)
    try:
        yield
    finally:
        state_id_var.reset(token)


def setup_logging(json_format: bool | None = None, level: str | int | None = None) -> None:
    """Configure root logger. Use json_format=True for machine-readable output.

    Unset arguments come from the GRIDSENS_LOG_JSON and GRIDSENS_LOG_LEVEL settings.
    """
    if json_format is None:
        json_format = settings.log_json
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper() if level is None else level)

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.addFilter(StateContextFilter())
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s [%(name)s] %(state)s%(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()
    root.addHandler(handler)
