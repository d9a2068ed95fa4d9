import logging
import os
from typing import Optional

from pythonjsonlogger import jsonlogger

# Per-link context carried on every record through `extra=link_context(...)`.
CONTEXT_FIELDS = ("request_id", "link_uid", "status")


class _DefaultFields(logging.Filter):
    """Fills missing link context fields so records without extra= still format."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr in CONTEXT_FIELDS:
            if not hasattr(record, attr):
                setattr(record, attr, "")
        return True


def _make_formatter() -> logging.Formatter:
    """JSON when LOG_FORMAT=json, key=value otherwise."""
    timefmt = os.getenv("LOG_TIMEFMT", "%Y-%m-%dT%H:%M:%S%z")
    if os.getenv("LOG_FORMAT", "structured").lower() == "json":
        fields = " ".join(f"%({name})s" for name in ("asctime", "levelname", "name", "message", *CONTEXT_FIELDS))
        return jsonlogger.JsonFormatter(fmt=fields, datefmt=timefmt)
    pairs = " ".join(f"{name}=%({name})s" for name in CONTEXT_FIELDS)
    return logging.Formatter(
        fmt=f"time=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s {pairs}",
        datefmt=timefmt,
    )


_LOGGERS: dict[Optional[str], logging.Logger] = {}


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Standalone logger with its own handler, used by CLI entry points."""
    if name in _LOGGERS:
        return _LOGGERS[name]
    logger = logging.getLogger(name or "linkgate")
    if not logger.handlers:
        logger.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
        handler = logging.StreamHandler()
        handler.addFilter(_DefaultFields())
        handler.setFormatter(_make_formatter())
        logger.addHandler(handler)
        logger.propagate = False
    _LOGGERS[name] = logger
    return logger


def link_context(uid: str, status: str | None = None, request_id: str | None = None) -> dict:
    """`extra=` payload carrying the link context fields."""
    return {"link_uid": uid, "status": status or "", "request_id": request_id or ""}
