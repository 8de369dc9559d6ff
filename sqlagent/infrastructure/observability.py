"""Structured Logging — run-correlated log records for the agent loop and the API.

Invariants:
    - Every JSON line has timestamp, level, logger and message
    - Any field passed through `extra=` is emitted (run_id, invocation_id, capability,
      step, outcome, error_code, token counts, ...); standard LogRecord attributes
      are never duplicated into the payload
    - Text format always shows a run id column; records outside a run show "-"
    - setup_logging is idempotent: repeated calls replace the handler it installed

Design Decisions:
    - Standard-attribute set computed from a blank LogRecord rather than hardcoded,
      so new extras need no registration here
    - Run correlation travels as `extra=` on each call instead of a contextvar: the
      loop, the gate and the routes all already hold the run id
"""

import json
import logging
from datetime import datetime, timezone

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(run_id)s]: %(message)s"


def record_extras(record: logging.LogRecord) -> dict:
    """Fields attached to a record through `extra=`, minus None values."""
    return {
        k: v for k, v in record.__dict__.items()
        if k not in _STANDARD_ATTRS and not k.startswith("_") and v is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, extras included."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log.update(record_extras(record))
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False, default=str)


class RunContextFilter(logging.Filter):
    """Default run_id to "-" so TEXT_FORMAT renders records logged outside a run."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "run_id", None) is None:
            record.run_id = "-"
        return True


_handler: logging.Handler | None = None


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure root logging for the application."""
    global _handler
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.addFilter(RunContextFilter())
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    if _handler is not None:
        logging.root.removeHandler(_handler)
    _handler = handler
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
