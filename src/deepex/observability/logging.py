"""
Structured logging for DeepEx with run ID support.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime

# Context variable for run ID propagation
run_id_ctx: ContextVar[str | None] = ContextVar("run_id", default=None)

# Global logger cache
_loggers: dict[str, "StructuredLogger"] = {}

# Attributes every LogRecord already has; keyword fields may not shadow them
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "getMessage"}

_FORMATTER_ATTRS = _RESERVED_ATTRS | {"run_id", "op", "ms", "duration_ms"}


def _extra_fields(record: logging.LogRecord) -> dict[str, object]:
    return {k: v for k, v in record.__dict__.items() if k not in _FORMATTER_ATTRS}


class StructuredFormatter(logging.Formatter):
    """Single-line key=value formatter with run ID support."""

    def format(self, record: logging.LogRecord) -> str:
        run_id = run_id_ctx.get() or getattr(record, "run_id", None) or "-"

        parts = record.name.split(".")
        mod = parts[-1] if parts else record.name
        op = getattr(record, "op", record.funcName or "-")

        duration = getattr(record, "ms", getattr(record, "duration_ms", None))
        ms_part = f" ms={duration:.1f}" if duration is not None else ""

        timestamp = datetime.now(UTC).isoformat()
        extra = "".join(f" {key}={value}" for key, value in _extra_fields(record).items())

        line = (
            f"t={timestamp} level={record.levelname} run={run_id} mod={mod} op={op}"
            f'{ms_part} msg="{record.getMessage()}"{extra}'
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per line, same fields as the console format."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "t": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "run": run_id_ctx.get() or getattr(record, "run_id", None),
            "logger": record.name,
            "op": getattr(record, "op", record.funcName),
            "msg": record.getMessage(),
        }
        duration = getattr(record, "ms", getattr(record, "duration_ms", None))
        if duration is not None:
            payload["ms"] = round(duration, 1)
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class StructuredLogger:
    """Structured logger with run ID and keyword field support."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, exc_info: bool = False, **kwargs):
        extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_ATTRS}
        extra["run_id"] = run_id_ctx.get()
        self.logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, **kwargs)

    def exception(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, exc_info=True, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given module."""
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]


def setup_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Install the structured handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if fmt == "json" else StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)


def set_run_id(run_id: str) -> None:
    """Set run ID in current context."""
    run_id_ctx.set(run_id)


def get_run_id() -> str | None:
    """Get current run ID from context."""
    return run_id_ctx.get()


def clear_run_id() -> None:
    run_id_ctx.set(None)
