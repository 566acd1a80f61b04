"""
Structured Logging

Every module logs through ``get_service_logger(<service>)``, which returns
a ``fieldgate.<service>`` logger wrapped in an adapter that stamps the
service name on each record.

Output is one JSON object per line by default; set FIELDGATE_LOG_FORMAT=text
for human-readable lines and FIELDGATE_LOG_LEVEL to change the level.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any


# LogRecord attributes that are not user context
_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "service"}

_context: ContextVar[dict[str, Any]] = ContextVar("fieldgate_log_context", default={})

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with task context and ``extra=`` fields"""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context.get())
        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_FIELDS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Adds the service name to every record while keeping caller ``extra``"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = dict(kwargs.get("extra") or {})
        extra["service"] = self.extra["service"]
        kwargs["extra"] = extra
        return msg, kwargs


def _parse_level(log_level: str) -> int:
    level = logging.getLevelName(str(log_level).upper())
    return level if isinstance(level, int) else logging.INFO


def set_log_level(log_level: str) -> int:
    """Apply ``log_level`` to every configured ``fieldgate.*`` logger"""
    level = _parse_level(log_level)
    for name, existing in logging.root.manager.loggerDict.items():
        if name.startswith("fieldgate.") and isinstance(existing, logging.Logger):
            existing.setLevel(level)
            for handler in existing.handlers:
                handler.setLevel(level)
    return level


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Configure the ``fieldgate.<service_name>`` logger.

    Args:
        service_name: Dotted service name, e.g. "device.transport"
        log_level: Level name; unknown names fall back to INFO
        json_format: JSON lines when True, plain text otherwise
    """
    level = _parse_level(log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT, "%Y-%m-%d %H:%M:%S")
    )

    logger = logging.getLogger(f"fieldgate.{service_name}")
    logger.setLevel(level)
    logger.handlers[:] = [handler]
    # Root propagation only when FIELDGATE_LOG_PROPAGATE=1
    logger.propagate = os.environ.get("FIELDGATE_LOG_PROPAGATE") == "1"
    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """Logger for one service, configured from the environment"""
    logger = setup_logging(
        service_name,
        os.environ.get("FIELDGATE_LOG_LEVEL", "INFO"),
        os.environ.get("FIELDGATE_LOG_FORMAT", "json").lower() != "text",
    )
    return ServiceLoggerAdapter(logger, {"service": service_name})


class LogContext:
    """
    Attach fields to every JSON record logged by the current task.

    Backed by a context variable, so concurrent tasks keep separate
    contexts and nesting merges outer and inner fields.

    Usage:
        with LogContext(device_id="meter-1", operation="poll"):
            await device.read_all_parameters()
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token = None

    def __enter__(self) -> "LogContext":
        self._token = _context.set({**_context.get(), **self.fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        _context.reset(self._token)
        return False


def current_log_context() -> dict[str, Any]:
    return dict(_context.get())


def log_device_read(
    logger: logging.LoggerAdapter,
    device_name: str,
    parameter: str,
    value: Any,
    success: bool = True,
    error: str | None = None,
) -> None:
    """Per-parameter read outcome: debug on success, warning on failure"""
    fields = {"device": device_name, "parameter": parameter}
    if success:
        logger.debug(f"Read {device_name}.{parameter} = {value}", extra={**fields, "value": value})
    else:
        logger.warning(
            f"Read {device_name}.{parameter} failed: {error}", extra={**fields, "error": error}
        )


def log_device_write(
    logger: logging.LoggerAdapter,
    device_name: str,
    parameter: str,
    value: Any,
    success: bool = True,
    error: str | None = None,
) -> None:
    """Write outcome: info on success, error on failure"""
    fields = {"device": device_name, "parameter": parameter, "value": value}
    if success:
        logger.info(f"Wrote {device_name}.{parameter} = {value}", extra=fields)
    else:
        logger.error(
            f"Write {device_name}.{parameter} = {value} failed: {error}",
            extra={**fields, "error": error},
        )
