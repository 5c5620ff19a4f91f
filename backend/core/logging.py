"""
Tent Migrate - Structured Logging

Records are emitted as one JSON object per line. Migration context (job key,
category, worker) is promoted to top-level keys so a whole job can be followed
with a single filter.
"""
import json
import logging
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Request


CONTEXT_FIELDS = ("job_key", "category", "worker_id", "request_id", "action", "duration_ms", "status_code")

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("uvicorn", "uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update({key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)})

        fields = getattr(record, "fields", None)
        if fields:
            entry["fields"] = fields

        if record.exc_info and record.exc_info[0]:
            exc_type, exc, tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": "".join(traceback.format_exception(exc_type, exc, tb)),
            }

        return json.dumps(entry, default=str)


class MigrateLogger:
    """
    Logger taking structured fields as keyword arguments.

    ``bind`` returns a logger that adds the given fields to every record, e.g.
    ``logger.bind(job_key=key, worker_id=wid)`` inside a worker.
    """

    def __init__(self, name: str = "tent_migrate", context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.context = dict(context or {})

    def bind(self, **context) -> "MigrateLogger":
        return MigrateLogger(self.logger.name, {**self.context, **context})

    def _extra(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        merged = {**self.context, **kwargs}
        extra = {key: merged.pop(key) for key in CONTEXT_FIELDS if key in merged}
        if merged:
            extra["fields"] = merged
        return extra

    def _log(self, level: int, message: str, exc_info: bool = False, **kwargs):
        self.logger.log(level, message, exc_info=exc_info, extra=self._extra(kwargs))

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Error with the active exception's traceback"""
        self._log(logging.ERROR, message, exc_info=True, **kwargs)


def setup_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None):
    """
    Configure the root logger.

    Args:
        level: Log level name
        json_format: JSON lines when True, plain text otherwise (local runs)
        log_file: Also write to this file
    """
    log_level = getattr(logging, level.upper())
    formatter = JSONFormatter() if json_format else logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers = []
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = "tent_migrate") -> MigrateLogger:
    return MigrateLogger(name)


async def log_request(request: Request, response_status: int, duration_ms: float):
    """Access log line for API calls"""
    get_logger("tent_migrate.api").info(
        f"{request.method} {request.url.path} {response_status}",
        status_code=response_status,
        duration_ms=round(duration_ms, 2),
        request_id=request.headers.get("X-Request-ID"),
        action="api_request",
        job_key=request.path_params.get("job_key"),
        client_ip=request.client.host if request.client else None,
    )
