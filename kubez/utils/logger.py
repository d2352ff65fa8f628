# kubez/utils/logger.py
"""
Kubez Logger Utilities
----------------------
Logging setup shared by every kubez component.

Features:
 - JSONFormatter for log shipping and a human-friendly formatter for terminals
 - Idempotent configure_logging() that installs a single stdout handler
 - Prometheus counter of emitted records per level
 - Contextual logger adapter for structured logging (component, key, ...)

Usage:
    from kubez.utils.logger import configure_logging, get_logger
    configure_logging(app_name="kubez-autoscaler", level="INFO", json=True)
    log = get_logger("kubez.controller")
    log.info("reconciled", extra={"key": "default/web"})
"""

from __future__ import annotations

import os
import sys
import json
import socket
import logging
import threading
from typing import Any, Dict, Optional

from prometheus_client import Counter

from kubez.metrics import REGISTRY
from kubez.utils.time_utils import iso_now

DEFAULT_LOG_LEVEL = os.getenv("KUBEZ_LOG_LEVEL", "INFO").upper()

_LOG_COUNTER = Counter("kubez_log_records_total", "Count of log records emitted", ["level"], registry=REGISTRY)

# attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset((
    "args", "msg", "levelname", "levelno", "name", "pathname", "filename", "module",
    "lineno", "funcName", "exc_info", "exc_text", "stack_info", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    "message", "asctime",
))

def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown-host"

def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}

# -------------------------
# Formatters
# -------------------------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter that attaches standard fields:
      - ts, level, logger, message, module, line
      - service, hostname, pid
      - optional: extra (anything passed via `extra=`), exc_info
    """
    def __init__(self, service_name: str = "kubez-autoscaler", extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.service = service_name
        self.extra_fields = extra_fields or {}
        self.hostname = _get_hostname()
        self.pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": iso_now(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "service": self.service,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        extra = _record_extras(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(self.extra_fields)
        return json.dumps(payload, default=str)

class HumanFormatter(logging.Formatter):
    """
    Human-friendly formatter. Appends structured extras as ``k=v`` pairs.
    """
    def __init__(self, service_name: str = "kubez-autoscaler"):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        self.service = service_name

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _record_extras(record)
        if extras:
            base = f"{base} | " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        return base

class _CountingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _LOG_COUNTER.labels(level=record.levelname.lower()).inc()
        return True

# -------------------------
# Configure logging
# -------------------------
_DEFAULT_CONFIGURED = False
_LOCK = threading.Lock()

def configure_logging(
    app_name: str = "kubez-autoscaler",
    level: Optional[str] = None,
    json: bool = True,
    stream=None,
    extra_fields: Optional[Dict[str, Any]] = None,
):
    """
    Configure root logging for kubez.

    Parameters:
      - app_name: service name inserted into JSON logs
      - level: logging level name (e.g. "INFO"); defaults to KUBEZ_LOG_LEVEL
      - json: use JSONFormatter (True) or HumanFormatter (False)
      - stream: output stream, stdout by default
    """
    global _DEFAULT_CONFIGURED
    with _LOCK:
        if _DEFAULT_CONFIGURED:
            return
        level_name = (level or DEFAULT_LOG_LEVEL).upper()
        numeric = getattr(logging, level_name, logging.INFO)

        root = logging.getLogger()
        root.setLevel(numeric)

        handler = logging.StreamHandler(stream=stream or sys.stdout)
        if json:
            handler.setFormatter(JSONFormatter(service_name=app_name, extra_fields=extra_fields))
        else:
            handler.setFormatter(HumanFormatter(service_name=app_name))
        handler.setLevel(numeric)
        handler.addFilter(_CountingFilter())
        root.addHandler(handler)

        # the kubernetes client logs every request body at DEBUG
        logging.getLogger("kubernetes").setLevel(max(numeric, logging.INFO))
        logging.getLogger("urllib3").setLevel(logging.WARNING)

        _DEFAULT_CONFIGURED = True

def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Return a standard logger under the kubez namespace. Call configure_logging first.
    """
    if name is None:
        name = "kubez"
    return logging.getLogger(name)

# -------------------------
# Structured Logger Adapter
# -------------------------
class StructuredLoggerAdapter(logging.LoggerAdapter):
    """
    Attach structured context to logs conveniently. Works well with JSONFormatter.
    Usage:
        logger = StructuredLoggerAdapter(get_logger(__name__), {"component": "reconciler"})
        logger.info("created", extra={"key": "default/web"})
    """
    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        if isinstance(self.extra, dict):
            for k, v in self.extra.items():
                extra.setdefault(k, v)
        return msg, kwargs

__all__ = [
    "configure_logging",
    "get_logger",
    "JSONFormatter",
    "HumanFormatter",
    "StructuredLoggerAdapter",
]
