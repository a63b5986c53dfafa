"""
Logging setup for the access-control core.

Two output shapes share one record model:
- JsonFormatter for shipped logs (one object per line)
- ReadableFormatter for a developer terminal

Request and user identifiers live in context variables so that every
decision and mutation logged while serving a request can be correlated.
"""

import logging
import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Iterator
from pathlib import Path
from contextvars import ContextVar

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)

# Libraries that are chatty at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "uvicorn.access")

_ANSI = {
    'DEBUG': '\033[2;37m',
    'INFO': '\033[34m',
    'WARNING': '\033[33m',
    'ERROR': '\033[1;31m',
    'CRITICAL': '\033[1;41m',
}
_ANSI_RESET = '\033[0m'


def current_context() -> Dict[str, str]:
    """Request and user identifiers bound to the running context."""
    bound = {}
    for key, var in (("request_id", request_id_var), ("user_id", user_id_var)):
        value = var.get()
        if value:
            bound[key] = value
    return bound


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, 'extra_data', None) or {}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, UTC timestamp with a trailing Z."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(current_context())
        payload.update(_record_fields(record))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class ReadableFormatter(logging.Formatter):
    """
    Single-line output for local development.

    ``HH:MM:SS.mmm LEVEL [logger] message | key=value ...``
    """

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def _level(self, levelname: str) -> str:
        padded = f"{levelname:8s}"
        if not self.use_colors or levelname not in _ANSI:
            return padded
        return f"{_ANSI[levelname]}{padded}{_ANSI_RESET}"

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]
        line = f"{clock} {self._level(record.levelname)} [{record.name}] {record.getMessage()}"

        fields = _record_fields(record)
        if fields:
            line += " | " + " ".join(f"{key}={value}" for key, value in fields.items())

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter that stamps fixed fields (for example ``component``) onto
    every record.

    Per-call fields go in ``extra={'extra_data': {...}}`` and win over the
    fixed ones on key collisions.
    """

    def process(self, msg: str, kwargs: Dict) -> tuple:
        extra = dict(kwargs.get('extra') or {})
        fields = {**self.extra, **(extra.get('extra_data') or {})}
        extra['extra_data'] = fields
        extra.update(current_context())
        kwargs['extra'] = extra
        return msg, kwargs


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Path] = None
) -> None:
    """
    Replace the root handlers with a stdout handler (and optionally a file).

    Args:
        level: Root log level name
        json_output: Emit JSON on stdout instead of readable lines
        log_file: Extra destination, always written as JSON
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    stdout = logging.StreamHandler(sys.stdout)
    if json_output:
        stdout.setFormatter(JsonFormatter())
    else:
        stdout.setFormatter(ReadableFormatter(use_colors=sys.stdout.isatty()))
    root.addHandler(stdout)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        to_file = logging.FileHandler(log_file)
        to_file.setFormatter(JsonFormatter())
        root.addHandler(to_file)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_from_settings(settings: Any, log_file: Optional[Path] = None) -> None:
    """Configure logging from an ``AccessControlSettings`` instance."""
    configure_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        log_file=log_file,
    )


def get_logger(name: str, **fixed_fields) -> ContextLogger:
    """Return a ``ContextLogger`` over ``logging.getLogger(name)``."""
    return ContextLogger(logging.getLogger(name), fixed_fields)


@contextmanager
def log_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Iterator[None]:
    """
    Bind request/user identifiers to every log line emitted inside the block.

    Values are restored on exit, so nested contexts behave.
    """
    request_token = request_id_var.set(request_id) if request_id is not None else None
    user_token = user_id_var.set(user_id) if user_id is not None else None
    try:
        yield
    finally:
        if user_token is not None:
            user_id_var.reset(user_token)
        if request_token is not None:
            request_id_var.reset(request_token)
