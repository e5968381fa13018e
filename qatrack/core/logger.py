import inspect
import json
import logging
import sys
from typing import Any

import httpx
from fastapi import status
from loguru import logger

from qatrack.config.settings import settings

# Never forwarded to a sink, whatever module binds them
_REDACTED_KEYS = frozenset({"password", "new_password", "code", "token", "password_hash"})

# Placeholder for records emitted outside a request (startup, seeding)
_NO_REQUEST = "-"


def _sanitize_value(val: Any) -> Any:
    """Recursively sanitizes objects to remove raw memory addresses and credentials."""
    if isinstance(val, dict):
        return {k: "***" if k in _REDACTED_KEYS else _sanitize_value(v) for k, v in val.items()}
    if isinstance(val, list | tuple | set):
        return type(val)(_sanitize_value(v) for v in val)

    if callable(val) or inspect.iscoroutinefunction(val):
        module = getattr(val, "__module__", "")
        qualname = getattr(val, "__qualname__", type(val).__name__)
        return f"{module}.{qualname}()" if module else f"{qualname}()"

    # Objects falling back to the default object.__repr__
    val_repr = repr(val)
    if "<" in val_repr and " at 0x" in val_repr:
        clean_name = val.__class__.__name__
        module = val.__class__.__module__
        return f"[{module}.{clean_name}]"

    return val


def log_patcher(record: dict[str, Any]) -> None:
    """Intercepts the Loguru record before it hits sinks to clean payloads."""
    if "extra" in record:
        record["extra"] = _sanitize_value(record["extra"])

    if "args" in record:
        record["args"] = tuple(_sanitize_value(arg) for arg in record["args"])


class InterceptHandler(logging.Handler):
    """Intercepts standard logging messages and routes them to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


class SeqSink:
    """Synchronous sink forwarding serialized Loguru records to Seq's raw events API."""

    def __init__(self, server_url: str, api_key: str | None = None, application: str | None = None):
        self.server_url = f"{server_url.rstrip('/')}/api/events/raw"
        self.api_key = api_key
        self.application = application
        self.client = httpx.Client(timeout=4.0)

    def _to_event(self, record: dict[str, Any]) -> dict[str, Any]:
        properties = {k: v for k, v in record["extra"].items() if v != _NO_REQUEST}
        properties.update(
            {
                "Function": record["function"],
                "Module": record["module"],
                "Line": record["line"],
                "Process": record["process"].get("name"),
            }
        )
        if self.application:
            properties["Application"] = self.application

        event = {
            "Timestamp": record["time"]["repr"],
            "Level": record["level"]["name"],
            "MessageTemplate": record["message"],
            "Properties": properties,
        }
        if record.get("exception"):
            event["Exception"] = record["exception"]["text"]
        return event

    def write(self, message: str) -> None:
        """Writes a serialized log record to Seq. Delivery problems go to stderr, never to the caller."""
        try:
            event = self._to_event(json.loads(message)["record"])

            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["X-Seq-ApiKey"] = self.api_key

            resp = self.client.post(self.server_url, json={"Events": [event]}, headers=headers)
            if resp.status_code >= status.HTTP_400_BAD_REQUEST:
                sys.stderr.write(f"Seq API Error {resp.status_code}: {resp.text}\n")

        except Exception as e:
            sys.stderr.write(f"Failed to send log to Seq: {e}\nPayload: {message}\n")


_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[request_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

_INTERCEPTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def configure_logging() -> None:
    """Routes Loguru and stdlib logging to the console and, when SEQ_URL is set, to Seq.

    Every record carries a ``request_id`` extra, bound per request by the
    middleware in ``qatrack.app.main``.
    """
    logger.remove()
    logger.configure(patcher=log_patcher, extra={"request_id": _NO_REQUEST})

    logger.add(sys.stderr, level="DEBUG" if settings.DEBUG else "INFO", format=_CONSOLE_FORMAT)

    if settings.SEQ_URL:
        logger.add(
            SeqSink(settings.SEQ_URL, api_key=settings.SEQ_API_KEY, application=settings.APP_NAME),
            level="INFO",
            format="{message}",
            serialize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for name in _INTERCEPTED_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False

    for name in _QUIET_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.setLevel(logging.WARNING)
        std_logger.propagate = False
        std_logger.handlers = []

    logger.info(f"Logging configured (Seq forwarding {'on' if settings.SEQ_URL else 'off'}).")
