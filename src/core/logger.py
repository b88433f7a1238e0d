import inspect
import json
import logging
import sys
from typing import Any

import httpx
from fastapi import status
from loguru import logger

from src.config.settings import settings

REDACTED = "***"

# Matched against lower-cased extra keys; identity keys and webhook signatures travel in headers
SENSITIVE_KEY_PARTS = ("secret", "api_key", "apikey", "token", "signature", "authorization", "cookie", "password")

# Stdlib loggers that run under our own handlers (server, worker, framework)
CAPTURED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "arq", "arq.worker")

# Per-request chatter from the identity HTTP client and the async DB driver
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower().replace("-", "_")
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def _sanitize_value(val: Any) -> Any:
    """Recursively sanitizes objects to remove raw memory addresses, ugly reprs and credentials."""
    if isinstance(val, dict):
        return {k: REDACTED if _is_sensitive(k) and v else _sanitize_value(v) for k, v in val.items()}
    if isinstance(val, list | tuple | set):
        return type(val)(_sanitize_value(v) for v in val)

    # Bound methods and coroutine functions end up in extra via contextualize()
    if callable(val) or inspect.iscoroutinefunction(val):
        module = getattr(val, "__module__", "")
        qualname = getattr(val, "__qualname__", type(val).__name__)
        return f"{module}.{qualname}()" if module else f"{qualname}()"

    # Objects falling back to object.__repr__, e.g. <aiosqlite.Connection object at 0x...>
    val_repr = repr(val)
    if "<" in val_repr and " at 0x" in val_repr:
        return f"[{val.__class__.__module__}.{val.__class__.__name__}]"

    return val


def log_patcher(record: dict[str, Any]) -> None:
    """Intercepts the Loguru record before it hits sinks to beautify payloads."""
    if "extra" in record:
        record["extra"] = _sanitize_value(record["extra"])


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
    """Synchronous sink for sending logs to Seq via HTTP."""

    def __init__(self, server_url: str, api_key: str | None = None):
        self.server_url = f"{server_url.rstrip('/')}/api/events/raw"
        self.api_key = api_key
        self.client = httpx.Client(timeout=4.0)

    def write(self, message: str) -> None:
        """Writes a serialized loguru record to Seq as a single raw event."""
        try:
            record = json.loads(message)["record"]

            payload = {
                "Timestamp": record["time"]["repr"],
                "Level": record["level"]["name"],
                "MessageTemplate": record["message"],
                "Properties": {
                    **record["extra"],
                    "Service": settings.APP_NAME,
                    "Function": record["function"],
                    "Module": record["module"],
                    "Line": record["line"],
                },
            }

            if record.get("exception"):
                payload["Exception"] = record["exception"]["text"]

            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["X-Seq-ApiKey"] = self.api_key

            resp = self.client.post(self.server_url, json={"Events": [payload]}, headers=headers)

            if resp.status_code >= status.HTTP_400_BAD_REQUEST:
                sys.stderr.write(f"Seq API Error {resp.status_code}: {resp.text}\n")

        except Exception as e:
            # A sink must never raise back into the logging call
            sys.stderr.write(f"Failed to send log to Seq: {e}\n")


def configure_logging() -> None:
    """Configures Loguru for console and optional Seq output and captures stdlib logs."""
    logger.remove()
    logger.configure(patcher=log_patcher, extra={"request_id": "-"})

    logger.add(
        sys.stderr,
        level=settings.LOG_LEVEL,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<magenta>{extra[request_id]}</magenta> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:"
        "<cyan>{line}</cyan> - <level>{message}</level>",
    )

    if settings.SEQ_URL:
        logger.add(
            SeqSink(settings.SEQ_URL, api_key=settings.SEQ_API_KEY),
            level=settings.LOG_LEVEL,
            format="{message}",
            serialize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for name in CAPTURED_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False

    for name in QUIET_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.setLevel(logging.WARNING)
        std_logger.propagate = False
        std_logger.handlers = []

    logger.info(f"Logging configured at {settings.LOG_LEVEL}. Forwarding to Seq: {settings.SEQ_URL}")
