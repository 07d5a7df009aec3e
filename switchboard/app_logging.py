"""Application and access logging setup.

Two loggers are configured, each with a midnight-rotating file handler:

- ``switchboard`` (``app.log``): every module logs below it through
  ``logging.getLogger(__name__)``.  Routing code passes the conversation,
  transition, queue and assignment ids through ``extra=``; the JSON
  formatter promotes them to top-level keys.
- ``uvicorn.access`` (``access.log``): one scrubbed JSON line per HTTP
  request, written by the middleware installed with :func:`init_logging`.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER_NAME = "switchboard"
ACCESS_LOGGER_NAME = "uvicorn.access"

ROUTING_FIELDS = ("conversation_id", "transition", "queue_id", "assignment_id")

SENSITIVE_FIELDS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "password",
        "token",
        "access_token",
        "refresh_token",
    }
)

UNLOGGED_PATHS = frozenset({"/api/health", "/api/metrics"})


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


@dataclass(frozen=True)
class LogSettings:
    log_dir: str = "logs"
    level: int = logging.INFO
    json_format: bool = False
    request_bodies: bool = False
    retention_days: int = 7
    rotate_utc: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        level_name = os.getenv("LOG_LEVEL", "INFO").upper()
        return cls(
            log_dir=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, level_name, logging.INFO),
            json_format=_env_flag("LOG_JSON"),
            request_bodies=_env_flag("LOG_REQUEST_BODIES"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=_env_flag("LOG_ROTATE_UTC"),
        )

    def file_for(self, logger_name: str) -> str:
        filename = "access.log" if logger_name == ACCESS_LOGGER_NAME else "app.log"
        return os.path.join(self.log_dir, filename)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with routing ids lifted from ``extra=``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (field, getattr(record, field))
            for field in ROUTING_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _formatter(settings: LogSettings) -> logging.Formatter:
    if settings.json_format:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _scrub(data: object) -> object:
    """Recursively mask sensitive keys in dictionaries and lists."""

    if isinstance(data, dict):
        return {
            key: "***" if key.lower() in SENSITIVE_FIELDS else _scrub(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub(value) for value in data]
    return data


async def _capture_body(request: Request) -> object | None:
    """Read the body for logging and replay it to the downstream handler."""

    body = await request.body()

    async def replay() -> dict:  # pragma: no cover - internal
        return {"type": "http.request", "body": body, "more_body": False}

    request._receive = replay  # type: ignore[attr-defined]

    if not body:
        return None
    try:
        return _scrub(json.loads(body))
    except ValueError:
        return body.decode("utf-8", errors="replace")


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded
    return request.client.host if request.client is not None else None


def _install_access_logging(app: FastAPI, settings: LogSettings | None = None) -> None:
    """Log one line per request (probes excluded) and echo ``X-Request-Id``."""

    settings = settings or LogSettings.from_env()
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        body = await _capture_body(request) if settings.request_bodies else None

        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id

        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": _client_ip(request),
            "headers": _scrub(dict(request.headers)),
        }
        if body is not None:
            entry["body"] = body
        access_logger.info(json.dumps(entry, default=str))
        return response


def _file_handler(settings: LogSettings, logger_name: str) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        settings.file_for(logger_name),
        when="midnight",
        backupCount=settings.retention_days,
        utc=settings.rotate_utc,
    )
    handler.setFormatter(_formatter(settings))
    return handler


def init_logging(app: FastAPI | None = None) -> None:
    """Configure the application and access loggers from the environment.

    The application handler is added once; the access logger's handlers are
    always replaced so uvicorn's console handler does not duplicate lines.
    When ``app`` is given the access middleware is installed and the
    application logger is exposed as ``app.logger``.
    """

    settings = LogSettings.from_env()
    os.makedirs(settings.log_dir, exist_ok=True)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if not app_logger.handlers:
        app_logger.addHandler(_file_handler(settings, APP_LOGGER_NAME))
    app_logger.setLevel(settings.level)

    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.handlers.clear()
    access_logger.addHandler(_file_handler(settings, ACCESS_LOGGER_NAME))
    access_logger.setLevel(settings.level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app, settings)


__all__ = [
    "ACCESS_LOGGER_NAME",
    "APP_LOGGER_NAME",
    "JsonFormatter",
    "LogSettings",
    "init_logging",
]
