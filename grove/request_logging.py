#!/usr/bin/env python3
"""
Logging for GROVE

Process wide log configuration plus the per-request access log. A request
record is built by a plain function from the facts of one request so it can
be tested without a server; the middleware only gathers those facts and
hands the record to a sink.
"""

import json
import logging
import sys
import time
from dataclasses import asdict, dataclass
from http import HTTPStatus
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass(frozen=True)
class RequestRecord:
    """One access log entry"""
    method: str
    path: str
    address: str
    status: str
    duration: float

    @property
    def message(self) -> str:
        return f"{self.method} {self.path}"


RecordSink = Callable[[RequestRecord], None]


def status_text(status_code: int) -> str:
    """Human readable reason phrase for a status code"""
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return str(status_code)


def build_request_record(
    method: str,
    path: str,
    address: Optional[str],
    status_code: int,
    duration: float
) -> RequestRecord:
    return RequestRecord(
        method=method,
        path=path,
        address=address or "-",
        status=status_text(status_code),
        duration=round(duration, 6),
    )


def log_record(record: RequestRecord):
    """Default sink: one INFO line on the access logger"""
    fields = asdict(record)
    logger.info(
        f"{record.message} address={record.address} status={record.status!r} "
        f"duration={record.duration * 1000:.2f}ms",
        extra={"fields": fields}
    )


class RequestLoggingMiddleware:
    """
    ASGI middleware emitting one RequestRecord per HTTP request.

    The clock stops when the last body message has been sent, so the
    duration of a streamed download covers the whole transfer. A request
    whose handler raises before responding is recorded with status 500.
    """

    def __init__(self, app: ASGIApp, sink: Optional[RecordSink] = None):
        self.app = app
        self.sink = sink or log_record

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        finished: Optional[float] = None
        status_code = 500

        async def send_wrapper(message: Message):
            nonlocal finished, status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                finished = time.perf_counter()

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            end = finished if finished is not None else time.perf_counter()
            self.sink(build_request_record(
                scope["method"],
                scope["path"],
                client_address(scope),
                status_code,
                end - start,
            ))


def client_address(scope: Scope) -> Optional[str]:
    client = scope.get("client")
    if not client:
        return None
    host, port = client
    return f"{host}:{port}" if port else host


def install_request_logging(app: FastAPI, sink: Optional[RecordSink] = None):
    """Emit one record per request handled by app"""
    app.add_middleware(RequestLoggingMiddleware, sink=sink)


class JsonFormatter(logging.Formatter):
    """Formats log records as single line JSON objects"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload.update(fields)
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", log_format: str = "text", log_file: Optional[str] = None):
    """Configure the root logger once at startup"""
    formatter = JsonFormatter() if log_format == "json" else logging.Formatter(LOG_FORMAT)

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=getattr(logging, level.upper()), handlers=handlers, force=True)
