"""HTTP middleware: correlation IDs, request metrics, tracing and access logs."""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from clinic_saas.core.logging import (
    bind_tenant,
    clear_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from clinic_saas.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)
from clinic_saas.core.tracing import record_exception, start_span, tag_span

CORRELATION_ID_HEADER = "X-Correlation-ID"

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    flags=re.IGNORECASE,
)
_NUMERIC_RE = re.compile(r"/\d+(?=/|$)")


def normalize_path(path: str) -> str:
    """Collapse invoice, payment and line-item ids so metric labels stay bounded.

    ``/api/v1/billing/invoices/<uuid>/items/2`` becomes
    ``/api/v1/billing/invoices/{id}/items/{id}``.
    """
    return _NUMERIC_RE.sub("/{id}", _UUID_RE.sub("{id}", path))


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts requests and records latency per method and normalized path."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        labels = {"method": request.method, "endpoint": normalize_path(request.url.path)}
        HTTP_REQUESTS_IN_PROGRESS.labels(**labels).inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUEST_DURATION_SECONDS.labels(**labels).observe(time.perf_counter() - started)
            HTTP_REQUESTS_TOTAL.labels(**labels, status_code=str(status_code)).inc()
            HTTP_REQUESTS_IN_PROGRESS.labels(**labels).dec()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Adopts or mints the request correlation ID and echoes it back.

    The tenant log binding set during resolution is cleared on the way out.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()
            bind_tenant(None)


class TracingMiddleware(BaseHTTPMiddleware):
    """Opens the server span that ledger spans nest under."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_path(request.url.path)
        with start_span(
            f"{request.method} {endpoint}",
            {
                "http.method": request.method,
                "http.route": endpoint,
                "http.host": request.url.hostname or "",
                "correlation_id": get_correlation_id(),
            },
            kind=trace.SpanKind.SERVER,
        ):
            try:
                response = await call_next(request)
            except Exception as e:
                record_exception(e)
                raise
            tag_span({"http.status_code": response.status_code})
            return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access-log line per request.

    Client errors such as a rejected refund log at WARNING; unhandled
    exceptions log at ERROR with the traceback.
    """

    def __init__(self, app: ASGIApp, log_request_body: bool = False):
        super().__init__(app)
        self.log_request_body = log_request_body
        self.logger = logging.getLogger("clinic_saas.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        extra = {
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }
        if self.log_request_body and request.method in ("POST", "PUT"):
            extra["body"] = (await request.body()).decode("utf-8", errors="replace")

        try:
            response = await call_next(request)
        except Exception:
            extra["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            self.logger.error("Request failed", extra=extra, exc_info=True)
            raise

        extra["status_code"] = response.status_code
        extra["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        level = logging.WARNING if 400 <= response.status_code < 500 else logging.INFO
        self.logger.log(level, "Request completed", extra=extra)
        return response


__all__ = [
    "CORRELATION_ID_HEADER",
    "CorrelationIdMiddleware",
    "MetricsMiddleware",
    "RequestLoggingMiddleware",
    "TracingMiddleware",
    "normalize_path",
]
