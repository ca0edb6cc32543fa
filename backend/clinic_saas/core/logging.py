"""Structured logging with correlation and tenant IDs.

Every record carries the request correlation ID and, once the tenant has
been resolved, the tenant ID. The tenant context variable exists for log
enrichment only; ledger calls always receive the tenant ID explicitly.
"""

import json
import logging
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

from clinic_saas.core.timeutils import utcnow
from clinic_saas.core.tracing import get_span_id, get_trace_id

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)

# Placeholder the plain-text format shows when no tenant is bound
NO_TENANT = "-"

# LogRecord attributes that are not caller-supplied extras
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "correlation_id", "tenant_id"}

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "celery", "aiosqlite")


def get_correlation_id() -> str:
    """Correlation ID of the current request.

    Outside a request (Celery sweeps, scripts) the active trace ID is used,
    or a fresh ID is minted and kept for the rest of the context.
    """
    cid = correlation_id_var.get()
    if cid is None:
        cid = get_trace_id() or str(uuid.uuid4())
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


def bind_tenant(tenant_id: Optional[str]) -> None:
    """Attach a tenant ID to subsequent log records in this context."""
    tenant_id_var.set(tenant_id)


@contextmanager
def tenant_log_scope(tenant_id: Any) -> Iterator[None]:
    """Bind a tenant for the duration of a block, restoring the previous one."""
    token = tenant_id_var.set(str(tenant_id))
    try:
        yield
    finally:
        tenant_id_var.reset(token)


def _record_tenant(record: logging.LogRecord) -> Optional[str]:
    tenant_id = getattr(record, "tenant_id", None)
    if tenant_id in (None, NO_TENANT):
        tenant_id = tenant_id_var.get()
    return tenant_id or None


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Caller-supplied ``extra`` fields are nested under ``"extra"``; values
    that are not JSON serializable (UUIDs, Decimals) are stringified.
    """

    def __init__(self, include_stack_trace: bool = True, include_extra_fields: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }
        tenant_id = _record_tenant(record)
        if tenant_id:
            payload["tenant_id"] = tenant_id
        trace_id, span_id = get_trace_id(), get_span_id()
        if trace_id:
            payload["trace_id"] = trace_id
            payload["span_id"] = span_id
        payload["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if record.exc_info and self.include_stack_trace:
            exc_type, exc_value, exc_tb = record.exc_info
            payload["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "stack_trace": traceback.format_exception(exc_type, exc_value, exc_tb)
                if exc_tb else None,
            }

        if self.include_extra_fields:
            extra = {
                key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS
            }
            if extra:
                payload["extra"] = extra

        return json.dumps(payload, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamps correlation and tenant IDs onto records for the text format."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        if getattr(record, "tenant_id", None) is None:
            record.tenant_id = tenant_id_var.get() or NO_TENANT
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Route all logging to stdout through a single handler.

    Args:
        level: Root log level name
        json_format: Emit JSON records instead of the plain-text format
        include_stack_trace: Include tracebacks in JSON records
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s "
            "[%(correlation_id)s] [tenant=%(tenant_id)s] %(message)s"
        ))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log at ERROR, attaching the exception's traceback when given."""
    logger.error(message, exc_info=exception, extra=extra)


def log_warning(logger: logging.Logger, message: str, **extra: Any) -> None:
    logger.warning(message, extra=extra)


def log_info(logger: logging.Logger, message: str, **extra: Any) -> None:
    logger.info(message, extra=extra)
