"""OpenTelemetry tracing.

``TracingMiddleware`` opens a server span per request. Every outermost
ledger unit of work opens a child span named after the ledger method, and
the tenant resolver stamps the resolved tenant onto the active span.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "clinic_saas"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    enable_console_export: bool = False,
) -> None:
    """Install the global tracer provider and W3C trace-context propagation.

    Spans go to the console only when ``enable_console_export`` is set;
    otherwise they are created for log correlation and dropped.
    """
    global _provider

    _provider = TracerProvider(
        resource=Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
            "deployment.environment": environment,
        })
    )
    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_provider)
    set_global_textmap(TraceContextTextMapPropagator())
    logger.info(
        "Tracing initialized",
        extra={"service": service_name, "console_export": enable_console_export},
    )


def _span_context():
    context = trace.get_current_span().get_span_context()
    return context if context.is_valid else None


def get_trace_id() -> Optional[str]:
    """Hex trace ID of the active span, if any."""
    context = _span_context()
    return format(context.trace_id, "032x") if context else None


def get_span_id() -> Optional[str]:
    """Hex span ID of the active span, if any."""
    context = _span_context()
    return format(context.span_id, "016x") if context else None


@contextmanager
def start_span(
    name: str,
    attributes: Optional[Mapping[str, Any]] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name, kind=kind, attributes=dict(attributes or {})) as span:
        yield span


@contextmanager
def ledger_span(operation: str) -> Iterator[Span]:
    """Span covering one ledger unit of work, e.g. ``InvoiceLedger.apply_payment``."""
    with start_span(f"ledger {operation}", {"ledger.operation": operation}) as span:
        yield span


def tag_span(attributes: Mapping[str, Any]) -> None:
    """Set attributes on the active span. None values are skipped."""
    span = trace.get_current_span()
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def tag_tenant(tenant_id: str, source: str) -> None:
    tag_span({"tenant.id": tenant_id, "tenant.source": source})


def record_exception(exception: BaseException, attributes: Optional[Mapping[str, Any]] = None) -> None:
    """Record an exception on the active span and mark it as errored."""
    span = trace.get_current_span()
    span.record_exception(exception, attributes=dict(attributes or {}))
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans and shut the provider down."""
    if _provider is not None:
        _provider.shutdown()
        logger.info("Tracing shutdown complete")
