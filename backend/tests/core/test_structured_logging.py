"""Tests for structured log records."""

import json
import logging

from clinic_saas.core.logging import (
    CorrelationIdFilter,
    StructuredFormatter,
    bind_tenant,
    clear_correlation_id,
    set_correlation_id,
    tenant_log_scope,
)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="clinic_saas.billing",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="Invoice created",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def setup_method(self):
        set_correlation_id("req-123")
        bind_tenant(None)

    def teardown_method(self):
        clear_correlation_id()
        bind_tenant(None)

    def test_includes_correlation_and_bound_tenant(self):
        bind_tenant("tenant-a")

        payload = json.loads(StructuredFormatter().format(_record()))

        assert payload["message"] == "Invoice created"
        assert payload["correlation_id"] == "req-123"
        assert payload["tenant_id"] == "tenant-a"

    def test_explicit_tenant_wins(self):
        bind_tenant("tenant-a")
        record = _record(tenant_id="tenant-b")

        payload = json.loads(StructuredFormatter().format(record))

        assert payload["tenant_id"] == "tenant-b"

    def test_extra_fields(self):
        payload = json.loads(StructuredFormatter().format(_record(invoice_number="INV000001")))

        assert payload["extra"] == {"invoice_number": "INV000001"}

    def test_filter_placeholder_is_not_reported(self):
        record = _record()
        CorrelationIdFilter().filter(record)

        payload = json.loads(StructuredFormatter().format(record))

        assert record.tenant_id == "-"
        assert "tenant_id" not in payload
        assert "extra" not in payload

    def test_tenant_scope_restores_binding(self):
        bind_tenant("tenant-a")

        with tenant_log_scope("tenant-b"):
            inside = json.loads(StructuredFormatter().format(_record()))
        outside = json.loads(StructuredFormatter().format(_record()))

        assert inside["tenant_id"] == "tenant-b"
        assert outside["tenant_id"] == "tenant-a"
