from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export import SpanExportResult

from embed_proxy.proxy.errors import UpstreamUnreachable
from embed_proxy.server import FilteringSpanExporter, app, proxy_error_handler


def _span(event_type=None):
    span = Mock()
    span.attributes = {"asgi.event.type": event_type} if event_type else {}
    return span


class TestFilteringSpanExporter:
    """Per-chunk body spans are dropped before export."""

    def test_body_spans_filtered(self):
        exporter = Mock()
        exporter.export.return_value = SpanExportResult.SUCCESS
        keep = _span("http.response.start")
        plain = _span()

        result = FilteringSpanExporter(exporter).export(
            [_span("http.response.body"), keep, plain]
        )

        assert result == SpanExportResult.SUCCESS
        exporter.export.assert_called_once_with([keep, plain])

    def test_nothing_left_to_export(self):
        exporter = Mock()
        result = FilteringSpanExporter(exporter).export([_span("http.response.body")])
        assert result == SpanExportResult.SUCCESS
        exporter.export.assert_not_called()

    def test_delegates_lifecycle(self):
        exporter = Mock()
        wrapper = FilteringSpanExporter(exporter)
        wrapper.shutdown()
        wrapper.force_flush(100)
        exporter.shutdown.assert_called_once()
        exporter.force_flush.assert_called_once_with(100)


class TestErrorHandler:
    @pytest.mark.asyncio
    async def test_structured_body(self):
        exc = UpstreamUnreachable("Cannot reach upstream", target_url="https://down.example")

        response = await proxy_error_handler(Mock(), exc)

        assert response.status_code == 502
        assert response.body == (
            b'{"error":"upstream_unreachable","detail":"Cannot reach upstream",'
            b'"status_code":502,"target_url":"https://down.example"}'
        )


class TestApplication:
    """The module-level application served by uvicorn."""

    def test_metrics_exposed(self):
        response = TestClient(app).get("/metrics")
        assert response.status_code == 200
        assert "fastapi_app_info" in response.text

    def test_healthz(self):
        assert TestClient(app).get("/healthz").json() == {"status": "ok"}
