"""Tests for trace propagation in the HTTP middleware."""
import logging

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode
from werkzeug.test import Client
from werkzeug.wrappers import Request, Response

from app.erp.logging import FieldsLogger
from app.erp.middleware import LoggingMiddleware, TracedMiddleware, init_tracing
from app.erp.middleware.tracing import exporter_from_config

INBOUND_TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
INBOUND_SPAN_ID = "00f067aa0ba902b7"
TRACEPARENT = f"00-{INBOUND_TRACE_ID}-{INBOUND_SPAN_ID}-01"


@pytest.fixture()
def exporter():
    return InMemorySpanExporter()


@pytest.fixture()
def tracer(exporter):
    return init_tracing(service_name="erp-test", exporter=exporter).get_tracer("test")


@Request.application
def hello(request):
    return Response("hello", mimetype="text/plain")


def _logging_client(app, tracer):
    mw = LoggingMiddleware(app, logger=FieldsLogger(logging.getLogger("test.http")), tracer=tracer)
    return Client(mw)


def test_span_continues_inbound_trace(tracer, exporter):
    r = _logging_client(hello, tracer).get("/hello", headers={"traceparent": TRACEPARENT}, buffered=True)
    assert r.status_code == 200

    spans = exporter.get_finished_spans()
    assert len(spans) == 1
    span = spans[0]
    assert span.name == "http.request"
    assert span.kind == SpanKind.SERVER
    assert format(span.context.trace_id, "032x") == INBOUND_TRACE_ID
    assert format(span.parent.span_id, "016x") == INBOUND_SPAN_ID

    assert r.headers["X-Trace-Id"] == INBOUND_TRACE_ID
    assert r.headers["X-Span-Id"] == format(span.context.span_id, "016x")
    assert r.headers["traceparent"].startswith(f"00-{INBOUND_TRACE_ID}-")


def test_span_records_status_and_duration(tracer, exporter):
    @Request.application
    def missing(request):
        return Response("nope", status=404)

    _logging_client(missing, tracer).get("/missing?x=1", buffered=True)

    (span,) = exporter.get_finished_spans()
    attrs = span.attributes
    assert attrs["http.method"] == "GET"
    assert attrs["http.route"] == "/missing"
    assert attrs["http.status_code"] == 404
    assert attrs["http.request_duration_ms"] >= 0
    assert attrs["net.peer.ip"] == "127.0.0.1"
    assert "http.request_id" in attrs


def test_new_trace_without_inbound_context(tracer, exporter):
    r = _logging_client(hello, tracer).get("/", buffered=True)
    (span,) = exporter.get_finished_spans()
    assert span.parent is None
    assert r.headers["X-Trace-Id"] == format(span.context.trace_id, "032x")


def test_span_ends_when_handler_raises(tracer, exporter):
    def boom(environ, start_response):
        raise RuntimeError("handler exploded")

    with pytest.raises(RuntimeError, match="handler exploded"):
        _logging_client(boom, tracer).get("/", buffered=True)

    (span,) = exporter.get_finished_spans()
    assert span.status.status_code == StatusCode.ERROR
    assert any(e.name == "exception" for e in span.events)


def test_traced_middleware_propagates_to_downstream(tracer, exporter):
    seen = {}

    @Request.application
    def inner(request):
        seen["traceparent"] = request.headers.get("traceparent")
        return Response("ok")

    client = Client(TracedMiddleware(inner, tracer, "auth"))
    client.get("/", headers={"traceparent": TRACEPARENT}, buffered=True)

    (span,) = exporter.get_finished_spans()
    assert span.name == "middleware.auth"
    assert span.attributes["middleware.name"] == "auth"
    span_id = format(span.context.span_id, "016x")
    assert seen["traceparent"] == f"00-{INBOUND_TRACE_ID}-{span_id}-01"


def test_traced_middleware_ends_span_on_error(tracer, exporter):
    def boom(environ, start_response):
        raise ValueError("bad")

    with pytest.raises(ValueError):
        Client(TracedMiddleware(boom, tracer, "broken")).get("/", buffered=True)

    (span,) = exporter.get_finished_spans()
    assert span.status.status_code == StatusCode.ERROR


def test_exporter_from_config():
    assert exporter_from_config("none") is None
    assert exporter_from_config("") is None
    assert exporter_from_config("console") is not None
