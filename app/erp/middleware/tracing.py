"""
OpenTelemetry trace propagation for inbound requests.

The tracer is always injected; nothing here reads or installs the global
tracer provider.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, Tracer
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from werkzeug.wsgi import ClosingIterator
from werkzeug.wrappers import Request

logger = logging.getLogger(__name__)

TRACER_NAME = "erp.middleware"

TRACE_ID_HEADER = "X-Trace-Id"
SPAN_ID_HEADER = "X-Span-Id"


def init_tracing(
    *,
    service_name: str = "erp",
    exporter: SpanExporter | None = None,
    batch: bool = False,
) -> TracerProvider:
    """Build a tracer provider for the middleware.

    Args:
        service_name: Service name for the OTel resource.
        exporter: Where finished spans go. None keeps spans in-process only
            (ids are still generated and propagated).
        batch: Export through a BatchSpanProcessor instead of exporting inline.
    """
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if exporter is not None:
        processor = BatchSpanProcessor(exporter) if batch else SimpleSpanProcessor(exporter)
        provider.add_span_processor(processor)
    return provider


def exporter_from_config(name: str) -> SpanExporter | None:
    if name == "console":
        return ConsoleSpanExporter()
    if name not in ("", "none"):
        logger.warning("Unknown OTEL_TRACES_EXPORTER=%r; spans will not be exported", name)
    return None


def format_trace_id(span: Span) -> str:
    return trace.format_trace_id(span.get_span_context().trace_id)


def format_span_id(span: Span) -> str:
    return trace.format_span_id(span.get_span_context().span_id)


class RequestSpan:
    """Owns one request span and ends it exactly once."""

    def __init__(self, span: Span) -> None:
        self.span = span
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def context(self) -> Context:
        return trace.set_span_in_context(self.span)

    def set_attributes(self, attributes: Mapping[str, Any]) -> None:
        if not self._ended:
            self.span.set_attributes(dict(attributes))

    def fail(self, exc: BaseException) -> None:
        if self._ended:
            return
        self.span.record_exception(exc)
        self.span.set_status(Status(StatusCode.ERROR, type(exc).__name__))

    def finish(self) -> None:
        if self._ended:
            return
        self._ended = True
        self.span.end()


class TracePropagator:
    def __init__(self, tracer: Tracer, propagator: TraceContextTextMapPropagator | None = None) -> None:
        self.tracer = tracer
        self.propagator = propagator or TraceContextTextMapPropagator()

    def extract(self, headers: Mapping[str, str]) -> Context:
        return self.propagator.extract(carrier=headers)

    def start(
        self,
        name: str,
        request: Request,
        *,
        attributes: Mapping[str, Any] | None = None,
    ) -> RequestSpan:
        """Start a SERVER span as a child of whatever trace the caller propagated."""
        parent = self.extract(request.headers)
        span = self.tracer.start_span(
            name,
            context=parent,
            kind=SpanKind.SERVER,
            attributes={
                "http.method": request.method,
                "http.url": request.url,
                "http.host": request.host,
                **(attributes or {}),
            },
        )
        return RequestSpan(span)

    def inject(self, request_span: RequestSpan, carrier: dict[str, str]) -> dict[str, str]:
        self.propagator.inject(carrier, context=request_span.context)
        return carrier

    def correlation_headers(self, request_span: RequestSpan) -> dict[str, str]:
        """Propagation headers plus X-Trace-Id / X-Span-Id for the caller to correlate."""
        headers = self.inject(request_span, {})
        if request_span.span.get_span_context().is_valid:
            headers[TRACE_ID_HEADER] = format_trace_id(request_span.span)
            headers[SPAN_ID_HEADER] = format_span_id(request_span.span)
        return headers


class TracedMiddleware:
    """
    Wraps a WSGI app in a named span ("middleware.<name>").

    The new context is injected into the request headers seen downstream, so
    inner middleware and handlers continue the same trace.
    """

    def __init__(self, app: Any, tracer: Tracer, name: str) -> None:
        self.app = app
        self.name = name
        self.propagator = TracePropagator(tracer)

    def __call__(self, environ: dict, start_response: Any) -> Iterable[bytes]:
        request = Request(environ, populate_request=False, shallow=True)
        request_span = self.propagator.start(
            f"middleware.{self.name}",
            request,
            attributes={"middleware.name": self.name},
        )
        for key, value in self.propagator.inject(request_span, {}).items():
            environ["HTTP_" + key.upper().replace("-", "_")] = value

        try:
            with trace.use_span(request_span.span, end_on_exit=False):
                app_iter = self.app(environ, start_response)
        except BaseException as exc:
            request_span.fail(exc)
            request_span.finish()
            raise
        return ClosingIterator(app_iter, [request_span.finish])
