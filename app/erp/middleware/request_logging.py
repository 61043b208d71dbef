from __future__ import annotations

import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Tracer
from werkzeug.datastructures import Headers
from werkzeug.wrappers import Request
from werkzeug.wsgi import ClosingIterator

from app.erp.logging import FieldsLogger
from app.erp.middleware.bodylog import (
    DEFAULT_BODY_CONTENT_TYPES,
    log_request_body,
    log_response_body,
    should_log_body,
)
from app.erp.middleware.response import WrappedResponse
from app.erp.middleware.tracing import (
    SPAN_ID_HEADER,
    TRACE_ID_HEADER,
    RequestSpan,
    TracePropagator,
)

# WSGI environ keys the context pipeline reads back.
ENVIRON_LOGGER = "erp.logger"
ENVIRON_REQUEST_ID = "erp.request_id"
ENVIRON_REQUEST_START = "erp.request_start"
ENVIRON_REAL_IP = "erp.real_ip"

REQUEST_ID_HEADER = "X-Request-Id"
REAL_IP_HEADER = "X-Real-Ip"


@dataclass(frozen=True)
class LoggerOptions:
    log_request_body: bool = True
    log_response_body: bool = True
    max_body_length: int = 512
    body_content_types: tuple[str, ...] = field(default=DEFAULT_BODY_CONTENT_TYPES)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "LoggerOptions":
        return cls(
            log_request_body=bool(config.get("LOG_REQUEST_BODY", True)),
            log_response_body=bool(config.get("LOG_RESPONSE_BODY", True)),
            max_body_length=int(config.get("LOG_MAX_BODY_LENGTH", 512)),
        )


def get_request_id(request: Request, header: str = REQUEST_ID_HEADER) -> str:
    value = request.headers.get(header)
    if value:
        return value
    return str(uuid.uuid4())


def get_real_ip(request: Request, header: str = REAL_IP_HEADER) -> str:
    value = request.headers.get(header)
    if value:
        return value
    return request.remote_addr or ""


def format_headers(headers: Headers | Iterable[tuple[str, str]]) -> dict[str, str]:
    """First value per header name."""
    out: dict[str, str] = {}
    for key, value in headers:
        out.setdefault(key, value)
    return out


class LoggingMiddleware:
    """
    WSGI middleware: request id, structured request/response logs, tracing.

    Order per request: wrap response -> start span -> log request body (may
    answer 400/500 itself) -> handler -> on close: completion log, span
    attributes, response body log, span end.
    """

    def __init__(
        self,
        app: Any,
        *,
        logger: FieldsLogger,
        tracer: Tracer,
        options: LoggerOptions | None = None,
        request_id_header: str = REQUEST_ID_HEADER,
        real_ip_header: str = REAL_IP_HEADER,
    ) -> None:
        self.app = app
        self.logger = logger
        self.propagator = TracePropagator(tracer)
        self.options = options or LoggerOptions()
        self.request_id_header = request_id_header
        self.real_ip_header = real_ip_header

    def __call__(self, environ: dict, start_response: Any) -> Iterable[bytes]:
        start = time.time()
        clock = time.monotonic()
        request = Request(environ, populate_request=False, shallow=True)
        request_id = get_request_id(request, self.request_id_header)
        real_ip = get_real_ip(request, self.real_ip_header)
        user_agent = request.user_agent.string

        log = self.logger.with_fields(request_id=request_id, path=request.full_path.rstrip("?"), method=request.method)
        log.with_fields(
            timestamp=time.time_ns(),
            host=request.host,
            ip=real_ip,
            user_agent=user_agent,
            request_headers=format_headers(request.headers),
        ).info("request started")

        content_type = request.headers.get("Content-Type")
        response = WrappedResponse.wrap(
            environ,
            start_response,
            capture_body=self.options.log_response_body,
            capture_types=self.options.body_content_types,
        )
        request_span = self.propagator.start(
            "http.request",
            request,
            attributes={
                "http.route": request.path,
                "http.user_agent": user_agent,
                "http.request_id": request_id,
                "net.host.name": request.host,
                "net.peer.ip": real_ip,
            },
        )

        try:
            for key, value in self.propagator.correlation_headers(request_span).items():
                response.headers[key] = value
            if TRACE_ID_HEADER in response.headers:
                log = log.with_fields(
                    trace_id=response.headers[TRACE_ID_HEADER],
                    span_id=response.headers[SPAN_ID_HEADER],
                )
            # Always answered under X-Request-Id, whichever header carried it in.
            response.headers[REQUEST_ID_HEADER] = request_id

            environ[ENVIRON_LOGGER] = log
            environ[ENVIRON_REQUEST_ID] = request_id
            environ[ENVIRON_REQUEST_START] = start
            environ[ENVIRON_REAL_IP] = real_ip

            handler = self.app
            if (
                self.options.log_request_body
                and should_log_body(content_type, self.options.body_content_types)
            ):
                failure = log_request_body(environ, content_type, log, max_length=self.options.max_body_length)
                if failure is not None:
                    handler = failure

            with trace.use_span(request_span.span, end_on_exit=False):
                app_iter = handler(environ, response.start_response)
        except BaseException as exc:
            request_span.fail(exc)
            request_span.finish()
            log.exception("request failed")
            raise

        def _finish() -> None:
            self._complete(log, response, request_span, clock)

        body = response.wrap_body(app_iter)
        callbacks = []
        if body is not app_iter and hasattr(app_iter, "close"):
            callbacks.append(app_iter.close)
        callbacks.append(_finish)
        return ClosingIterator(body, callbacks)

    def _complete(self, log: FieldsLogger, response: WrappedResponse, request_span: RequestSpan, clock: float) -> None:
        try:
            status_code = response.status()
            duration_ms = round((time.monotonic() - clock) * 1000.0, 3)
            log.with_fields(
                duration_ms=duration_ms,
                completed=True,
                status_code=status_code,
                status_class=status_code // 100,
                response_headers=format_headers(response.headers),
            ).info("request completed")

            request_span.set_attributes(
                {
                    "http.request_duration_ms": int(duration_ms),
                    "http.status_code": status_code,
                }
            )

            content_type = response.headers.get("Content-Type")
            if self.options.log_response_body and should_log_body(content_type, self.options.body_content_types):
                response.flush()
                log_response_body(response.body(), content_type, log, max_length=self.options.max_body_length)
        finally:
            request_span.finish()
