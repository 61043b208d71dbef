"""Tests for request/response body logging in LoggingMiddleware."""
import logging

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from werkzeug.test import Client
from werkzeug.wrappers import Request, Response

from app.erp.logging import FieldsLogger, record_fields
from app.erp.middleware import LoggerOptions, LoggingMiddleware, init_tracing
from app.erp.middleware.bodylog import (
    DEFAULT_BODY_CONTENT_TYPES,
    BodyFormat,
    BodyParseError,
    body_charset,
    body_format,
    parse_body,
    parse_form,
    should_log_body,
)


class _Echo:
    """Echoes the request body back and remembers whether it ran."""

    def __init__(self):
        self.calls = 0

    def __call__(self, environ, start_response):
        self.calls += 1
        request = Request(environ)
        body = request.get_data()
        resp = Response(body, mimetype=request.mimetype or "application/octet-stream")
        return resp(environ, start_response)


class _BrokenStream:
    def read(self, *args):
        raise OSError("connection reset")


@pytest.fixture()
def tracer():
    return init_tracing(exporter=InMemorySpanExporter()).get_tracer("test")


def _client(app, tracer, **options):
    mw = LoggingMiddleware(
        app,
        logger=FieldsLogger(logging.getLogger("test.http")),
        tracer=tracer,
        options=LoggerOptions(**options),
    )
    return Client(mw)


def _records(caplog, message):
    return [r for r in caplog.records if r.getMessage() == message]


def test_json_body_is_intact_downstream(tracer, caplog):
    caplog.set_level(logging.INFO)
    app = _Echo()
    payload = b'{"name": "widget", "qty": 3}'
    r = _client(app, tracer).post("/", data=payload, content_type="application/json", buffered=True)

    assert r.status_code == 200
    assert r.get_data() == payload
    (rec,) = _records(caplog, "JSON request-body parsed")
    assert record_fields(rec)["request_body"] == {"name": "widget", "qty": 3}


def test_invalid_json_is_rejected_before_handler(tracer):
    app = _Echo()
    r = _client(app, tracer).post("/", data=b"not-json", content_type="application/json", buffered=True)

    assert r.status_code == 400
    assert r.get_data(as_text=True) == "failed to parse JSON request-body\n"
    assert r.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert app.calls == 0


@pytest.mark.parametrize(
    "data",
    [b"a=%zz", b"a=%"],
)
def test_invalid_form_is_rejected(tracer, data):
    app = _Echo()
    r = _client(app, tracer).post(
        "/", data=data, content_type="application/x-www-form-urlencoded", buffered=True
    )
    assert r.status_code == 400
    assert r.get_data(as_text=True) == "failed to parse form-urlencoded request-body\n"
    assert app.calls == 0


def test_form_in_declared_charset_reaches_handler(tracer, caplog):
    caplog.set_level(logging.INFO)
    app = _Echo()
    r = _client(app, tracer).post(
        "/",
        data=b"name=Jos%E9&city=M\xfcnchen",
        content_type="application/x-www-form-urlencoded; charset=ISO-8859-1",
        buffered=True,
    )
    assert r.status_code == 200
    assert app.calls == 1
    (rec,) = _records(caplog, "form-urlencoded request-body parsed")
    assert record_fields(rec)["request_body"] == {"name": "Jos\u00e9", "city": "M\u00fcnchen"}


def test_deeply_nested_json_is_rejected(tracer):
    app = _Echo()
    depth = 100_000
    r = _client(app, tracer).post(
        "/", data="[" * depth + "]" * depth, content_type="application/json", buffered=True
    )
    assert r.status_code == 400
    assert r.get_data(as_text=True) == "failed to parse JSON request-body\n"
    assert app.calls == 0


def test_deeply_nested_xml_is_accepted(tracer, caplog):
    caplog.set_level(logging.INFO)
    app = _Echo()
    depth = 3000
    r = _client(app, tracer).post(
        "/", data="<a>" * depth + "x" + "</a>" * depth, content_type="application/xml", buffered=True
    )
    assert r.status_code == 200
    assert app.calls == 1
    (rec,) = _records(caplog, "XML request-body parsed")
    node = record_fields(rec)["request_body"]["a"]
    for _ in range(depth - 1):
        node = node["a"]
    assert node == {"#text": "x"}


def test_invalid_xml_is_rejected(tracer):
    app = _Echo()
    r = _client(app, tracer).post("/", data=b"<order><id>1</order>", content_type="text/xml", buffered=True)
    assert r.status_code == 400
    assert r.get_data(as_text=True) == "failed to parse XML request-body\n"
    assert app.calls == 0


def test_read_failure_returns_500(tracer):
    app = _Echo()
    r = _client(app, tracer).post(
        "/",
        input_stream=_BrokenStream(),
        content_length=16,
        content_type="application/json",
        buffered=True,
    )
    assert r.status_code == 500
    assert r.get_data(as_text=True) == "failed to read request-body\n"
    assert app.calls == 0


def test_form_body_logged_with_joined_values(tracer, caplog):
    caplog.set_level(logging.INFO)
    app = _Echo()
    r = _client(app, tracer).post(
        "/", data=b"tag=a&tag=b&name=x", content_type="application/x-www-form-urlencoded", buffered=True
    )
    assert r.status_code == 200
    assert r.get_data() == b"tag=a&tag=b&name=x"
    (rec,) = _records(caplog, "form-urlencoded request-body parsed")
    assert record_fields(rec)["request_body"] == {"tag": "a,b", "name": "x"}


def test_non_allow_listed_body_is_not_read(tracer, caplog):
    caplog.set_level(logging.INFO)
    app = _Echo()
    r = _client(app, tracer).post("/", data=b"plain text", content_type="text/plain", buffered=True)
    assert r.status_code == 200
    assert r.get_data() == b"plain text"
    assert not any("request_body" in record_fields(rec) for rec in caplog.records)


def test_request_body_logging_can_be_disabled(tracer):
    app = _Echo()
    r = _client(app, tracer, log_request_body=False).post(
        "/", data=b"not-json", content_type="application/json", buffered=True
    )
    assert r.status_code == 200
    assert app.calls == 1


def test_extra_content_type_logged_as_truncated_text(tracer, caplog):
    caplog.set_level(logging.INFO)
    app = _Echo()
    client = _client(
        app,
        tracer,
        max_body_length=5,
        body_content_types=DEFAULT_BODY_CONTENT_TYPES + ("text/plain",),
    )
    client.post("/", data=b"hello world", content_type="text/plain", buffered=True)
    (rec,) = _records(caplog, "request-body parsed")
    assert record_fields(rec)["request_body"] == "hello"


def test_response_body_logged(tracer, caplog):
    caplog.set_level(logging.INFO)

    @Request.application
    def app(request):
        return Response('{"ok": true}', mimetype="application/json")

    _client(app, tracer).get("/", buffered=True)
    (rec,) = _records(caplog, "JSON response-body parsed")
    assert record_fields(rec)["response_body"] == {"ok": True}


def test_response_parse_failure_is_logged_only(tracer, caplog):
    caplog.set_level(logging.INFO)

    @Request.application
    def app(request):
        return Response("definitely not json", mimetype="application/json")

    r = _client(app, tracer).get("/", buffered=True)
    assert r.status_code == 200
    assert r.get_data(as_text=True) == "definitely not json"
    (rec,) = _records(caplog, "failed to parse JSON response-body")
    assert rec.levelno == logging.ERROR


def test_unreadable_response_body_is_logged(tracer, caplog):
    caplog.set_level(logging.INFO)

    class _FileWrapper:
        def __init__(self, chunks):
            self.chunks = chunks

        def __iter__(self):
            return iter(self.chunks)

    def app(environ, start_response):
        start_response("200 OK", [("Content-Type", "application/json")])
        return _FileWrapper([b"{}"])

    r = _client(app, tracer).get("/", environ_overrides={"wsgi.file_wrapper": _FileWrapper}, buffered=True)
    assert r.get_data() == b"{}"
    assert _records(caplog, "response-body is not readable")


def test_completion_logged_with_status(tracer, caplog):
    caplog.set_level(logging.INFO)
    _client(_Echo(), tracer).get("/things?page=2", buffered=True)

    (started,) = _records(caplog, "request started")
    assert record_fields(started)["path"] == "/things?page=2"
    assert record_fields(started)["method"] == "GET"
    (done,) = _records(caplog, "request completed")
    fields = record_fields(done)
    assert fields["status_code"] == 200
    assert fields["status_class"] == 2
    assert fields["completed"] is True
    assert fields["request_id"] == record_fields(started)["request_id"]


# ---------- parsing helpers ----------
def test_content_type_dispatch():
    assert body_format("application/json; charset=utf-8") is BodyFormat.JSON
    assert body_format("Application/X-WWW-Form-Urlencoded") is BodyFormat.FORM
    assert body_format("application/xml") is BodyFormat.XML
    assert body_format("text/xml") is BodyFormat.XML
    assert body_format("text/csv") is BodyFormat.RAW
    assert should_log_body("APPLICATION/JSON")
    assert not should_log_body("multipart/form-data; boundary=x")
    assert not should_log_body(None)


def test_parse_form_keeps_blank_values():
    assert parse_form(b"a=&b=1") == {"a": "", "b": "1"}


def test_parse_xml_nested():
    parsed = parse_body(b'<order id="7"><line>a</line><line>b</line><note>x</note></order>', BodyFormat.XML)
    assert parsed == {
        "order": {
            "@attributes": {"id": "7"},
            "line": [{"#text": "a"}, {"#text": "b"}],
            "note": {"#text": "x"},
        }
    }


def test_parse_body_raises_with_format():
    with pytest.raises(BodyParseError) as exc:
        parse_body(b"{", BodyFormat.JSON)
    assert exc.value.format is BodyFormat.JSON


def test_parse_form_uses_charset_and_replaces_bad_bytes():
    assert parse_form(b"city=M\xfcnchen", "iso-8859-1") == {"city": "München"}
    assert parse_form(b"a=\xff") == {"a": "\ufffd"}


def test_body_charset():
    assert body_charset("application/x-www-form-urlencoded; charset=ISO-8859-1") == "iso8859-1"
    assert body_charset("application/json") == "utf-8"
    assert body_charset("text/xml; charset=no-such-charset") == "utf-8"


def test_non_allow_listed_response_is_not_buffered(tracer, caplog):
    caplog.set_level(logging.INFO)
    chunk = b"\0" * 1024

    def app(environ, start_response):
        start_response("200 OK", [("Content-Type", "application/octet-stream")])
        return iter([chunk] * 8)

    r = _client(app, tracer).get("/", buffered=True)
    assert r.get_data() == chunk * 8
    assert not any("response_body" in record_fields(rec) for rec in caplog.records)
    assert not _records(caplog, "response-body is not readable")
