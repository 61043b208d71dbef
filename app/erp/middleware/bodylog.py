"""
Request/response body logging.

Only bodies whose content type is on the allow-list are read. A request body
that cannot be parsed aborts the request (400) before any handler runs; a
response body that cannot be parsed is only logged, the client already has it.
"""
from __future__ import annotations

import codecs
import enum
import io
import json
import re
from collections.abc import Iterable
from typing import Any
from urllib.parse import parse_qsl
from xml.etree import ElementTree

from werkzeug.exceptions import ClientDisconnected
from werkzeug.http import parse_options_header
from werkzeug.wrappers import Response
from werkzeug.wsgi import get_input_stream

from app.erp.logging import FieldsLogger

DEFAULT_BODY_CONTENT_TYPES = (
    "application/json",
    "application/x-www-form-urlencoded",
    "application/xml",
    "text/xml",
)

_READ_CHUNK = 64 * 1024
_INVALID_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class BodyFormat(enum.Enum):
    JSON = "JSON"
    FORM = "form-urlencoded"
    XML = "XML"
    RAW = "raw"


class BodyParseError(ValueError):
    def __init__(self, fmt: BodyFormat, reason: str) -> None:
        super().__init__(f"invalid {fmt.value} body: {reason}")
        self.format = fmt
        self.reason = reason


class BodyReadError(OSError):
    def __init__(self, partial: bytes, cause: BaseException) -> None:
        super().__init__(f"failed after {len(partial)} bytes: {cause}")
        self.partial = partial


def should_log_body(content_type: str | None, allowed: Iterable[str] = DEFAULT_BODY_CONTENT_TYPES) -> bool:
    ct = (content_type or "").lower()
    return any(kind in ct for kind in allowed)


def body_charset(content_type: str | None, default: str = "utf-8") -> str:
    charset = parse_options_header(content_type or "")[1].get("charset") or default
    try:
        return codecs.lookup(charset).name
    except LookupError:
        return default


def body_format(content_type: str | None) -> BodyFormat:
    ct = (content_type or "").lower()
    if "application/json" in ct:
        return BodyFormat.JSON
    if "application/x-www-form-urlencoded" in ct:
        return BodyFormat.FORM
    if "application/xml" in ct or "text/xml" in ct:
        return BodyFormat.XML
    return BodyFormat.RAW


# ---------- parsing ----------
def parse_form(data: bytes, charset: str = "utf-8") -> dict[str, str]:
    """
    Decode a form-urlencoded body into key -> comma-joined values.

    Bytes that do not fit the charset are replaced; only a malformed %-escape
    makes the body invalid.
    """
    text = data.decode(charset, errors="replace")
    if _INVALID_ESCAPE.search(text):
        raise BodyParseError(BodyFormat.FORM, "invalid URL escape")
    values: dict[str, list[str]] = {}
    for key, value in parse_qsl(text, keep_blank_values=True, encoding=charset, errors="replace"):
        values.setdefault(key, []).append(value)
    return {key: ",".join(vs) for key, vs in values.items()}


def _xml_node(el: ElementTree.Element) -> dict[str, Any]:
    node: dict[str, Any] = {}
    if el.attrib:
        node["@attributes"] = dict(el.attrib)
    text = (el.text or "").strip()
    if text:
        node["#text"] = text
    return node


def _element_to_dict(root: ElementTree.Element) -> dict[str, Any]:
    # Iterative walk; nesting depth is bounded by memory, not the interpreter stack.
    top = _xml_node(root)
    stack = [(child, top) for child in reversed(list(root))]
    while stack:
        el, parent = stack.pop()
        node = _xml_node(el)
        if el.tag in parent:
            existing = parent[el.tag]
            if not isinstance(existing, list):
                parent[el.tag] = existing = [existing]
            existing.append(node)
        else:
            parent[el.tag] = node
        stack.extend((child, node) for child in reversed(list(el)))
    return {root.tag: top}


def parse_xml(data: bytes) -> dict[str, Any]:
    try:
        root = ElementTree.fromstring(data)
    except ElementTree.ParseError as e:
        raise BodyParseError(BodyFormat.XML, str(e)) from e
    return _element_to_dict(root)


def parse_body(data: bytes, fmt: BodyFormat, max_length: int = 0, charset: str = "utf-8") -> Any:
    """Parse a buffered body for logging. Raw text is truncated to max_length when > 0."""
    if fmt is BodyFormat.JSON:
        try:
            return json.loads(data)
        except (ValueError, RecursionError) as e:
            # RecursionError: nesting deeper than the decoder can follow.
            raise BodyParseError(BodyFormat.JSON, str(e)) from e
    if fmt is BodyFormat.FORM:
        return parse_form(data, charset)
    if fmt is BodyFormat.XML:
        return parse_xml(data)
    text = data.decode(charset, errors="replace")
    if max_length > 0 and len(text) > max_length:
        return text[:max_length]
    return text


# ---------- request path ----------
def read_request_body(environ: dict) -> bytes:
    """
    Drain the request body and put an equivalent stream back on the environ.

    The replacement is installed even when the read fails partway, so whatever
    runs next never sees a half-consumed stream.
    """
    stream = get_input_stream(environ)
    buf = bytearray()
    try:
        while True:
            chunk = stream.read(_READ_CHUNK)
            if not chunk:
                break
            buf += chunk
    except (OSError, ClientDisconnected) as e:
        raise BodyReadError(bytes(buf), e) from e
    finally:
        data = bytes(buf)
        environ["wsgi.input"] = io.BytesIO(data)
        environ["CONTENT_LENGTH"] = str(len(data))
        environ.pop("wsgi.input_terminated", None)
    return data


def error_response(message: str, status: int) -> Response:
    resp = Response(message + "\n", status=status, mimetype="text/plain")
    resp.headers["X-Content-Type-Options"] = "nosniff"
    return resp


def log_request_body(
    environ: dict,
    content_type: str | None,
    log: FieldsLogger,
    *,
    max_length: int = 0,
) -> Response | None:
    """Log the request body. Returns the response to short-circuit with, if any."""
    try:
        data = read_request_body(environ)
    except BodyReadError as e:
        log.error("failed to read request-body", exc_info=e)
        return error_response("failed to read request-body", 500)

    fmt = body_format(content_type)
    try:
        parsed = parse_body(data, fmt, max_length, body_charset(content_type))
    except BodyParseError as e:
        message = f"failed to parse {e.format.value} request-body"
        log.with_fields(error=e.reason).error(message)
        return error_response(message, 400)

    if fmt is BodyFormat.RAW:
        log.with_fields(request_body=parsed).info("request-body parsed")
    else:
        log.with_fields(request_body=parsed).info(f"{fmt.value} request-body parsed")
    return None


# ---------- response path ----------
def log_response_body(
    body: bytes | None,
    content_type: str | None,
    log: FieldsLogger,
    *,
    max_length: int = 0,
) -> None:
    """Log a response body that was already sent. Never raises for bad bodies."""
    if body is None:
        log.error("response-body is not readable")
        return

    fmt = body_format(content_type)
    try:
        parsed = parse_body(body, fmt, max_length, body_charset(content_type))
    except BodyParseError as e:
        log.with_fields(error=e.reason).error(f"failed to parse {e.format.value} response-body")
        return

    if fmt is BodyFormat.RAW:
        log.with_fields(response_body=parsed).info("response-body parsed")
    else:
        log.with_fields(response_body=parsed).info(f"{fmt.value} response-body parsed")
