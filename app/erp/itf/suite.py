"""
In-process integration test harness.

A Suite builds the test environment and a router once, installs the same
logging middleware and context pipeline type as production (with synthetic
request values), and dispatches requests through Flask's test client:

    suite = Suite(CoreModule())
    suite.register(UsersController())
    suite.get("/users").expect().status(200).html().element("//h1").exists()
"""
from __future__ import annotations

import json
import time
from dataclasses import replace
from collections.abc import Callable, Iterable, Mapping
from io import BytesIO
from typing import Any
from urllib.parse import urlencode

from flask import Flask
from werkzeug.datastructures import FileStorage, Headers, MultiDict
from werkzeug.test import encode_multipart
from werkzeug.wrappers import Request as WSGIRequest

from app.erp import build_router, wrap_logging
from app.erp.application import EXTENSION_KEY, Controller, Module
from app.erp.config import load_config
from app.erp.context import ContextPipeline, PageContext, RequestParams, RequestScope, install_pipeline
from app.erp.db import ENGINE_KEY, SESSIONMAKER_KEY
from app.erp.itf.environment import TestContext, TestEnvironment
from app.erp.itf.response import Response
from app.erp.middleware.request_logging import ENVIRON_REQUEST_ID, ENVIRON_REQUEST_START
from app.erp.models import User

TEST_IP = "127.0.0.1"
TEST_USER_AGENT = "test-agent"
TEST_LOCALE = "en"

# as_user() not called: fall back to the environment default user.
_DEFAULT_USER = object()

Hook = Callable[[RequestScope], RequestScope]
ScopeMiddleware = Callable[[RequestScope, WSGIRequest], RequestScope]


class MultipartData:
    """Files and form fields for a multipart body. Files are encoded before fields."""

    def __init__(self) -> None:
        self.files: list[tuple[str, str, bytes]] = []
        self.fields: list[tuple[str, str]] = []

    def add_file(self, field_name: str, file_name: str, content: bytes) -> "MultipartData":
        self.files.append((field_name, file_name, content))
        return self

    def add_field(self, key: str, value: str) -> "MultipartData":
        self.fields.append((key, value))
        return self

    def add_form(self, values: Mapping[str, Any] | MultiDict) -> "MultipartData":
        for key, value in _iter_pairs(values):
            self.add_field(key, value)
        return self

    def encode(self, boundary: str | None = None) -> tuple[str, bytes]:
        """Returns (content type, body)."""
        values = MultiDict()
        for field_name, file_name, content in self.files:
            values.add(field_name, FileStorage(stream=BytesIO(content), filename=file_name, name=field_name))
        for key, value in self.fields:
            values.add(key, value)
        boundary, body = encode_multipart(values, boundary=boundary)
        return f"multipart/form-data; boundary={boundary}", body


def _iter_pairs(values: Mapping[str, Any] | MultiDict) -> Iterable[tuple[str, str]]:
    if isinstance(values, MultiDict):
        yield from values.items(multi=True)
        return
    for key, value in values.items():
        if isinstance(value, (list, tuple)):
            for v in value:
                yield key, str(v)
        else:
            yield key, str(value)


class Request:
    def __init__(self, suite: "Suite", method: str, path: str) -> None:
        self.suite = suite
        self.method = method
        self.path = path
        self.headers = Headers()
        self.data: bytes | None = None
        self._cookies: list[str] = []

    def json(self, value: Any) -> "Request":
        self.data = json.dumps(value).encode("utf-8")
        self.headers["Content-Type"] = "application/json"
        return self

    def form(self, values: Mapping[str, Any] | MultiDict) -> "Request":
        self.data = urlencode(list(_iter_pairs(values))).encode("ascii")
        self.headers["Content-Type"] = "application/x-www-form-urlencoded"
        return self

    def multipart(self, data: MultipartData) -> "Request":
        content_type, self.data = data.encode()
        self.headers["Content-Type"] = content_type
        return self

    def file(self, field_name: str, file_name: str, content: bytes) -> "Request":
        return self.multipart(MultipartData().add_file(field_name, file_name, content))

    def body(self, raw: bytes | str) -> "Request":
        """Replace the raw body, keeping the content type."""
        self.data = raw.encode("utf-8") if isinstance(raw, str) else raw
        return self

    def header(self, key: str, value: str) -> "Request":
        self.headers[key] = value
        return self

    def cookie(self, name: str, value: str) -> "Request":
        self._cookies.append(f"{name}={value}")
        return self

    def htmx(self) -> "Request":
        return self.header("Hx-Request", "true")

    def expect(self) -> Response:
        headers = Headers(self.headers)
        if self._cookies:
            headers["Cookie"] = "; ".join(self._cookies)
        # buffered: the body is consumed and closed here, so completion logs and spans are final
        raw = self.suite.client.open(self.path, method=self.method, headers=headers, data=self.data, buffered=True)
        return Response(raw)


class Suite:
    def __init__(
        self,
        *modules: Module,
        env: TestEnvironment | None = None,
        config: Mapping[str, Any] | None = None,
    ) -> None:
        self.env = env or TestContext().with_modules(*modules).build()
        self._user: Any = _DEFAULT_USER
        self._hooks: list[Hook] = []
        self._middlewares: list[ScopeMiddleware] = []

        cfg = load_config()
        cfg.update(
            {
                "TESTING": True,
                "ENV": "test",
                "SECRET_KEY": "itf-secret",
                "DATABASE_URL": self.env.database_url,
                "LOG_REQUEST_BODY": True,
                "LOG_RESPONSE_BODY": True,
            }
        )
        cfg.update(config or {})
        self.router: Flask = build_router(cfg)
        self.router.extensions[ENGINE_KEY] = self.env.engine
        self.router.extensions[SESSIONMAKER_KEY] = self.env.pool
        self.router.extensions[EXTENSION_KEY] = self.env.app

        install_pipeline(self.router, self.pipeline())
        wrap_logging(self.router, self.env.tracer_provider, self.env.logger.with_fields(test=True))
        self.client = self.router.test_client(use_cookies=False)

    # ---------- configuration ----------
    def as_user(self, user: User | None) -> "Suite":
        """Identity for subsequent requests (None for anonymous); the environment is left untouched."""
        self._user = user
        return self

    def register(self, controller: Controller) -> "Suite":
        controller.register(self.router)
        return self

    def with_middleware(self, middleware: ScopeMiddleware) -> "Suite":
        self._middlewares.append(middleware)
        return self

    def before_each(self, hook: Hook) -> "Suite":
        self._hooks.append(hook)
        return self

    def environment(self) -> TestEnvironment:
        return self.env

    # ---------- requests ----------
    def get(self, path: str) -> Request:
        return Request(self, "GET", path)

    def post(self, path: str) -> Request:
        return Request(self, "POST", path)

    def put(self, path: str) -> Request:
        return Request(self, "PUT", path)

    def delete(self, path: str) -> Request:
        return Request(self, "DELETE", path)

    # ---------- context pipeline ----------
    def current_user(self) -> User | None:
        return self.env.user if self._user is _DEFAULT_USER else self._user

    def pipeline(self) -> ContextPipeline:
        return ContextPipeline(
            (
                self._attach_logger,
                self._attach_identity,
                self._attach_tenant,
                self._attach_page_context,
                self._attach_application,
                self._run_hooks,
                self._run_middlewares,
            )
        )

    def _attach_logger(self, scope: RequestScope, req: WSGIRequest) -> RequestScope:
        request_id = req.environ.get(ENVIRON_REQUEST_ID)
        log = self.env.logger.with_fields(test=True, path=req.path, request_id=request_id)
        return replace(
            scope,
            logger=log,
            started_at=req.environ.get(ENVIRON_REQUEST_START, time.time()),
            request_id=request_id,
            params=RequestParams(ip=TEST_IP, user_agent=TEST_USER_AGENT),
        )

    def _attach_identity(self, scope: RequestScope, req: WSGIRequest) -> RequestScope:
        return scope.with_user(self.current_user()).with_session({})

    def _attach_tenant(self, scope: RequestScope, req: WSGIRequest) -> RequestScope:
        return scope.with_tenant_id(self.env.tenant.id)

    def _attach_page_context(self, scope: RequestScope, req: WSGIRequest) -> RequestScope:
        return scope.with_page(
            PageContext(locale=TEST_LOCALE, url=req.path, localizer=self.env.app.localizer(TEST_LOCALE))
        )

    def _attach_application(self, scope: RequestScope, req: WSGIRequest) -> RequestScope:
        return scope.with_application(self.env.app).with_pool(self.env.pool)

    def _run_hooks(self, scope: RequestScope, req: WSGIRequest) -> RequestScope:
        for hook in self._hooks:
            scope = hook(scope)
        return scope

    def _run_middlewares(self, scope: RequestScope, req: WSGIRequest) -> RequestScope:
        for middleware in self._middlewares:
            scope = middleware(scope, req)
        return scope

    # ---------- lifecycle ----------
    def close(self) -> None:
        self.env.close()

    def __enter__(self) -> "Suite":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
