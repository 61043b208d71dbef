"""
Request scope and the pipeline that builds it.

Each request gets one RequestScope on ``g.scope``. Steps never mutate a scope:
they return a replacement, so a value attached by an earlier step is visible to
every later step and handler, and nothing leaks between requests.
"""
from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from flask import Flask, current_app, g, request, session
from sqlalchemy.orm import sessionmaker
from werkzeug.wrappers import Request

from app.erp.application import EXTENSION_KEY, Application, Localizer
from app.erp.db import SESSIONMAKER_KEY
from app.erp.logging import FieldsLogger
from app.erp.middleware.request_logging import (
    ENVIRON_LOGGER,
    ENVIRON_REAL_IP,
    ENVIRON_REQUEST_ID,
    ENVIRON_REQUEST_START,
    get_request_id,
)
from app.erp.models import User


@dataclass(frozen=True)
class RequestParams:
    ip: str
    user_agent: str
    authenticated: bool = False


@dataclass(frozen=True)
class PageContext:
    locale: str
    url: str
    localizer: Localizer


@dataclass(frozen=True)
class RequestScope:
    logger: FieldsLogger | None = None
    started_at: float | None = None
    request_id: str | None = None
    params: RequestParams | None = None
    user: User | None = None
    session: Mapping[str, Any] | None = None
    tenant_id: str | None = None
    page: PageContext | None = None
    application: Application | None = None
    pool: sessionmaker | None = None

    def with_logger(self, logger: FieldsLogger) -> "RequestScope":
        return replace(self, logger=logger)

    def with_user(self, user: User | None) -> "RequestScope":
        params = self.params
        if params is not None:
            params = replace(params, authenticated=user is not None)
        return replace(self, user=user, params=params)

    def with_session(self, session_: Mapping[str, Any]) -> "RequestScope":
        return replace(self, session=session_)

    def with_tenant_id(self, tenant_id: str | None) -> "RequestScope":
        return replace(self, tenant_id=tenant_id)

    def with_params(self, params: RequestParams) -> "RequestScope":
        return replace(self, params=params)

    def with_page(self, page: PageContext) -> "RequestScope":
        return replace(self, page=page)

    def with_application(self, application: Application) -> "RequestScope":
        return replace(self, application=application)

    def with_pool(self, pool: sessionmaker) -> "RequestScope":
        return replace(self, pool=pool)


Step = Callable[[RequestScope, Request], RequestScope]


class ContextPipeline:
    def __init__(self, steps: Iterable[Step]) -> None:
        self._steps: tuple[Step, ...] = tuple(steps)

    @property
    def steps(self) -> tuple[Step, ...]:
        return self._steps

    def then(self, *steps: Step) -> "ContextPipeline":
        return ContextPipeline(self._steps + steps)

    def run(self, req: Request, scope: RequestScope | None = None) -> RequestScope:
        scope = scope or RequestScope()
        for step in self._steps:
            scope = step(scope, req)
        return scope


# ---------- production steps ----------
def attach_logger(scope: RequestScope, req: Request) -> RequestScope:
    """Logger bound by LoggingMiddleware, or a freshly bound one when it is not installed."""
    environ = req.environ
    request_id = environ.get(ENVIRON_REQUEST_ID) or get_request_id(req, current_app.config.get("REQUEST_ID_HEADER", "X-Request-Id"))
    log = environ.get(ENVIRON_LOGGER)
    if log is None:
        log = FieldsLogger(current_app.logger).with_fields(request_id=request_id, path=req.path, method=req.method)
    ip = environ.get(ENVIRON_REAL_IP) or req.remote_addr or ""
    return replace(
        scope,
        logger=log,
        started_at=environ.get(ENVIRON_REQUEST_START, time.time()),
        request_id=request_id,
        params=RequestParams(ip=ip, user_agent=req.user_agent.string),
    )


def attach_identity(scope: RequestScope, req: Request) -> RequestScope:
    from app.erp.auth import load_session_user

    return scope.with_user(load_session_user(req)).with_session(session._get_current_object())  # type: ignore[attr-defined]


def attach_tenant(scope: RequestScope, req: Request) -> RequestScope:
    return scope.with_tenant_id(scope.user.tenant_id if scope.user is not None else None)


def resolve_locale(user: User | None, req: Request, application: Application) -> str:
    bundle = application.bundle()
    locales = bundle.locales()
    if user is not None and user.ui_language in locales:
        return user.ui_language
    return req.accept_languages.best_match(locales, default=bundle.default_locale) or bundle.default_locale


def attach_page_context(scope: RequestScope, req: Request) -> RequestScope:
    application: Application = current_app.extensions[EXTENSION_KEY]
    locale = resolve_locale(scope.user, req, application)
    return scope.with_page(PageContext(locale=locale, url=req.path, localizer=application.localizer(locale)))


def attach_application(scope: RequestScope, req: Request) -> RequestScope:
    return scope.with_application(current_app.extensions[EXTENSION_KEY]).with_pool(
        current_app.extensions[SESSIONMAKER_KEY]
    )


DEFAULT_STEPS: tuple[Step, ...] = (
    attach_logger,
    attach_identity,
    attach_tenant,
    attach_page_context,
    attach_application,
)


def default_pipeline() -> ContextPipeline:
    return ContextPipeline(DEFAULT_STEPS)


def install_pipeline(app: Flask, pipeline: ContextPipeline) -> None:
    @app.before_request
    def _enrich_request_scope() -> None:
        g.scope = pipeline.run(request._get_current_object())  # type: ignore[attr-defined]

    @app.context_processor
    def _inject_scope() -> dict:
        scope: RequestScope = getattr(g, "scope", None) or RequestScope()
        t = scope.page.localizer.t if scope.page is not None else (lambda key, **_: key)
        return {"scope": scope, "page": scope.page, "current_user": scope.user, "t": t}


# ---------- accessors ----------
class ScopeMissing(RuntimeError):
    pass


def use_scope() -> RequestScope:
    scope = getattr(g, "scope", None)
    if scope is None:
        raise ScopeMissing("request scope is not set; is the context pipeline installed?")
    return scope


def use_logger() -> FieldsLogger:
    log = use_scope().logger
    if log is None:
        raise ScopeMissing("logger not found in request scope")
    return log


def use_user() -> User | None:
    return use_scope().user


def use_tenant_id() -> str | None:
    return use_scope().tenant_id


def use_page_context() -> PageContext:
    page = use_scope().page
    if page is None:
        raise ScopeMissing("page context not found in request scope")
    return page


def use_localizer() -> Localizer:
    return use_page_context().localizer


def use_application() -> Application:
    application = use_scope().application
    if application is None:
        raise ScopeMissing("application not found in request scope")
    return application


def use_pool() -> sessionmaker:
    pool = use_scope().pool
    if pool is None:
        raise ScopeMissing("pool not found in request scope")
    return pool


def is_htmx() -> bool:
    return request.headers.get("Hx-Request", "").lower() == "true"
