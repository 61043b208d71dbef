from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

ENGINE_KEY = "sqlalchemy_engine"
SESSIONMAKER_KEY = "sqlalchemy_sessionmaker"

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _engine_options(db_url: str) -> dict[str, Any]:
    opts: dict[str, Any] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        opts.update(pool_recycle=1800, pool_size=5, max_overflow=10, pool_timeout=30)
    elif db_url in _IN_MEMORY_URLS:
        # A single shared connection; each new one would open an empty database.
        opts.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
    return opts


def make_engine(db_url: str) -> Engine:
    return create_engine(db_url, **_engine_options(db_url))


def make_sessionmaker(engine: Engine) -> sessionmaker:
    # Objects stay readable after commit; templates render them after the handler returns.
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


def init_db(app: Flask, engine: Engine | None = None) -> None:
    """Attach an engine and a sessionmaker to app.extensions."""
    engine = engine or make_engine(app.config["DATABASE_URL"])
    if app.debug:
        @event.listens_for(engine, "checkout")
        def _on_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-untyped-def]
            logger.debug("DB connection checked out")

    app.extensions[ENGINE_KEY] = engine
    app.extensions[SESSIONMAKER_KEY] = make_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session, closed on app-context teardown.

    Uses the pool the context pipeline put on the request scope, falling
    back to the app's sessionmaker outside the pipeline.
    """
    s = getattr(g, "db_session", None)
    if s is not None:
        return s
    scope = getattr(g, "scope", None)
    sm = getattr(scope, "pool", None)
    if sm is None:
        sm = (app or current_app).extensions[SESSIONMAKER_KEY]
    g.db_session = s = sm()
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is not None:
        s.close()


@contextmanager
def transaction(sm: sessionmaker) -> Generator[Session, None, None]:
    """Commit on success, roll back on error, always close."""
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    with transaction(app.extensions[SESSIONMAKER_KEY]) as s:
        yield s
