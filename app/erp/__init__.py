import logging as stdlib_logging
import os
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from dotenv import load_dotenv
from flask import Flask, g, render_template
from opentelemetry.sdk.trace import TracerProvider

from app.erp.application import EXTENSION_KEY, Application
from app.erp.auth import bp as auth_bp
from app.erp.config import load_config
from app.erp.context import default_pipeline, install_pipeline
from app.erp.db import ENGINE_KEY, init_db, teardown_db_session
from app.erp.logging import FieldsLogger, configure_logging
from app.erp.middleware import LoggerOptions, LoggingMiddleware, init_tracing
from app.erp.middleware.tracing import TRACER_NAME, exporter_from_config
from app.erp.modules.core import CoreModule
from app.erp.rbac import install_permission_helpers
from app.erp.routes import bp as routes_bp

TRACER_PROVIDER_KEY = "erp.tracer_provider"


def build_router(config: Mapping[str, Any] | None = None) -> Flask:
    """
    Flask app with templates, error handlers and the base blueprints.
    Shared by create_app() and the integration test harness.
    """
    app = Flask(__name__, template_folder="templates")
    app.config.from_mapping(config if config is not None else load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.teardown_appcontext(teardown_db_session)
    install_permission_helpers(app)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        scope = getattr(g, "scope", None)
        rid = scope.request_id if scope is not None else None
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return render_template("errors/500.html", request_id=rid), 500

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        return render_template("errors/403.html"), 403

    return app


def wrap_logging(app: Flask, tracer_provider: TracerProvider, logger: FieldsLogger | None = None) -> None:
    app.wsgi_app = LoggingMiddleware(  # type: ignore[method-assign]
        app.wsgi_app,
        logger=logger or FieldsLogger(stdlib_logging.getLogger("erp.http")),
        tracer=tracer_provider.get_tracer(TRACER_NAME),
        options=LoggerOptions.from_config(app.config),
        request_id_header=app.config.get("REQUEST_ID_HEADER", "X-Request-Id"),
        real_ip_header=app.config.get("REAL_IP_HEADER", "X-Real-Ip"),
    )


def create_app(
    config: Mapping[str, Any] | None = None,
    *,
    tracer_provider: TracerProvider | None = None,
    application: Application | None = None,
) -> Flask:
    load_dotenv()
    cfg = dict(config) if config is not None else load_config()
    configure_logging(cfg.get("LOG_LEVEL", "INFO"), bool(cfg.get("LOG_JSON")))

    # Production guardrails (fail fast with clear logs)
    env = (cfg.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not cfg.get("DATABASE_URL") or str(cfg["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(cfg["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not cfg.get("SECRET_KEY") or str(cfg["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    app = build_router(cfg)
    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get(ENGINE_KEY)
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if application is None:
        application = Application([CoreModule()], default_locale=cfg.get("DEFAULT_LOCALE", "en"))
    app.extensions[EXTENSION_KEY] = application
    application.register_controllers(app)

    if tracer_provider is None:
        tracer_provider = init_tracing(
            service_name=cfg.get("OTEL_SERVICE_NAME", "erp"),
            exporter=exporter_from_config(cfg.get("OTEL_TRACES_EXPORTER", "none")),
            batch=True,
        )
    app.extensions[TRACER_PROVIDER_KEY] = tracer_provider

    install_pipeline(app, default_pipeline())
    wrap_logging(app, tracer_provider)

    stdlib_logging.getLogger(__name__).info(
        "create_app() complete; app ready to serve (modules=%s)",
        ",".join(m.name for m in application.modules),
    )
    return app
