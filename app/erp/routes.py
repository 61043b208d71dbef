from flask import Blueprint, current_app, render_template
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.erp.application import EXTENSION_KEY
from app.erp.context import use_logger
from app.erp.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Readiness check: pings the database and lists the mounted modules."""
    application = current_app.extensions.get(EXTENSION_KEY)
    body = {
        "ok": True,
        "env": current_app.config.get("ENV", ""),
        "modules": [m.name for m in application.modules] if application else [],
    }
    try:
        db_session().execute(text("SELECT 1"))
    except SQLAlchemyError:
        use_logger().exception("Health check: database unreachable")
        body["ok"] = False
        return body, 503
    return body


@bp.get("/healthz")
def healthz():
    # Liveness probe; must not touch the database.
    return "ok", 200
