from __future__ import annotations

from flask import Blueprint, flash, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash
from werkzeug.wrappers import Request

from app.erp.context import use_logger, use_user
from app.erp.db import db_session
from app.erp.models import User

bp = Blueprint("auth", __name__)

_ANONYMOUS_PREFIXES = ("/static/", "/health", "/healthz")


def _safe_next(nxt: str) -> str:
    # Local paths only.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return "/users"


def load_session_user(req: Request) -> User | None:
    """
    Resolves the current user from the signed session cookie.
    A stale or inactive user id is dropped from the session.
    """
    if req.path.startswith(_ANONYMOUS_PREFIXES):
        return None

    user_id = session.get("user_id")
    if not user_id:
        return None

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except (TypeError, ValueError):
        session.pop("user_id", None)
        return None
    if not user or not user.is_active:
        session.pop("user_id", None)
        return None
    return user


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    if use_user() is not None:
        return redirect(_safe_next(nxt))
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        use_logger().with_fields(email=email).warning("Login failed")
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get"))

    session["user_id"] = user.id
    use_logger().with_fields(user_id=user.id).info("Login succeeded")
    return redirect(_safe_next(nxt))


@bp.get("/logout")
def logout():
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))
