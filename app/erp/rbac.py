from collections.abc import Callable
from functools import wraps
from typing import Any
from urllib.parse import urlencode

from flask import Flask, abort, redirect, request
from werkzeug.wrappers import Response

from app.erp.context import use_logger, use_user
from app.erp.models import User

LOGIN_PATH = "/auth/login"


def user_permissions(user: User | None) -> frozenset[str]:
    if not user or not user.is_active:
        return frozenset()
    return frozenset(perm.key for role in user.roles for perm in role.permissions)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in user_permissions(user)


def login_redirect() -> Response:
    """Redirect to the login page, coming back to the current path afterwards."""
    nxt = request.full_path if request.query_string else request.path
    return redirect(f"{LOGIN_PATH}?{urlencode({'next': nxt})}")


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Anonymous users go to the login page; users lacking the permission get a 403."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = use_user()
            if not user or not user.is_active:
                return login_redirect()
            if not user_has_permission(user, permission_key):
                use_logger().with_fields(user_id=user.id, missing_permission=permission_key).warning("Forbidden")
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def install_permission_helpers(app: Flask) -> None:
    @app.context_processor
    def _inject_permissions() -> dict:
        def has_perm(key: str) -> bool:
            try:
                return user_has_permission(use_user(), key)
            except RuntimeError:
                return False

        return {"has_perm": has_perm}
