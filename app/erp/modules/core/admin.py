from __future__ import annotations

from flask import Blueprint, Flask, Response, abort, redirect, render_template, request, url_for

from app.erp.context import is_htmx, use_logger, use_pool, use_tenant_id
from app.erp.db import db_session
from app.erp.modules.core.service import FindParams, UserQueryService, create_user, validate_user_payload
from app.erp.modules.core.values import UILanguage
from app.erp.rbac import require_permission

bp = Blueprint("users", __name__)

PAGE_SIZE = 20


def hx_redirect(location: str) -> Response:
    """HTMX follows HX-Redirect on a 200; plain browsers get a 302."""
    if is_htmx():
        resp = Response("", status=200)
        resp.headers["HX-Redirect"] = location
        return resp
    return redirect(location)


def _page_arg() -> int:
    try:
        return max(int(request.args.get("page") or 1), 1)
    except ValueError:
        return 1


# ---------- List ----------
@bp.get("/users")
@require_permission("users.view")
def users_list():
    page = _page_arg()
    search = (request.args.get("q") or "").strip()
    params = FindParams(
        limit=PAGE_SIZE,
        offset=(page - 1) * PAGE_SIZE,
        sort_by=(request.args.get("sort") or "created_at").strip(),
        sort_desc=(request.args.get("order") or "desc").lower() != "asc",
        search=search,
        tenant_id=use_tenant_id(),
    )
    svc = UserQueryService(db_session())
    users, total = svc.search_users(params) if search else svc.find_users_with_roles(params)

    # HTMX search/pagination only swaps the table.
    template = "users/_table.html" if is_htmx() else "users/list.html"
    return render_template(template, users=users, total=total, page=page, page_size=PAGE_SIZE, search=search)


# ---------- New ----------
@bp.get("/users/new")
@require_permission("users.create")
def users_new_get():
    return render_template("users/new.html", form={}, errors={}, languages=UILanguage.choices())


@bp.post("/users")
@require_permission("users.create")
def users_new_post():
    s = db_session()
    payload = {
        "email": request.form.get("email"),
        "first_name": request.form.get("first_name"),
        "last_name": request.form.get("last_name"),
        "password": request.form.get("password"),
        "ui_language": request.form.get("ui_language"),
    }

    errors = validate_user_payload(s, payload)
    if errors:
        form = {k: v for k, v in payload.items() if k != "password"}
        return render_template("users/new.html", form=form, errors=errors, languages=UILanguage.choices())

    user = create_user(s, payload, use_tenant_id())
    s.commit()
    use_logger().with_fields(user_id=user.id).info("user created")
    return hx_redirect(url_for("users.user_detail", user_id=user.id))


# ---------- Detail ----------
@bp.get("/users/<int:user_id>")
@require_permission("users.view")
def user_detail(user_id: int):
    # Read through the pool on the request scope, not the request-cached session.
    s = use_pool()()
    try:
        user = UserQueryService(s).find_user_by_id(user_id, tenant_id=use_tenant_id())
    finally:
        s.close()
    if not user:
        abort(404)
    return render_template("users/detail.html", user=user)


class UsersController:
    def register(self, router: Flask) -> None:
        router.register_blueprint(bp)
