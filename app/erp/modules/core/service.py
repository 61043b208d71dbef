from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, or_
from werkzeug.security import generate_password_hash

from app.erp.models import User
from app.erp.modules.core.values import InvalidLanguage, UILanguage

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session


SORT_FIELDS = {
    "id": User.id,
    "email": User.email,
    "first_name": User.first_name,
    "last_name": User.last_name,
    "created_at": User.created_at,
}
MIN_PASSWORD_LENGTH = 8
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class FindParams:
    limit: int = 20
    offset: int = 0
    sort_by: str = "created_at"
    sort_desc: bool = True
    search: str = ""
    tenant_id: str | None = None


@dataclass
class UserView:
    id: int
    email: str
    first_name: str
    last_name: str
    ui_language: str
    is_active: bool
    created_at: datetime | None
    roles: list[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def to_view(user: User, *, with_roles: bool = False) -> UserView:
    return UserView(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        ui_language=user.ui_language,
        is_active=user.is_active,
        created_at=user.created_at,
        roles=sorted(r.key for r in user.roles) if with_roles else [],
    )


class UserQueryService:
    """Read side for user listings: paged, sorted, tenant-filtered views."""

    def __init__(self, s: "Session") -> None:
        self.s = s

    def find_users(self, params: FindParams) -> tuple[list[UserView], int]:
        return self._page(self._base(params), params, with_roles=False)

    def find_user_by_id(self, user_id: int, tenant_id: str | None = None) -> UserView | None:
        q = self.s.query(User).filter(User.id == user_id)
        if tenant_id is not None:
            q = q.filter(User.tenant_id == tenant_id)
        user = q.one_or_none()
        return to_view(user, with_roles=True) if user else None

    def search_users(self, params: FindParams) -> tuple[list[UserView], int]:
        q = self._base(params)
        term = params.search.strip()
        if term:
            like = f"%{term.lower()}%"
            q = q.filter(
                or_(
                    func.lower(User.email).like(like),
                    func.lower(User.first_name).like(like),
                    func.lower(User.last_name).like(like),
                )
            )
        return self._page(q, params, with_roles=False)

    def find_users_with_roles(self, params: FindParams) -> tuple[list[UserView], int]:
        return self._page(self._base(params), params, with_roles=True)

    def _base(self, params: FindParams) -> "Query":
        q = self.s.query(User)
        if params.tenant_id is not None:
            q = q.filter(User.tenant_id == params.tenant_id)
        return q

    def _page(self, q: "Query", params: FindParams, *, with_roles: bool) -> tuple[list[UserView], int]:
        total = q.count()
        col = SORT_FIELDS.get(params.sort_by, User.created_at)
        order = col.desc() if params.sort_desc else col.asc()
        # Secondary order on id keeps pages stable when the sort column ties.
        rows = q.order_by(order, User.id.asc()).offset(max(params.offset, 0)).limit(max(params.limit, 1)).all()
        return [to_view(u, with_roles=with_roles) for u in rows], total


def validate_user_payload(s: "Session", payload: dict) -> dict[str, str]:
    """Validate user creation payload. Returns field id -> error message."""
    errors: dict[str, str] = {}
    email = (payload.get("email") or "").strip().lower()
    if not email:
        errors["email"] = "Email is required."
    elif not _EMAIL_RE.match(email):
        errors["email"] = "Email is invalid."
    elif s.query(User).filter(User.email == email).one_or_none() is not None:
        errors["email"] = "Email is already taken."

    if not (payload.get("first_name") or "").strip():
        errors["first_name"] = "First name is required."
    if not (payload.get("last_name") or "").strip():
        errors["last_name"] = "Last name is required."

    if len(payload.get("password") or "") < MIN_PASSWORD_LENGTH:
        errors["password"] = f"Password must be at least {MIN_PASSWORD_LENGTH} characters."

    try:
        UILanguage.parse(payload.get("ui_language") or UILanguage.EN.value)
    except InvalidLanguage:
        errors["ui_language"] = f"Language must be one of: {', '.join(UILanguage.choices())}"
    return errors


def create_user(s: "Session", payload: dict, tenant_id: str | None) -> User:
    """Create a new user. Call validate_user_payload() first."""
    user = User(
        tenant_id=tenant_id,
        email=(payload.get("email") or "").strip().lower(),
        password_hash=generate_password_hash(payload.get("password") or ""),
        first_name=(payload.get("first_name") or "").strip(),
        last_name=(payload.get("last_name") or "").strip(),
        ui_language=UILanguage.parse(payload.get("ui_language") or UILanguage.EN.value).value,
        is_active=True,
    )
    s.add(user)
    s.flush()
    return user
