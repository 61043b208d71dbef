import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.erp.db import make_engine, make_sessionmaker, transaction
from app.erp.models import Base, Permission, Role, Tenant, User

PERMISSIONS = (
    ("users.view", "Users: view"),
    ("users.create", "Users: create"),
)


def init_db(*, database_url: str | None = None) -> None:
    """
    Create tables and seed tenant/permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    tenant_name = (os.environ.get("TENANT_NAME") or "default").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///erp.db").strip()
    engine = make_engine(db_url)
    Base.metadata.create_all(engine)

    with transaction(make_sessionmaker(engine)) as s:
        tenant = s.query(Tenant).filter(Tenant.name == tenant_name).one_or_none()
        if not tenant:
            tenant = Tenant(name=tenant_name)
            s.add(tenant)
            s.flush()

        role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role_admin:
            role_admin = Role(key="admin", name="Administrator")
            s.add(role_admin)

        for key, name in PERMISSIONS:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                tenant_id=tenant.id,
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                first_name="Admin",
                is_active=True,
            )
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)
    engine.dispose()

    print("Initialized database.")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    init_db(database_url=None)


if __name__ == "__main__":
    main()
