from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field

from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from werkzeug.security import generate_password_hash

from app.erp.application import Application, Module
from app.erp.db import make_engine, make_sessionmaker, transaction
from app.erp.logging import FieldsLogger
from app.erp.middleware import init_tracing
from app.erp.models import Base, Permission, Role, Tenant, User

DEFAULT_DATABASE_URL = "sqlite://"
DEFAULT_PASSWORD = "password123"


@dataclass
class TestEnvironment:
    """Everything a suite shares across requests: app registry, database, tenant, tracing."""

    __test__ = False

    app: Application
    engine: Engine
    pool: sessionmaker
    tenant: Tenant
    logger: FieldsLogger
    tracer_provider: TracerProvider
    span_exporter: InMemorySpanExporter
    database_url: str = DEFAULT_DATABASE_URL
    user: User | None = None
    _closed: bool = field(default=False, repr=False)

    def session(self) -> Session:
        return self.pool()

    def create_user(
        self,
        email: str | None = None,
        *,
        permissions: Iterable[str] = (),
        first_name: str = "Test",
        last_name: str = "User",
        ui_language: str = "en",
        password: str = DEFAULT_PASSWORD,
        is_active: bool = True,
    ) -> User:
        """Persist a user in the suite tenant, with a dedicated role holding the given permissions."""
        email = (email or f"user-{uuid.uuid4().hex[:8]}@example.com").strip().lower()
        with transaction(self.pool) as s:
            perms = []
            for key in sorted(set(permissions)):
                perm = s.query(Permission).filter(Permission.key == key).one_or_none()
                if not perm:
                    perm = Permission(key=key, name=key)
                    s.add(perm)
                perms.append(perm)

            roles = []
            if perms:
                role = Role(key=f"test-{uuid.uuid4().hex[:8]}", name=f"Test role for {email}")
                role.permissions = perms
                s.add(role)
                roles.append(role)

            user = User(
                tenant_id=self.tenant.id,
                email=email,
                password_hash=generate_password_hash(password),
                first_name=first_name,
                last_name=last_name,
                ui_language=ui_language,
                is_active=is_active,
            )
            user.roles = roles
            s.add(user)
            s.flush()
        return user

    def spans(self) -> tuple[ReadableSpan, ...]:
        return self.span_exporter.get_finished_spans()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.tracer_provider.shutdown()
        self.engine.dispose()


class TestContext:
    """Builder for TestEnvironment."""

    __test__ = False

    def __init__(self) -> None:
        self._modules: list[Module] = []
        self._database_url = DEFAULT_DATABASE_URL
        self._default_locale = "en"
        self._user_permissions: tuple[str, ...] | None = None
        self._logger_name = "erp.itf"

    def with_modules(self, *modules: Module) -> "TestContext":
        self._modules.extend(modules)
        return self

    def with_database_url(self, url: str) -> "TestContext":
        self._database_url = url
        return self

    def with_default_locale(self, locale: str) -> "TestContext":
        self._default_locale = locale
        return self

    def with_user(self, *permissions: str) -> "TestContext":
        """Create a default user holding these permissions."""
        self._user_permissions = permissions
        return self

    def with_logger_name(self, name: str) -> "TestContext":
        self._logger_name = name
        return self

    def build(self) -> TestEnvironment:
        engine = make_engine(self._database_url)
        Base.metadata.create_all(engine)
        pool = make_sessionmaker(engine)

        with transaction(pool) as s:
            tenant = Tenant(name=f"test-tenant-{uuid.uuid4().hex[:8]}")
            s.add(tenant)
            s.flush()

        exporter = InMemorySpanExporter()
        env = TestEnvironment(
            app=Application(self._modules, default_locale=self._default_locale),
            engine=engine,
            pool=pool,
            tenant=tenant,
            logger=FieldsLogger(logging.getLogger(self._logger_name)),
            tracer_provider=init_tracing(service_name="erp-itf", exporter=exporter),
            span_exporter=exporter,
            database_url=self._database_url,
        )
        if self._user_permissions is not None:
            env.user = env.create_user("test@example.com", permissions=self._user_permissions)
        return env
