"""Tests for the core module: users pages, query service and UILanguage."""
import dataclasses

import pytest

from app.erp.itf import Suite, TestContext
from app.erp.models import User
from app.erp.modules.core import CoreModule, UsersController
from app.erp.modules.core.service import FindParams, UserQueryService, validate_user_payload
from app.erp.modules.core.values import InvalidLanguage, UILanguage


@pytest.fixture()
def env():
    env = TestContext().with_modules(CoreModule()).with_user("users.view", "users.create").build()
    yield env
    env.close()


@pytest.fixture()
def suite(env):
    s = Suite(env=env)
    s.register(UsersController())
    return s


def _valid_form(**overrides):
    form = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "password": "analytical",
        "ui_language": "ru",
    }
    form.update(overrides)
    return form


# ---------- pages ----------
def test_users_list(suite):
    html = suite.get("/users").expect().status(200).contains("test@example.com").html()
    html.element("//h1").exists()
    assert len(html.elements("//tr[@data-testid='user-row']")) == 1


def test_users_list_htmx_returns_table_only(suite, env):
    env.create_user("grace@example.com", first_name="Grace", last_name="Hopper")
    r = suite.get("/users?q=grace").htmx().expect().status(200)
    r.not_contains("<html").contains("grace@example.com").not_contains("test@example.com")


def test_users_list_requires_login(env):
    s = Suite(env=env).register(UsersController()).as_user(None)
    s.get("/users").expect().status(302).redirect_to("/auth/login?next=%2Fusers")


def test_users_list_requires_permission(suite, env):
    suite.as_user(env.create_user("nobody@example.com"))
    suite.get("/users").expect().status(403).contains("403 Forbidden")


def test_new_user_form(suite):
    html = suite.get("/users/new").expect().status(200).html()
    html.element("//form[@id='user-form']").exists()
    assert html.element("//input[@id='email']").attr("name") == "email"
    assert html.has_error_for("email") is False


def test_create_user_validation_errors(suite):
    html = suite.post("/users").form(_valid_form(email="", first_name="", password="short")).expect().status(200).html()
    assert html.has_error_for("email")
    assert html.has_error_for("first_name")
    assert html.has_error_for("password")
    assert not html.has_error_for("last_name")
    # Entered values survive the round trip; the password does not.
    assert html.element("//input[@id='last_name']").attr("value") == "Lovelace"
    assert html.element("//input[@id='password']").attr("value") == ""


def test_create_user_rejects_unknown_language(suite):
    html = suite.post("/users").form(_valid_form(ui_language="fr")).expect().status(200).html()
    assert html.has_error_for("ui_language")


def test_create_user_redirects_to_detail(suite, env):
    r = suite.post("/users").form(_valid_form()).expect().status(302)
    location = r.header("Location")
    assert location.startswith("/users/")

    with env.session() as s:
        user = s.query(User).filter(User.email == "ada@example.com").one()
        assert user.tenant_id == env.tenant.id
        assert user.ui_language == "ru"
        assert location == f"/users/{user.id}"

    html = suite.get(location).expect().status(200).html()
    assert html.element("//*[@data-testid='user-name']").text() == "Ada Lovelace"


def test_create_user_htmx_redirect(suite):
    r = suite.post("/users").form(_valid_form(email="hx@example.com")).htmx().expect().status(200)
    assert r.header("HX-Redirect").startswith("/users/")


def test_duplicate_email_is_a_field_error(suite):
    suite.post("/users").form(_valid_form()).expect().status(302)
    html = suite.post("/users").form(_valid_form()).expect().status(200).html()
    assert "already taken" in html.element("//small[@data-field-id='email']").text()


def test_user_detail_not_found(suite):
    suite.get("/users/99999").expect().status(404)


def test_user_detail_is_tenant_scoped(suite, env):
    with env.session() as s:
        outsider = User(email="outsider@example.com", password_hash="x", first_name="Out", last_name="Sider")
        s.add(outsider)
        s.commit()
        outsider_id = outsider.id
    suite.get(f"/users/{outsider_id}").expect().status(404)


# ---------- query service ----------
@pytest.fixture()
def populated(env):
    env.create_user("b@example.com", first_name="Bob", last_name="Builder", permissions=["users.view"])
    env.create_user("c@example.com", first_name="Carol", last_name="Danvers")
    env.create_user("a@example.com", first_name="Alice", last_name="Liddell")
    return env


def test_find_users_pages_and_sorts(populated):
    with populated.session() as s:
        svc = UserQueryService(s)
        params = FindParams(limit=2, offset=0, sort_by="email", sort_desc=False, tenant_id=populated.tenant.id)
        page1, total = svc.find_users(params)
        page2, _ = svc.find_users(dataclasses.replace(params, offset=2))

    assert total == 4
    assert [u.email for u in page1] == ["a@example.com", "b@example.com"]
    assert [u.email for u in page2] == ["c@example.com", "test@example.com"]
    assert page1[0].roles == []


def test_search_users(populated):
    with populated.session() as s:
        users, total = UserQueryService(s).search_users(FindParams(search="CAROL", tenant_id=populated.tenant.id))
    assert total == 1
    assert users[0].full_name == "Carol Danvers"


def test_find_users_with_roles(populated):
    with populated.session() as s:
        users, _ = UserQueryService(s).find_users_with_roles(
            FindParams(sort_by="email", sort_desc=False, tenant_id=populated.tenant.id)
        )
    by_email = {u.email: u for u in users}
    assert len(by_email["b@example.com"].roles) == 1
    assert by_email["c@example.com"].roles == []


def test_find_user_by_id(populated):
    with populated.session() as s:
        svc = UserQueryService(s)
        found = svc.find_user_by_id(populated.user.id, tenant_id=populated.tenant.id)
        assert found is not None and found.email == "test@example.com"
        assert svc.find_user_by_id(populated.user.id, tenant_id="other-tenant") is None
        assert svc.find_user_by_id(123456) is None


def test_validate_user_payload(env):
    with env.session() as s:
        assert validate_user_payload(s, _valid_form()) == {}
        errors = validate_user_payload(s, _valid_form(email="not-an-email", last_name=" "))
    assert set(errors) == {"email", "last_name"}


# ---------- UILanguage ----------
@pytest.mark.parametrize("raw", ["en", "ru", "uz", " RU "])
def test_ui_language_parse(raw):
    assert UILanguage.parse(raw).value == raw.strip().lower()


@pytest.mark.parametrize("raw", ["fr", "", None])
def test_ui_language_invalid(raw):
    with pytest.raises(InvalidLanguage, match="invalid language"):
        UILanguage.parse(raw)


def test_nav_link_follows_permission(suite, env):
    html = suite.get("/users").expect().status(200).html()
    html.element("//nav/a[@href='/users']").exists()

    suite.as_user(env.create_user("viewer@example.com"))
    html = suite.get("/users/new").expect().status(403).html()
    html.element("//nav/a[@href='/users']").not_exists()


def test_forbidden_is_logged(suite, env, caplog):
    suite.as_user(env.create_user("nobody@example.com"))
    with caplog.at_level("WARNING"):
        suite.get("/users").expect().status(403)
    forbidden = [r for r in caplog.records if r.getMessage() == "Forbidden"]
    assert forbidden and forbidden[0].fields["missing_permission"] == "users.view"
