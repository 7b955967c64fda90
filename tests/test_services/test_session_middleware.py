"""Tests for DeviceSessionMiddleware: login, device and membership gating of pages."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from membergate.config import settings
from membergate.services.account_service import AccountService
from membergate.services.auth import AuthService
from membergate.services.license_service import LicenseService
from membergate.services.session_binder import SessionBinder, extract_device_id
from membergate.services.session_middleware import DeviceSessionMiddleware


async def _page(request):
    state = request.state
    return PlainTextResponse(f"{state.account_id}:{state.device_id}")


async def _public(request):
    return PlainTextResponse("public")


@pytest.fixture
def client():
    app = Starlette(
        routes=[
            Route("/app/home", _page),
            Route("/public", _public),
            Route("/login", _public),
        ],
        middleware=[Middleware(DeviceSessionMiddleware)],
    )
    return TestClient(app, follow_redirects=False)


@pytest.fixture(autouse=True)
def shared_session(db_session):
    with patch("membergate.services.session_middleware._get_session") as mock:
        mock.return_value.__enter__ = MagicMock(return_value=db_session)
        mock.return_value.__exit__ = MagicMock(return_value=False)
        yield mock


@pytest.fixture
def app_auth():
    return AuthService(settings.secret_key)


@pytest.fixture
def member(db_session, app_auth, make_access_key):
    account = AccountService(app_auth).register(db_session, "paid@example.com", "secret123")
    LicenseService().redeem(db_session, account.id, make_access_key().code)
    db_session.commit()
    return account


@pytest.fixture
def signed_in(client, app_auth, member):
    client.cookies.set(settings.auth_cookie_name, app_auth.create_access_token(member.id))
    client.cookies.set(settings.device_cookie_name, "laptop")
    return client


class TestIsProtected:
    def test_default_prefixes(self):
        mw = DeviceSessionMiddleware(MagicMock())
        assert mw.is_protected("/app")
        assert mw.is_protected("/app/settings")
        assert not mw.is_protected("/apple")
        assert not mw.is_protected("/api/keys/redeem")

    def test_exempt_paths(self):
        mw = DeviceSessionMiddleware(MagicMock(), protected_prefixes=["/"])
        assert mw.is_protected("/dashboard")
        assert not mw.is_protected(settings.login_path)
        assert not mw.is_protected(settings.session_expired_path)
        assert not mw.is_protected(settings.account_expired_path)


class TestUnprotectedPaths:
    def test_passes_through_without_token(self, client, shared_session):
        resp = client.get("/public")
        assert resp.status_code == 200
        assert resp.text == "public"
        shared_session.assert_not_called()


class TestProtectedPaths:
    def test_no_token_redirects_to_login(self, client):
        resp = client.get("/app/home")
        assert resp.status_code == 302
        assert resp.headers["location"] == settings.login_path

    def test_invalid_token_redirects_to_login(self, client):
        client.cookies.set(settings.auth_cookie_name, "garbage")
        resp = client.get("/app/home")
        assert resp.status_code == 302
        assert resp.headers["location"] == settings.login_path

    def test_active_member_gets_through(self, signed_in, member):
        resp = signed_in.get("/app/home")
        assert resp.status_code == 200
        assert resp.text == f"{member.id}:laptop"
        assert extract_device_id(member.current_session_id) == "laptop"

    def test_bearer_header_accepted(self, client, app_auth, member):
        token = app_auth.create_access_token(member.id)
        resp = client.get("/app/home", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.text == f"{member.id}:unknown"

    def test_lapsed_membership_redirects_to_renewal(self, client, db_session, app_auth):
        account = AccountService(app_auth).register(db_session, "lapsed@example.com", "secret123")
        db_session.commit()
        client.cookies.set(settings.auth_cookie_name, app_auth.create_access_token(account.id))

        resp = client.get("/app/home")
        assert resp.status_code == 302
        assert resp.headers["location"] == settings.account_expired_path

    def test_superseded_device_is_signed_out(self, signed_in, db_session, member):
        SessionBinder().bind(db_session, member.id, "phone", "phone-token", is_login_flow=True)
        db_session.commit()

        resp = signed_in.get("/app/home")
        assert resp.status_code == 302
        assert resp.headers["location"] == settings.session_expired_path
        assert settings.auth_cookie_name in resp.headers["set-cookie"]
        assert extract_device_id(member.current_session_id) == "phone"

    def test_deleted_account_redirects_to_login(self, client, app_auth):
        client.cookies.set(settings.auth_cookie_name, app_auth.create_access_token(777_777))
        resp = client.get("/app/home")
        assert resp.status_code == 302
        assert resp.headers["location"] == settings.login_path

    def test_commit_timeout_is_unavailable(self, signed_in, db_session, member):
        timeout = OperationalError("COMMIT", {}, Exception("database is locked"))
        with patch.object(db_session, "commit", side_effect=timeout):
            resp = signed_in.get("/app/home")
        assert resp.status_code == 503
        assert resp.json()["error"] == "unavailable"
        assert resp.json()["retryable"] is True
