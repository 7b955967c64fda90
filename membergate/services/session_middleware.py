"""DeviceSessionMiddleware: enforce one device per account and an unexpired membership.

Runs on protected paths only. A request without a valid token goes to the login
page, a request from a superseded device goes to the "signed in elsewhere"
page, and an account whose membership has lapsed goes to the renewal page.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable

from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response
from starlette.types import ASGIApp

from membergate.config import settings
from membergate.services.account_service import AccountService
from membergate.services.api_routes import bearer_token, error_response
from membergate.services.auth import AuthService
from membergate.services.database import get_session_factory, translate_errors
from membergate.services.errors import AccountNotFound, MembergateError
from membergate.services.session_binder import SessionBinder

logger = logging.getLogger(__name__)


def _get_auth() -> AuthService:
    return AuthService(settings.secret_key, settings.access_token_expire_minutes)


def _get_session() -> Session:
    return get_session_factory()()


def _get_binder() -> SessionBinder:
    return SessionBinder()


def _get_account_service() -> AccountService:
    return AccountService(_get_auth())


class DeviceSessionMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        protected_prefixes: Iterable[str] | None = None,
        exempt_paths: Iterable[str] | None = None,
    ):
        super().__init__(app)
        self.protected_prefixes = tuple(
            settings.protected_path_prefixes if protected_prefixes is None else protected_prefixes
        )
        self.exempt_paths = set(
            exempt_paths
            if exempt_paths is not None
            else (settings.login_path, settings.session_expired_path, settings.account_expired_path)
        )

    def is_protected(self, path: str) -> bool:
        if path in self.exempt_paths:
            return False
        return any(
            path == prefix or path.startswith(prefix.rstrip("/") + "/")
            for prefix in self.protected_prefixes
        )

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if not self.is_protected(request.url.path):
            return await call_next(request)

        token = bearer_token(request)
        account_id = _get_auth().account_id_from_token(token) if token else None
        if account_id is None:
            return RedirectResponse(settings.login_path, status_code=302)

        device_id = request.cookies.get(settings.device_cookie_name)
        try:
            with _get_session() as session:
                try:
                    bound = _get_binder().bind(
                        session, account_id, device_id, token, is_login_flow=False
                    )
                    active = bound.allowed and _get_account_service().is_membership_active(
                        session, account_id
                    )
                    with translate_errors():
                        session.commit()
                except Exception:
                    session.rollback()
                    raise
        except AccountNotFound:
            response = RedirectResponse(settings.login_path, status_code=302)
            response.delete_cookie(settings.auth_cookie_name)
            return response
        except MembergateError as exc:
            return error_response(request, exc)

        if not bound.allowed:
            response = RedirectResponse(bound.redirect_to, status_code=302)
            response.delete_cookie(settings.auth_cookie_name)
            return response
        if not active:
            logger.info("Account %s has no active membership, redirecting", account_id)
            return RedirectResponse(settings.account_expired_path, status_code=302)

        request.state.account_id = account_id
        request.state.device_id = bound.device_id
        return await call_next(request)
