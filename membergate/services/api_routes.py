"""Membership API: Starlette routes for key redemption, login, quota status and device checks."""

import logging

from sqlalchemy.orm import Session
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from membergate.config import settings
from membergate.i18n import locale_from_header, translate
from membergate.services.account_service import AccountService
from membergate.services.auth import AuthService
from membergate.services.boost_service import BoostService
from membergate.services.database import get_session_factory, translate_errors
from membergate.services.errors import (
    DeviceSuperseded,
    IntegrityViolation,
    InvalidCredentials,
    MembergateError,
    Unauthorized,
    ValidationError,
)
from membergate.services.license_service import LicenseService
from membergate.services.quota_service import DEFAULT_FEATURE, QuotaService
from membergate.services.retry import call_with_retry
from membergate.services.session_binder import SessionBinder

logger = logging.getLogger(__name__)


def _get_auth() -> AuthService:
    return AuthService(settings.secret_key, settings.access_token_expire_minutes)


def _get_session() -> Session:
    return get_session_factory()()


def _get_license_service() -> LicenseService:
    return LicenseService()


def _get_quota_service() -> QuotaService:
    return QuotaService()


def _get_boost_service() -> BoostService:
    return BoostService(_get_quota_service())


def _get_account_service() -> AccountService:
    return AccountService(_get_auth(), _get_license_service())


def _get_binder() -> SessionBinder:
    return SessionBinder()


# -- Helpers --


def error_response(
    request: Request, exc: MembergateError, extra: dict | None = None
) -> JSONResponse:
    """``{error, message, retryable}`` with the message in the caller's language."""
    if isinstance(exc, IntegrityViolation):
        logger.critical("Integrity violation on %s: %s", request.url.path, exc)
    body = exc.to_dict()
    body["message"] = translate(
        exc.message_key, locale_from_header(request.headers.get("accept-language"))
    )
    if extra:
        body.update(extra)
    return JSONResponse(body, status_code=exc.status_code)


def _internal_error(request: Request) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return error_response(request, MembergateError())


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(settings.auth_cookie_name) or None


def _authenticated_account_id(request: Request) -> tuple[int, str]:
    token = bearer_token(request)
    account_id = _get_auth().account_id_from_token(token) if token else None
    if account_id is None:
        raise Unauthorized("Missing or invalid access token")
    return account_id, token


async def _json_body(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be JSON") from exc
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _account_id_param(value) -> int:
    if isinstance(value, bool) or value is None or value == "":
        raise ValidationError("accountId is required")
    try:
        account_id = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("accountId must be an integer") from exc
    if account_id < 1:
        raise ValidationError("accountId must be positive")
    return account_id


def _committed(session: Session, fn, *args, **kwargs):
    """One attempt: run ``fn`` and commit, or roll back so a retry starts clean."""
    try:
        result = fn(session, *args, **kwargs)
        with translate_errors():
            session.commit()
    except Exception:
        session.rollback()
        raise
    return result


def _set_login_cookies(response: JSONResponse, token: str, device_id: str) -> None:
    max_age = settings.access_token_expire_minutes * 60
    response.set_cookie(
        settings.auth_cookie_name, token, max_age=max_age, httponly=True, samesite="lax"
    )
    response.set_cookie(settings.device_cookie_name, device_id, max_age=max_age, samesite="lax")


# -- Key redemption --


async def redeem_key(request: Request) -> JSONResponse:
    try:
        data = await _json_body(request)
        account_id = _account_id_param(data.get("accountId"))
        svc = _get_license_service()
        with _get_session() as session:
            result = call_with_retry(_committed, session, svc.redeem, account_id, data.get("code"))
    except MembergateError as exc:
        return error_response(request, exc)
    except Exception:
        return _internal_error(request)
    return JSONResponse(result.to_dict())


async def renew_account(request: Request) -> JSONResponse:
    try:
        account_id, _ = _authenticated_account_id(request)
        data = await _json_body(request)
        code = data.get("keyCode") or data.get("code")
        svc = _get_license_service()
        with _get_session() as session:
            result = call_with_retry(_committed, session, svc.redeem, account_id, code)
    except MembergateError as exc:
        return error_response(request, exc)
    except Exception:
        return _internal_error(request)
    return JSONResponse(result.to_dict())


async def redeem_boost_key(request: Request) -> JSONResponse:
    try:
        data = await _json_body(request)
        account_id = _account_id_param(data.get("accountId"))
        svc = _get_boost_service()
        with _get_session() as session:
            result = call_with_retry(
                _committed, session, svc.redeem_boost, account_id, data.get("code")
            )
    except MembergateError as exc:
        return error_response(request, exc)
    except Exception:
        return _internal_error(request)
    return JSONResponse(result.to_dict())


# -- Accounts --


async def signup_with_key(request: Request) -> JSONResponse:
    try:
        data = await _json_body(request)
        accounts = _get_account_service()
        binder = _get_binder()
        device_id = data.get("deviceId") or request.cookies.get(settings.device_cookie_name)
        with _get_session() as session:
            try:
                account, redemption = accounts.signup_with_key(
                    session,
                    data.get("email") or "",
                    data.get("password") or "",
                    data.get("keyCode") or "",
                    nickname=data.get("nickname"),
                )
                account_id = account.id
                token = _get_auth().create_access_token(account_id)
                bound = binder.bind(session, account_id, device_id, token, is_login_flow=True)
                with translate_errors():
                    session.commit()
            except Exception:
                session.rollback()
                raise
    except MembergateError as exc:
        return error_response(request, exc)
    except Exception:
        return _internal_error(request)

    response = JSONResponse(
        {"accountId": account_id, "accessToken": token, **redemption.to_dict()},
        status_code=201,
    )
    _set_login_cookies(response, token, bound.device_id)
    return response


async def login(request: Request) -> JSONResponse:
    try:
        data = await _json_body(request)
        accounts = _get_account_service()
        binder = _get_binder()
        device_id = data.get("deviceId") or request.cookies.get(settings.device_cookie_name)
        with _get_session() as session:
            try:
                result = accounts.authenticate(
                    session, data.get("email") or "", data.get("password") or ""
                )
                if result is None:
                    raise InvalidCredentials("Incorrect email or password")
                account_id = result["account"].id
                token = result["access_token"]
                bound = binder.bind(session, account_id, device_id, token, is_login_flow=True)
                active = accounts.is_membership_active(session, account_id)
                with translate_errors():
                    session.commit()
            except Exception:
                session.rollback()
                raise
    except MembergateError as exc:
        return error_response(request, exc)
    except Exception:
        return _internal_error(request)

    response = JSONResponse(
        {
            "accountId": account_id,
            "accessToken": token,
            "membershipActive": active,
            "reason": str(bound.reason),
        }
    )
    _set_login_cookies(response, token, bound.device_id)
    return response


# -- Quota & devices --


async def usage_stats(request: Request) -> JSONResponse:
    try:
        account_id = _account_id_param(request.query_params.get("accountId"))
        feature = request.query_params.get("feature") or DEFAULT_FEATURE
        svc = _get_quota_service()
        with _get_session() as session:
            stats = call_with_retry(svc.usage_stats, session, account_id, feature)
    except MembergateError as exc:
        return error_response(request, exc)
    except Exception:
        return _internal_error(request)
    return JSONResponse(stats)


async def device_check(request: Request) -> JSONResponse:
    try:
        account_id, token = _authenticated_account_id(request)
        data = await _json_body(request)
        device_id = data.get("deviceId") or request.cookies.get(settings.device_cookie_name)
        binder = _get_binder()
        with _get_session() as session:
            result = _committed(session, binder.bind, account_id, device_id, token, False)
    except MembergateError as exc:
        return error_response(request, exc)
    except Exception:
        return _internal_error(request)
    if not result.allowed:
        return error_response(
            request, DeviceSuperseded("Account is active on another device"), result.to_dict()
        )
    return JSONResponse(result.to_dict())


api_routes = [
    Route("/api/keys/redeem", redeem_key, methods=["POST"]),
    Route("/api/auth/renew-account", renew_account, methods=["POST"]),
    Route("/api/auth/signup-with-key", signup_with_key, methods=["POST"]),
    Route("/api/auth/login", login, methods=["POST"]),
    Route("/api/boost-keys/redeem", redeem_boost_key, methods=["POST"]),
    Route("/api/ai/usage-stats", usage_stats, methods=["GET"]),
    Route("/api/device-check", device_check, methods=["POST"]),
]
