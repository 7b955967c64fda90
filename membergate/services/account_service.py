"""Account registration, login and the cached account snapshot."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from membergate.models.account import Account
from membergate.models.base import as_utc, utcnow
from membergate.models.redemption import RedemptionType
from membergate.services.auth import AuthService
from membergate.services.cache import TTLCache, account_cache
from membergate.services.database import translate_errors
from membergate.services.errors import AccountError, AccountNotFound, ValidationError
from membergate.services.license_service import LicenseService, RedemptionResult
from membergate.services.redemption import validated_code

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


@dataclass(frozen=True)
class AccountSnapshot:
    id: int
    email: str
    is_active: bool
    expires_at: datetime | None
    base_daily_limit: int | None
    base_cycle_limit: int | None
    current_session_id: str | None
    version: int

    @classmethod
    def from_account(cls, account: Account) -> "AccountSnapshot":
        return cls(
            id=account.id,
            email=account.email,
            is_active=account.is_active,
            expires_at=as_utc(account.expires_at),
            base_daily_limit=account.base_daily_limit,
            base_cycle_limit=account.base_cycle_limit,
            current_session_id=account.current_session_id,
            version=account.version,
        )

    def is_membership_active(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.is_active and self.expires_at is not None and self.expires_at > now


class AccountService:
    def __init__(
        self,
        auth_service: AuthService,
        license_service: LicenseService | None = None,
        cache: TTLCache | None = None,
    ):
        self._auth = auth_service
        self._cache = cache if cache is not None else account_cache
        self._license = license_service or LicenseService(self._cache)

    # -- Registration & login --

    def register(
        self, session: Session, email: str, password: str, nickname: str | None = None
    ) -> Account:
        if not email or not email.strip():
            raise AccountError("Email is required")
        if "@" not in email:
            raise AccountError("Email is not valid")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise AccountError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        email = email.strip().lower()
        if self.get_account_by_email(session, email) is not None:
            raise AccountError("Email already exists")

        account = Account(
            email=email,
            password_hash=self._auth.hash_password(password),
            nickname=nickname or email.split("@")[0],
        )
        session.add(account)
        session.flush()
        logger.info("Registered account %s", account.id)
        return account

    def authenticate(self, session: Session, email: str, password: str) -> dict | None:
        """Check credentials; returns the account and a fresh access token, or None."""
        if not email or not password:
            return None
        account = self.get_account_by_email(session, email)
        if account is None or not account.is_active:
            return None
        if not self._auth.verify_password(password, account.password_hash):
            return None
        return {
            "account": account,
            "access_token": self._auth.create_access_token(account.id),
        }

    def signup_with_key(
        self,
        session: Session,
        email: str,
        password: str,
        key_code: str,
        nickname: str | None = None,
        now: datetime | None = None,
    ) -> tuple[Account, RedemptionResult]:
        """Create an account and redeem its first access key as one unit.

        The key is validated before anything is written, and a redemption that
        fails after the account row exists rolls the account back with it.
        """
        code = validated_code(key_code)
        now = now or utcnow()
        with translate_errors():
            self._license.find_redeemable(session, code, now)

            savepoint = session.begin_nested()
            try:
                account = self.register(session, email, password, nickname)
                result = self._license.redeem(
                    session, account.id, code, now=now, operation=RedemptionType.SIGNUP
                )
            except Exception:
                savepoint.rollback()
                raise
            savepoint.commit()
        return account, result

    # -- Reads --

    def get_account(self, session: Session, account_id: int) -> Account | None:
        return session.get(Account, account_id)

    def require_account(self, session: Session, account_id: int) -> Account:
        account = self.get_account(session, account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def get_account_by_email(self, session: Session, email: str) -> Account | None:
        stmt = select(Account).where(func.lower(Account.email) == email.strip().lower())
        return session.execute(stmt).scalar_one_or_none()

    def get_snapshot(self, session: Session, account_id: int) -> AccountSnapshot:
        snapshot = self._cache.get(account_id)
        if snapshot is not None:
            return snapshot
        with translate_errors():
            account = session.execute(
                select(Account)
                .where(Account.id == account_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        snapshot = AccountSnapshot.from_account(account)
        self._cache.set(account_id, snapshot)
        return snapshot

    def is_membership_active(
        self, session: Session, account_id: int, now: datetime | None = None
    ) -> bool:
        """Expiry is evaluated lazily on every call; nothing flips a flag at expiry."""
        return self.get_snapshot(session, account_id).is_membership_active(now)

    # -- Admin --

    def set_base_limits(
        self,
        session: Session,
        account_id: int,
        daily: int | None = None,
        cycle: int | None = None,
    ) -> Account:
        """Override the stored base limits. ``None`` resets a limit to the system default."""
        for name, value in (("daily", daily), ("cycle", cycle)):
            if value is not None and value < 0:
                raise ValidationError(f"{name} limit cannot be negative")

        with translate_errors():
            account = self.require_account(session, account_id)
            account.base_daily_limit = daily
            account.base_cycle_limit = cycle
            session.flush()
        self._cache.invalidate_on_commit(session, account_id)
        logger.info("Base limits of account %s set to daily=%s cycle=%s", account_id, daily, cycle)
        return account

    def set_active(self, session: Session, account_id: int, active: bool) -> Account:
        with translate_errors():
            account = self.require_account(session, account_id)
            account.is_active = active
            session.flush()
        self._cache.invalidate_on_commit(session, account_id)
        return account
