"""Shared redemption machinery for access keys and boost keys.

A key's effect is a closed set of grants matched exhaustively. Claiming a key
and applying its grant happen inside one savepoint, and every write is a
compare-and-swap on the value that was read, so two concurrent redemptions of
a single-use key produce exactly one success.
"""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from membergate.models.access_key import AccessKey, BoostKey, BoostScope
from membergate.models.account import Account
from membergate.models.base import as_utc
from membergate.services.cache import TTLCache, account_cache
from membergate.services.errors import (
    AccountNotFound,
    IntegrityViolation,
    InvalidKeyCode,
    KeyAlreadyUsed,
    KeyDisabled,
    KeyExhausted,
    KeyExpiredForActivation,
    KeyNotFound,
    PersistenceConflict,
)
from membergate.services.key_codes import is_valid_code, normalize_code

logger = logging.getLogger(__name__)

CLAIM_ATTEMPTS = 3

RedeemableKey = AccessKey | BoostKey


@dataclass(frozen=True)
class AccountExtension:
    hours: float


@dataclass(frozen=True)
class PermanentBoost:
    scope: BoostScope
    amount: int


@dataclass(frozen=True)
class TemporaryBoostGrant:
    scope: BoostScope
    amount: int
    days: int


KeyGrant = AccountExtension | PermanentBoost | TemporaryBoostGrant


def grant_for(key: RedeemableKey) -> KeyGrant:
    match key:
        case AccessKey():
            return AccountExtension(hours=key.grant_duration_hours)
        case BoostKey(is_temporary=True):
            if not key.temporary_duration_days or key.temporary_duration_days <= 0:
                raise IntegrityViolation(f"Temporary boost key {key.id} has no duration")
            return TemporaryBoostGrant(
                scope=key.scope, amount=key.amount, days=key.temporary_duration_days
            )
        case BoostKey():
            return PermanentBoost(scope=key.scope, amount=key.amount)
    raise TypeError(f"Unsupported key type: {type(key).__name__}")


def validated_code(raw_code: str | None) -> str:
    code = normalize_code(raw_code)
    if not code:
        raise InvalidKeyCode("Key code is required")
    if not is_valid_code(code):
        raise InvalidKeyCode("Key code may only contain letters, digits and dashes")
    return code


def check_redeemable(key: RedeemableKey, now: datetime) -> None:
    """Raise the first terminal condition that applies, in a fixed order.

    disabled -> exhausted -> past activation deadline -> already used.
    The exhausted condition of a single-use key is reported as
    :class:`KeyAlreadyUsed`, which is a :class:`KeyExhausted`.
    """
    if key.max_uses is not None and key.used_count > key.max_uses:
        logger.error(
            "Key %s has used_count=%s above max_uses=%s", key.code, key.used_count, key.max_uses
        )
        raise IntegrityViolation(f"Key {key.code} is over its use limit")

    if not key.is_active:
        raise KeyDisabled("This key has been disabled")

    if key.max_uses is not None and key.used_count >= key.max_uses:
        if key.is_single_use:
            raise KeyAlreadyUsed("This key has already been used")
        raise KeyExhausted("This key has reached its usage limit")

    deadline = as_utc(key.activation_deadline)
    if deadline is not None and now > deadline:
        raise KeyExpiredForActivation(f"This key had to be activated before {deadline.isoformat()}")

    if key.is_single_use and key.redeemed_by_account_id is not None:
        raise KeyAlreadyUsed("This key has already been used")


class RedemptionEngine:
    key_model: type[RedeemableKey]

    def __init__(self, cache: TTLCache | None = None):
        self._cache = cache if cache is not None else account_cache

    # -- Reads --

    def get_key_by_code(self, session: Session, raw_code: str) -> RedeemableKey | None:
        stmt = (
            select(self.key_model)
            .where(self.key_model.code == normalize_code(raw_code))
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    def _load_account(self, session: Session, account_id: int) -> Account:
        stmt = (
            select(Account)
            .where(Account.id == account_id)
            .execution_options(populate_existing=True)
        )
        account = session.execute(stmt).scalar_one_or_none()
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def find_redeemable(self, session: Session, code: str, now: datetime) -> RedeemableKey:
        key = self.get_key_by_code(session, code)
        if key is None:
            raise KeyNotFound("Key does not exist")
        check_redeemable(key, now)
        return key

    # -- Guarded writes --

    def _claim_key(
        self, session: Session, key: RedeemableKey, account_id: int, now: datetime
    ) -> bool:
        """CAS-increment ``used_count``. Returns False when another writer won."""
        model = type(key)
        observed = key.used_count
        values = {"used_count": observed + 1, "redeemed_at": now}
        if observed == 0 and key.is_single_use:
            values["redeemed_by_account_id"] = account_id

        stmt = update(model).where(
            model.id == key.id,
            model.used_count == observed,
            model.is_active.is_(True),
        )
        if key.is_single_use:
            stmt = stmt.where(model.redeemed_by_account_id.is_(None))
        result = session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        session.expire(key)
        return True

    def _claim_with_recheck(
        self, session: Session, key: RedeemableKey, account_id: int, now: datetime
    ) -> RedeemableKey:
        for _ in range(CLAIM_ATTEMPTS):
            if self._claim_key(session, key, account_id, now):
                return key
            logger.info("Lost the race to claim key %s, re-checking", key.code)
            key = self.get_key_by_code(session, key.code)
            if key is None:
                raise KeyNotFound("Key does not exist")
            check_redeemable(key, now)
        raise PersistenceConflict(f"Could not claim key {key.code}, please retry")

    def _update_account(self, session: Session, account: Account, **values) -> None:
        """CAS on ``Account.version``; raises the retryable PersistenceConflict on loss."""
        observed = account.version
        result = session.execute(
            update(Account)
            .where(Account.id == account.id, Account.version == observed)
            .values(version=observed + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PersistenceConflict(f"Account {account.id} was modified concurrently")
        session.expire(account)

    @contextmanager
    def _atomic(self, session: Session, description: str) -> Iterator[None]:
        """Run a multi-write step in a savepoint; a failed rollback is an integrity incident."""
        savepoint = session.begin_nested()
        try:
            yield
            savepoint.commit()
        except BaseException:
            try:
                savepoint.rollback()
            except Exception:
                logger.critical(
                    "DATA INTEGRITY: rollback failed during %s; "
                    "key and account state need manual reconciliation",
                    description,
                    exc_info=True,
                )
                raise
            raise

    # -- Admin --

    def _generate_unique_code(
        self, session: Session, make_code: Callable[[], str], taken: set[str], attempts: int = 10
    ) -> str:
        for _ in range(attempts):
            code = make_code()
            if code in taken:
                continue
            exists = session.execute(
                select(self.key_model.id).where(self.key_model.code == code)
            ).first()
            if exists is None:
                taken.add(code)
                return code
        raise PersistenceConflict("Could not generate a unique key code, please retry")

    def _invalidate(self, session: Session, account_id: int) -> None:
        self._cache.invalidate_on_commit(session, account_id)
