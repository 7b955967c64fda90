"""LicenseService: access key redemption (signup / renewal) and key administration."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from membergate import hooks
from membergate.models.access_key import AccessKey, BoostKey, KeyType
from membergate.models.account import Account
from membergate.models.base import as_utc, utcnow
from membergate.models.redemption import KeyRedemption, RedemptionType
from membergate.services.database import translate_errors
from membergate.services.errors import (
    KeyInUse,
    KeyNotFound,
    ValidationError,
)
from membergate.services.key_codes import access_key_code
from membergate.services.redemption import (
    AccountExtension,
    RedemptionEngine,
    grant_for,
    validated_code,
)

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 1000


@dataclass(frozen=True)
class RedemptionResult:
    account_id: int
    key_code: str
    operation: RedemptionType
    previous_expires_at: datetime | None
    new_expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "newExpiresAt": self.new_expires_at.isoformat(),
            "previousExpiresAt": (
                self.previous_expires_at.isoformat() if self.previous_expires_at else None
            ),
            "operation": str(self.operation),
        }


def extend_expiry(current: datetime | None, hours: float, now: datetime) -> datetime:
    """Append ``hours`` to whatever validity is left; never reset to ``now``."""
    current = as_utc(current)
    base = current if current is not None and current > now else now
    return base + timedelta(hours=hours)


class LicenseService(RedemptionEngine):
    key_model = AccessKey

    # -- Redemption --

    def redeem(
        self,
        session: Session,
        account_id: int,
        raw_code: str,
        now: datetime | None = None,
        operation: RedemptionType | None = None,
    ) -> RedemptionResult:
        """Redeem an access key and move the account's expiry forward.

        Safe to retry: a code that was consumed by an earlier attempt fails
        deterministically with ``KeyAlreadyUsed`` instead of granting twice.
        """
        code = validated_code(raw_code)
        now = now or utcnow()

        with translate_errors():
            key = self.find_redeemable(session, code, now)
            account = self._load_account(session, account_id)

            previous = as_utc(account.expires_at)
            match grant_for(key):
                case AccountExtension(hours=hours):
                    new_expires_at = extend_expiry(previous, hours, now)
                case other:
                    raise TypeError(f"Access key {key.code} cannot carry {other!r}")
            if operation is None:
                operation = RedemptionType.SIGNUP if previous is None else RedemptionType.RENEW

            with self._atomic(session, f"redemption of access key {code}"):
                key = self._claim_with_recheck(session, key, account_id, now)
                self._update_account(session, account, expires_at=new_expires_at)
                session.add(
                    KeyRedemption(
                        account_id=account_id,
                        key_type=KeyType.ACCESS,
                        key_id=key.id,
                        key_code=code,
                        operation=operation,
                        previous_expires_at=previous,
                        new_expires_at=new_expires_at,
                        details={"grant_duration_hours": hours},
                        created_at=now,
                    )
                )
                session.flush()

        self._invalidate(session, account_id)
        logger.info(
            "Account %s redeemed access key %s (%s): expires %s -> %s",
            account_id,
            code,
            operation,
            previous,
            new_expires_at,
        )
        hooks.emit(
            hooks.KEY_REDEEMED,
            account_id=account_id,
            key_code=code,
            operation=operation,
            new_expires_at=new_expires_at,
        )
        return RedemptionResult(
            account_id=account_id,
            key_code=code,
            operation=operation,
            previous_expires_at=previous,
            new_expires_at=new_expires_at,
        )

    # -- Key administration --

    def generate_access_keys(
        self,
        session: Session,
        count: int,
        grant_duration_hours: float,
        max_uses: int | None = 1,
        activation_deadline: datetime | None = None,
        prefix: str = "XY",
        description: str | None = None,
    ) -> list[AccessKey]:
        if count < 1 or count > MAX_BATCH_SIZE:
            raise ValidationError(f"count must be between 1 and {MAX_BATCH_SIZE}")
        if grant_duration_hours <= 0:
            raise ValidationError("grant_duration_hours must be positive")
        if max_uses is not None and max_uses < 1:
            raise ValidationError("max_uses must be at least 1")

        taken: set[str] = set()
        keys = []
        for _ in range(count):
            code = self._generate_unique_code(
                session, lambda: access_key_code(prefix, grant_duration_hours), taken
            )
            keys.append(
                AccessKey(
                    code=code,
                    grant_duration_hours=grant_duration_hours,
                    max_uses=max_uses,
                    used_count=0,
                    activation_deadline=activation_deadline,
                    is_active=True,
                    description=description,
                )
            )
        session.add_all(keys)
        session.flush()
        logger.info("Generated %d access keys (%sh each)", len(keys), grant_duration_hours)
        return keys

    def set_key_active(
        self, session: Session, key_type: KeyType, key_id: int, active: bool
    ) -> AccessKey | BoostKey:
        key = self._get_key_of_type(session, key_type, key_id)
        key.is_active = active
        session.flush()
        logger.info("%s key %s %s", key_type, key.code, "enabled" if active else "disabled")
        return key

    def delete_key(self, session: Session, key_type: KeyType, key_id: int) -> None:
        """Physically delete an unused key. Used keys can only be disabled."""
        key = self._get_key_of_type(session, key_type, key_id)
        if key.used_count > 0:
            raise KeyInUse("Key has already been redeemed; disable it instead")
        model, code = type(key), key.code
        with translate_errors():
            result = session.execute(
                delete(model)
                .where(model.id == key_id, model.used_count == 0)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            raise KeyInUse("Key was redeemed while being deleted; disable it instead")
        session.expunge(key)
        logger.info("%s key %s deleted", key_type, code)

    def set_account_expiry(
        self, session: Session, account_id: int, expires_at: datetime | None
    ) -> Account:
        """Administrative override; the only path that may move an expiry backwards."""
        with translate_errors():
            account = self._load_account(session, account_id)
            self._update_account(session, account, expires_at=expires_at)
        self._invalidate(session, account_id)
        logger.warning("Expiry of account %s overridden to %s", account_id, expires_at)
        return account

    def extend_account_expiry(
        self, session: Session, account_id: int, hours: float, now: datetime | None = None
    ) -> Account:
        if hours <= 0:
            raise ValidationError("hours must be positive")
        now = now or utcnow()
        with translate_errors():
            account = self._load_account(session, account_id)
            new_expires_at = extend_expiry(account.expires_at, hours, now)
            self._update_account(session, account, expires_at=new_expires_at)
        self._invalidate(session, account_id)
        return account

    def list_redemptions(self, session: Session, account_id: int) -> list[KeyRedemption]:
        stmt = (
            select(KeyRedemption)
            .where(KeyRedemption.account_id == account_id)
            .order_by(KeyRedemption.created_at.desc(), KeyRedemption.id.desc())
        )
        return list(session.execute(stmt).scalars().all())

    def _get_key_of_type(
        self, session: Session, key_type: KeyType, key_id: int
    ) -> AccessKey | BoostKey:
        model = AccessKey if key_type == KeyType.ACCESS else BoostKey
        key = session.get(model, key_id)
        if key is None:
            raise KeyNotFound(f"{key_type} key {key_id} not found")
        return key

