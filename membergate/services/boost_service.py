"""BoostService: boost key redemption and administration."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from membergate import hooks
from membergate.models.access_key import BoostKey, BoostScope, KeyType
from membergate.models.base import utcnow
from membergate.models.redemption import KeyRedemption, RedemptionType
from membergate.models.temporary_boost import TemporaryBoost
from membergate.services.cache import TTLCache
from membergate.services.database import translate_errors
from membergate.services.errors import ValidationError
from membergate.services.key_codes import boost_key_code
from membergate.services.quota_service import QuotaService
from membergate.services.redemption import (
    PermanentBoost,
    RedemptionEngine,
    TemporaryBoostGrant,
    grant_for,
    validated_code,
)

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 1000


@dataclass(frozen=True)
class BoostRedemptionResult:
    account_id: int
    key_code: str
    scope: BoostScope
    amount: int
    temporary: bool
    new_limits: dict[str, int]
    valid_to: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "scope": str(self.scope),
            "amount": self.amount,
            "temporary": self.temporary,
            "validTo": self.valid_to.isoformat() if self.valid_to else None,
            "newLimits": self.new_limits,
        }


class BoostService(RedemptionEngine):
    key_model = BoostKey

    def __init__(self, quota_service: QuotaService, cache: TTLCache | None = None):
        super().__init__(cache)
        self._quota = quota_service

    def redeem_boost(
        self,
        session: Session,
        account_id: int,
        raw_code: str,
        now: datetime | None = None,
    ) -> BoostRedemptionResult:
        """Apply a boost key: raise a base limit, or open a temporary boost window."""
        code = validated_code(raw_code)
        now = now or utcnow()

        with translate_errors():
            key = self.find_redeemable(session, code, now)
            account = self._load_account(session, account_id)
            grant = grant_for(key)
            valid_to = None

            with self._atomic(session, f"redemption of boost key {code}"):
                key = self._claim_with_recheck(session, key, account_id, now)

                match grant:
                    case TemporaryBoostGrant(scope=scope, amount=amount, days=days):
                        valid_to = now + timedelta(days=days)
                        session.add(
                            TemporaryBoost(
                                account_id=account_id,
                                boost_key_id=key.id,
                                scope=scope,
                                amount=amount,
                                valid_from=now,
                                valid_to=valid_to,
                                active=True,
                            )
                        )
                        details = {"valid_to": valid_to.isoformat()}
                    case PermanentBoost(scope=scope, amount=amount):
                        base = self._quota.stored_base_limit(session, account, scope)
                        column = (
                            "base_daily_limit" if scope == BoostScope.DAILY else "base_cycle_limit"
                        )
                        self._update_account(session, account, **{column: base + amount})
                        details = {"previous_base": base, "new_base": base + amount}
                    case other:
                        raise TypeError(f"Boost key {code} cannot carry {other!r}")

                session.add(
                    KeyRedemption(
                        account_id=account_id,
                        key_type=KeyType.BOOST,
                        key_id=key.id,
                        key_code=code,
                        operation=RedemptionType.BOOST,
                        details={"scope": str(scope), "amount": amount, **details},
                        created_at=now,
                    )
                )
                session.flush()

            new_limits = self._quota.effective_limits(session, account, now)

        self._invalidate(session, account_id)
        temporary = isinstance(grant, TemporaryBoostGrant)
        logger.info(
            "Account %s redeemed boost key %s: +%s %s%s",
            account_id,
            code,
            amount,
            scope,
            " (temporary)" if temporary else "",
        )
        hooks.emit(
            hooks.BOOST_REDEEMED,
            account_id=account_id,
            key_code=code,
            scope=scope,
            amount=amount,
            temporary=temporary,
        )
        return BoostRedemptionResult(
            account_id=account_id,
            key_code=code,
            scope=scope,
            amount=amount,
            temporary=temporary,
            new_limits=new_limits,
            valid_to=valid_to,
        )

    # -- Administration --

    def generate_boost_keys(
        self,
        session: Session,
        count: int,
        scope: BoostScope,
        amount: int,
        is_temporary: bool = False,
        temporary_duration_days: int | None = None,
        max_uses: int | None = 1,
        activation_deadline_days: int | None = None,
        prefix: str = "AI",
        description: str | None = None,
        now: datetime | None = None,
    ) -> list[BoostKey]:
        if count < 1 or count > MAX_BATCH_SIZE:
            raise ValidationError(f"count must be between 1 and {MAX_BATCH_SIZE}")
        if amount < 1:
            raise ValidationError("amount must be positive")
        if is_temporary and (not temporary_duration_days or temporary_duration_days < 1):
            raise ValidationError("Temporary boosts need temporary_duration_days >= 1")

        now = now or utcnow()
        deadline = (
            now + timedelta(days=activation_deadline_days) if activation_deadline_days else None
        )
        taken: set[str] = set()
        keys = [
            BoostKey(
                code=self._generate_unique_code(session, lambda: boost_key_code(prefix), taken),
                scope=scope,
                amount=amount,
                is_temporary=is_temporary,
                temporary_duration_days=temporary_duration_days if is_temporary else None,
                max_uses=max_uses,
                used_count=0,
                activation_deadline=deadline,
                is_active=True,
                description=description,
            )
            for _ in range(count)
        ]
        session.add_all(keys)
        session.flush()
        logger.info("Generated %d %s boost keys (+%d)", len(keys), scope, amount)
        return keys

    def list_active_boosts(
        self, session: Session, account_id: int, now: datetime | None = None
    ) -> list[TemporaryBoost]:
        now = now or utcnow()
        stmt = (
            select(TemporaryBoost)
            .where(
                TemporaryBoost.account_id == account_id,
                TemporaryBoost.active.is_(True),
                TemporaryBoost.valid_from <= now,
                TemporaryBoost.valid_to > now,
            )
            .order_by(TemporaryBoost.valid_to)
        )
        return list(session.execute(stmt).scalars().all())

    def disable_temporary_boost(self, session: Session, boost_id: int) -> TemporaryBoost | None:
        boost = session.get(TemporaryBoost, boost_id)
        if boost is None:
            return None
        boost.active = False
        session.flush()
        self._invalidate(session, boost.account_id)
        return boost
