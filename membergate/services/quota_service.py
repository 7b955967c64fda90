"""QuotaService: rolling-window accounting of metered (AI) actions.

Usage is the number of *successful* ledger entries in ``[now - L, now)``,
recomputed on every check, so there is no reset event to schedule. The limit
for a window is the account's base limit (or the system default), clamped to
the configured bounds, plus every temporary boost active at ``now``.

Check-then-record is not serialised per account unless
``quota_serialize_per_account`` is enabled: N concurrent requests from one
account that all pass the check can overshoot the limit by at most N - 1.
"""

import dataclasses
import logging
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from membergate.config import settings
from membergate.models.access_key import BoostScope
from membergate.models.account import Account
from membergate.models.base import as_utc, utcnow
from membergate.models.quota_ledger import QuotaLedgerEntry, UsageOutcome
from membergate.models.temporary_boost import TemporaryBoost
from membergate.services.database import translate_errors
from membergate.services.errors import AccountNotFound, QuotaExceeded
from membergate.services.system_config import SystemConfigService

logger = logging.getLogger(__name__)

DEFAULT_FEATURE = "generate_tasks"
WINDOW_SCOPES = (BoostScope.DAILY, BoostScope.CYCLE)


@dataclass(frozen=True)
class WindowUsage:
    scope: BoostScope
    used: int
    limit: int
    window_start: datetime
    window_end: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def allowed(self) -> bool:
        return self.remaining > 0

    def to_dict(self) -> dict:
        return {"used": self.used, "remaining": self.remaining, "limit": self.limit}


@dataclass(frozen=True)
class QuotaDecision:
    account_id: int
    feature: str
    windows: dict[BoostScope, WindowUsage]
    checked_at: datetime
    recorded: UsageOutcome | None = None
    result: Any = field(default=None, compare=False)

    @property
    def allowed(self) -> bool:
        return all(w.allowed for w in self.windows.values())

    @property
    def remaining(self) -> int:
        return min(w.remaining for w in self.windows.values())

    @property
    def limit(self) -> int:
        return min(w.limit for w in self.windows.values())

    @property
    def daily(self) -> WindowUsage | None:
        return self.windows.get(BoostScope.DAILY)

    @property
    def cycle(self) -> WindowUsage | None:
        return self.windows.get(BoostScope.CYCLE)

    def to_dict(self) -> dict:
        data = {str(scope): usage.to_dict() for scope, usage in self.windows.items()}
        data["allowed"] = self.allowed
        return data


class QuotaService:
    def __init__(self, config_service: SystemConfigService | None = None):
        self._config = config_service or SystemConfigService()

    # -- Limits --

    @staticmethod
    def window_length(scope: BoostScope) -> timedelta:
        if scope == BoostScope.DAILY:
            return timedelta(hours=settings.daily_window_hours)
        return timedelta(days=settings.cycle_window_days)

    @staticmethod
    def clamp(scope: BoostScope, value: int) -> int:
        if scope == BoostScope.DAILY:
            low, high = settings.daily_limit_min, settings.daily_limit_max
        else:
            low, high = settings.cycle_limit_min, settings.cycle_limit_max
        return max(low, min(int(value), high))

    def default_limit(self, session: Session, scope: BoostScope) -> int:
        return int(self._config.get_default_limits(session)[str(scope)])

    def stored_base_limit(self, session: Session, account: Account, scope: BoostScope) -> int:
        """Base limit as stored (or the system default), before clamping."""
        override = (
            account.base_daily_limit if scope == BoostScope.DAILY else account.base_cycle_limit
        )
        if override is None:
            return self.default_limit(session, scope)
        return override

    def base_limit(self, session: Session, account: Account, scope: BoostScope) -> int:
        return self.clamp(scope, self.stored_base_limit(session, account, scope))

    def temporary_boost_total(
        self, session: Session, account_id: int, scope: BoostScope, now: datetime
    ) -> int:
        stmt = select(func.coalesce(func.sum(TemporaryBoost.amount), 0)).where(
            TemporaryBoost.account_id == account_id,
            TemporaryBoost.scope == scope,
            TemporaryBoost.active.is_(True),
            TemporaryBoost.valid_from <= now,
            TemporaryBoost.valid_to > now,
        )
        return int(session.execute(stmt).scalar() or 0)

    def effective_limit(
        self, session: Session, account: Account, scope: BoostScope, now: datetime | None = None
    ) -> int:
        now = now or utcnow()
        return self.base_limit(session, account, scope) + self.temporary_boost_total(
            session, account.id, scope, now
        )

    def effective_limits(
        self, session: Session, account: Account, now: datetime | None = None
    ) -> dict[str, int]:
        now = now or utcnow()
        return {
            str(scope): self.effective_limit(session, account, scope, now)
            for scope in WINDOW_SCOPES
        }

    # -- Usage --

    def count_used(
        self,
        session: Session,
        account_id: int,
        feature: str,
        since: datetime,
        until: datetime,
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(QuotaLedgerEntry)
            .where(
                QuotaLedgerEntry.account_id == account_id,
                QuotaLedgerEntry.feature == feature,
                QuotaLedgerEntry.outcome == UsageOutcome.SUCCESS,
                QuotaLedgerEntry.created_at >= since,
                QuotaLedgerEntry.created_at < until,
            )
        )
        return int(session.execute(stmt).scalar() or 0)

    def check(
        self,
        session: Session,
        account_id: int,
        feature: str = DEFAULT_FEATURE,
        scopes: Iterable[BoostScope] = WINDOW_SCOPES,
        now: datetime | None = None,
        lock: bool = False,
    ) -> QuotaDecision:
        """Report usage for each window. Never writes."""
        now = now or utcnow()
        with translate_errors():
            account = self._load_account(session, account_id, lock=lock)
            windows = {}
            for scope in scopes:
                start = now - self.window_length(scope)
                windows[scope] = WindowUsage(
                    scope=scope,
                    used=self.count_used(session, account_id, feature, start, now),
                    limit=self.effective_limit(session, account, scope, now),
                    window_start=start,
                    window_end=now,
                )
        return QuotaDecision(
            account_id=account_id, feature=feature, windows=windows, checked_at=now
        )

    def record(
        self,
        session: Session,
        account_id: int,
        feature: str,
        success: bool,
        request_data: dict | None = None,
        response_data: dict | None = None,
        now: datetime | None = None,
    ) -> QuotaLedgerEntry:
        entry = QuotaLedgerEntry(
            account_id=account_id,
            feature=feature,
            outcome=UsageOutcome.SUCCESS if success else UsageOutcome.FAILURE,
            request_data=request_data,
            response_data=response_data,
            created_at=now or utcnow(),
        )
        with translate_errors():
            session.add(entry)
            session.flush()
        return entry

    def check_and_maybe_record(
        self,
        session: Session,
        account_id: int,
        feature: str = DEFAULT_FEATURE,
        action: Callable[[], Any] | None = None,
        scopes: Iterable[BoostScope] = WINDOW_SCOPES,
        request_data: dict | None = None,
        now: datetime | None = None,
    ) -> QuotaDecision:
        """Gate ``action`` on every window; record its outcome when it runs.

        A denied check returns without side effects. With no ``action`` the
        caller is granted one use and a success is recorded immediately. An
        action that raises is recorded as a failure (which does not consume
        quota) and the exception propagates.
        """
        now = now or utcnow()
        decision = self.check(
            session,
            account_id,
            feature,
            scopes,
            now=now,
            lock=settings.quota_serialize_per_account,
        )
        if not decision.allowed:
            logger.info(
                "Quota denied for account %s (%s): %s", account_id, feature, decision.to_dict()
            )
            return decision

        result = None
        if action is not None:
            try:
                result = action()
            except Exception:
                self.record(session, account_id, feature, False, request_data=request_data, now=now)
                raise

        self.record(session, account_id, feature, True, request_data=request_data, now=now)
        consumed = {
            scope: dataclasses.replace(usage, used=usage.used + 1)
            for scope, usage in decision.windows.items()
        }
        return dataclasses.replace(
            decision, windows=consumed, recorded=UsageOutcome.SUCCESS, result=result
        )

    def require(
        self,
        session: Session,
        account_id: int,
        feature: str = DEFAULT_FEATURE,
        action: Callable[[], Any] | None = None,
        now: datetime | None = None,
    ) -> QuotaDecision:
        """Like :meth:`check_and_maybe_record`, but raise when denied."""
        decision = self.check_and_maybe_record(session, account_id, feature, action, now=now)
        if not decision.allowed and decision.recorded is None:
            raise QuotaExceeded("AI usage limit reached", decision=decision)
        return decision

    def usage_stats(
        self,
        session: Session,
        account_id: int,
        feature: str = DEFAULT_FEATURE,
        now: datetime | None = None,
    ) -> dict:
        """Quota status payload; ``daysRemaining`` is when the oldest counted use rolls off."""
        now = now or utcnow()
        decision = self.check(session, account_id, feature, now=now)
        cycle = decision.cycle
        with translate_errors():
            oldest = session.execute(
                select(func.min(QuotaLedgerEntry.created_at)).where(
                    QuotaLedgerEntry.account_id == account_id,
                    QuotaLedgerEntry.feature == feature,
                    QuotaLedgerEntry.outcome == UsageOutcome.SUCCESS,
                    QuotaLedgerEntry.created_at >= cycle.window_start,
                    QuotaLedgerEntry.created_at < now,
                )
            ).scalar()
        days_remaining = 0
        if oldest is not None:
            rolls_off = as_utc(oldest) + self.window_length(BoostScope.CYCLE)
            days_remaining = max(0, math.ceil((rolls_off - now).total_seconds() / 86400))
        return {
            "daily": decision.daily.to_dict(),
            "cycle": cycle.to_dict(),
            "cycleInfo": {
                "startDate": cycle.window_start.isoformat(),
                "endDate": cycle.window_end.isoformat(),
                "daysRemaining": days_remaining,
            },
        }

    # -- Helpers --

    def _load_account(self, session: Session, account_id: int, lock: bool = False) -> Account:
        stmt = select(Account).where(Account.id == account_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        account = session.execute(stmt).scalar_one_or_none()
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account
