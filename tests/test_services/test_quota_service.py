"""Tests for rolling-window quota accounting."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from membergate.models import BoostScope, QuotaLedgerEntry, TemporaryBoost, UsageOutcome
from membergate.services.errors import AccountNotFound, QuotaExceeded
from membergate.services.quota_service import DEFAULT_FEATURE, QuotaService
from membergate.services.system_config import DEFAULT_DAILY_LIMIT_KEY, SystemConfigService


@pytest.fixture
def config():
    return SystemConfigService()


@pytest.fixture
def svc(config):
    return QuotaService(config)


@pytest.fixture
def add_usage(db_session):
    def _add(account_id, at, success=True, feature=DEFAULT_FEATURE):
        entry = QuotaLedgerEntry(
            account_id=account_id,
            feature=feature,
            outcome=UsageOutcome.SUCCESS if success else UsageOutcome.FAILURE,
            created_at=at,
        )
        db_session.add(entry)
        db_session.flush()
        return entry

    return _add


def _ledger_count(db_session, account_id):
    stmt = select(func.count()).select_from(QuotaLedgerEntry).where(
        QuotaLedgerEntry.account_id == account_id
    )
    return db_session.execute(stmt).scalar()


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


class TestLimits:
    def test_defaults(self, svc, db_session, account, now):
        assert svc.effective_limits(db_session, account, now) == {"daily": 10, "cycle": 120}

    def test_account_override(self, svc, db_session, make_account, now):
        account = make_account(base_daily_limit=25, base_cycle_limit=300)
        assert svc.effective_limits(db_session, account, now) == {"daily": 25, "cycle": 300}

    @pytest.mark.parametrize(
        ("scope", "stored", "expected"),
        [
            (BoostScope.DAILY, 0, 1),
            (BoostScope.DAILY, 5000, 1000),
            (BoostScope.CYCLE, 3, 10),
            (BoostScope.CYCLE, 50_000, 10000),
        ],
    )
    def test_clamped(self, svc, db_session, make_account, now, scope, stored, expected):
        column = "base_daily_limit" if scope == BoostScope.DAILY else "base_cycle_limit"
        account = make_account(**{column: stored})
        assert svc.effective_limit(db_session, account, scope, now) == expected

    def test_misconfigured_default_degrades_to_minimum(
        self, svc, config, db_session, account, now
    ):
        config.update(db_session, DEFAULT_DAILY_LIMIT_KEY, 0)
        assert svc.effective_limit(db_session, account, BoostScope.DAILY, now) == 1

    def test_runtime_default_override(self, svc, config, db_session, account, now):
        config.update(db_session, DEFAULT_DAILY_LIMIT_KEY, 42)
        assert svc.effective_limit(db_session, account, BoostScope.DAILY, now) == 42

    def test_active_temporary_boosts_add(self, svc, db_session, account, now):
        for amount in (5, 7):
            db_session.add(
                TemporaryBoost(
                    account_id=account.id,
                    scope=BoostScope.DAILY,
                    amount=amount,
                    valid_from=now - timedelta(days=1),
                    valid_to=now + timedelta(days=1),
                    active=True,
                )
            )
        db_session.flush()
        assert svc.effective_limit(db_session, account, BoostScope.DAILY, now) == 22

    def test_inactive_or_out_of_window_boosts_ignored(self, svc, db_session, account, now):
        db_session.add_all(
            [
                TemporaryBoost(
                    account_id=account.id,
                    scope=BoostScope.DAILY,
                    amount=5,
                    valid_from=now - timedelta(days=1),
                    valid_to=now + timedelta(days=1),
                    active=False,
                ),
                TemporaryBoost(
                    account_id=account.id,
                    scope=BoostScope.DAILY,
                    amount=5,
                    valid_from=now + timedelta(hours=1),
                    valid_to=now + timedelta(days=1),
                    active=True,
                ),
                TemporaryBoost(
                    account_id=account.id,
                    scope=BoostScope.CYCLE,
                    amount=5,
                    valid_from=now - timedelta(days=1),
                    valid_to=now + timedelta(days=1),
                    active=True,
                ),
            ]
        )
        db_session.flush()
        assert svc.effective_limit(db_session, account, BoostScope.DAILY, now) == 10


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------


class TestCheck:
    def test_fresh_account(self, svc, db_session, account, now):
        decision = svc.check(db_session, account.id, now=now)
        assert decision.allowed is True
        assert decision.daily.used == 0
        assert decision.daily.remaining == 10
        assert decision.cycle.remaining == 120
        assert decision.daily.window_start == now - timedelta(hours=24)

    def test_only_successes_count(self, svc, db_session, account, add_usage, now):
        add_usage(account.id, now - timedelta(hours=1))
        add_usage(account.id, now - timedelta(hours=1), success=False)
        add_usage(account.id, now - timedelta(hours=2), success=False)
        assert svc.check(db_session, account.id, now=now).daily.used == 1

    def test_rolling_window_bounds(self, svc, db_session, account, add_usage, now):
        add_usage(account.id, now - timedelta(hours=24))  # oldest instant still inside
        add_usage(account.id, now - timedelta(hours=24, seconds=1))  # just outside
        add_usage(account.id, now)  # window end is exclusive
        assert svc.check(db_session, account.id, now=now).daily.used == 1

    def test_older_use_counts_only_toward_cycle(self, svc, db_session, account, add_usage, now):
        add_usage(account.id, now - timedelta(hours=25))
        decision = svc.check(db_session, account.id, now=now)
        assert decision.daily.used == 0
        assert decision.cycle.used == 1
        assert decision.cycle.remaining == 119

    def test_failures_leave_last_use_available(self, svc, db_session, account, add_usage, now):
        for minutes in range(1, 10):
            add_usage(account.id, now - timedelta(minutes=minutes))
        add_usage(account.id, now - timedelta(minutes=30), success=False)

        decision = svc.check(db_session, account.id, now=now)
        assert decision.daily.limit == 10
        assert decision.daily.used == 9
        assert decision.daily.remaining == 1
        assert decision.allowed is True

    def test_usage_rolls_off(self, svc, db_session, make_account, add_usage, now):
        account = make_account(base_daily_limit=1)
        add_usage(account.id, now - timedelta(hours=23))
        assert svc.check(db_session, account.id, now=now).allowed is False
        later = now + timedelta(hours=1, seconds=1)
        assert svc.check(db_session, account.id, now=later).allowed is True

    def test_features_are_separate(self, svc, db_session, account, add_usage, now):
        add_usage(account.id, now - timedelta(hours=1), feature="summarize")
        assert svc.check(db_session, account.id, now=now).daily.used == 0
        assert svc.check(db_session, account.id, "summarize", now=now).daily.used == 1

    def test_cycle_limit_denies(self, svc, db_session, make_account, add_usage, now):
        account = make_account(base_daily_limit=1000, base_cycle_limit=10)
        for day in range(1, 11):
            add_usage(account.id, now - timedelta(days=day))

        decision = svc.check(db_session, account.id, now=now)
        assert decision.daily.allowed is True
        assert decision.cycle.allowed is False
        assert decision.allowed is False

    def test_single_scope(self, svc, db_session, account, now):
        decision = svc.check(db_session, account.id, scopes=(BoostScope.DAILY,), now=now)
        assert decision.cycle is None
        assert decision.limit == 10

    def test_never_writes(self, svc, db_session, account, now):
        svc.check(db_session, account.id, now=now)
        assert _ledger_count(db_session, account.id) == 0

    def test_unknown_account(self, svc, db_session, now):
        with pytest.raises(AccountNotFound):
            svc.check(db_session, 123456, now=now)


# ---------------------------------------------------------------------------
# check_and_maybe_record / require
# ---------------------------------------------------------------------------


class TestCheckAndMaybeRecord:
    def test_allowed_records_success(self, svc, db_session, account, now):
        decision = svc.check_and_maybe_record(db_session, account.id, now=now)
        assert decision.allowed is True
        assert decision.recorded == UsageOutcome.SUCCESS
        assert decision.daily.used == 1
        assert decision.daily.remaining == 9
        assert _ledger_count(db_session, account.id) == 1

    def test_limit_is_exact(self, svc, db_session, make_account, now):
        account = make_account(base_daily_limit=3)
        outcomes = [
            svc.check_and_maybe_record(db_session, account.id, now=now + timedelta(seconds=i))
            for i in range(4)
        ]
        assert [d.recorded for d in outcomes] == [UsageOutcome.SUCCESS] * 3 + [None]
        assert outcomes[-1].allowed is False
        assert outcomes[-1].daily.remaining == 0
        assert _ledger_count(db_session, account.id) == 3

    def test_denied_has_no_side_effects(self, svc, db_session, make_account, add_usage, now):
        account = make_account(base_daily_limit=1)
        add_usage(account.id, now - timedelta(minutes=5))
        called = []

        decision = svc.check_and_maybe_record(
            db_session, account.id, action=lambda: called.append(1), now=now
        )
        assert decision.allowed is False
        assert called == []
        assert _ledger_count(db_session, account.id) == 1

    def test_action_result_is_returned(self, svc, db_session, account, now):
        decision = svc.check_and_maybe_record(
            db_session, account.id, action=lambda: {"tasks": 3}, now=now
        )
        assert decision.result == {"tasks": 3}

    def test_failed_action_recorded_as_failure(self, svc, db_session, account, now):
        def boom():
            raise RuntimeError("model offline")

        with pytest.raises(RuntimeError, match="offline"):
            svc.check_and_maybe_record(
                db_session, account.id, action=boom, request_data={"prompt": "x"}, now=now
            )

        entry = db_session.execute(
            select(QuotaLedgerEntry).where(QuotaLedgerEntry.account_id == account.id)
        ).scalar_one()
        assert entry.outcome == UsageOutcome.FAILURE
        assert entry.request_data == {"prompt": "x"}
        later = now + timedelta(seconds=1)
        assert svc.check(db_session, account.id, now=later).daily.used == 0

    def test_serialized_mode_locks_account(self, svc, db_session, account, now):
        with patch("membergate.services.quota_service.settings") as mock_settings:
            mock_settings.quota_serialize_per_account = True
            mock_settings.daily_window_hours = 24
            mock_settings.cycle_window_days = 30
            mock_settings.daily_limit_min, mock_settings.daily_limit_max = 1, 1000
            mock_settings.cycle_limit_min, mock_settings.cycle_limit_max = 10, 10000
            with patch.object(svc, "check", wraps=svc.check) as check:
                svc.check_and_maybe_record(db_session, account.id, now=now)
        assert check.call_args.kwargs["lock"] is True


class TestRequire:
    def test_allowed(self, svc, db_session, account, now):
        decision = svc.require(db_session, account.id, now=now)
        assert decision.recorded == UsageOutcome.SUCCESS

    def test_last_allowed_use_does_not_raise(self, svc, db_session, make_account, now):
        account = make_account(base_daily_limit=1)
        decision = svc.require(db_session, account.id, now=now)
        assert decision.daily.remaining == 0

    def test_denied_raises_with_decision(self, svc, db_session, make_account, add_usage, now):
        account = make_account(base_daily_limit=1)
        add_usage(account.id, now - timedelta(minutes=1))
        with pytest.raises(QuotaExceeded) as exc_info:
            svc.require(db_session, account.id, now=now)
        assert exc_info.value.status_code == 429
        assert exc_info.value.decision.daily.used == 1


# ---------------------------------------------------------------------------
# record / usage_stats
# ---------------------------------------------------------------------------


class TestRecord:
    def test_appends_entry(self, svc, db_session, account, now):
        entry = svc.record(
            db_session, account.id, DEFAULT_FEATURE, True, response_data={"ok": True}, now=now
        )
        assert entry.id is not None
        assert entry.outcome == UsageOutcome.SUCCESS
        assert entry.response_data == {"ok": True}


class TestUsageStats:
    def test_payload_shape(self, svc, db_session, account, add_usage, now):
        add_usage(account.id, now - timedelta(hours=2))
        add_usage(account.id, now - timedelta(days=3))

        stats = svc.usage_stats(db_session, account.id, now=now)
        assert stats["daily"] == {"used": 1, "remaining": 9, "limit": 10}
        assert stats["cycle"] == {"used": 2, "remaining": 118, "limit": 120}
        assert stats["cycleInfo"]["startDate"] == (now - timedelta(days=30)).isoformat()
        assert stats["cycleInfo"]["endDate"] == now.isoformat()

    def test_days_until_oldest_use_rolls_off(self, svc, db_session, account, add_usage, now):
        add_usage(account.id, now - timedelta(days=3))
        add_usage(account.id, now - timedelta(days=1))
        stats = svc.usage_stats(db_session, account.id, now=now)
        assert stats["cycleInfo"]["daysRemaining"] == 27

    def test_no_usage(self, svc, db_session, account, now):
        stats = svc.usage_stats(db_session, account.id, now=now)
        assert stats["cycleInfo"]["daysRemaining"] == 0
        assert stats["daily"]["remaining"] == 10
