"""
Test: vesting and rolling-window withdrawal ledger.
"""
from decimal import Decimal

import pytest

from liquidity_guard.config.config import GuardConfig
from liquidity_guard.constants import SECONDS_PER_DAY, SECONDS_PER_WEEK
from liquidity_guard.domain.models import AccountLiquidity
from liquidity_guard.exceptions import PolicyViolation, ReasonCode, ValidationError
from liquidity_guard.risk.withdrawal_ledger import (
    WithdrawalLedger,
    raise_if_rejected,
    roll_windows,
    unlocked_amount,
    unlocked_pct,
)


def test_vesting_scenario_three_weeks():
    """1000 deposited, 10%/week: 300 unlocked after 3 weeks, 350 rejected, 300 accepted."""
    config = GuardConfig(
        daily_limit_pct=Decimal("100"),
        weekly_limit_pct=Decimal("100"),
        vesting_unlock_pct_per_week=Decimal("10"),
    )
    ledger = WithdrawalLedger()
    ledger.record_deposit("alice", Decimal("1000"), config, now=0)
    now = 3 * SECONDS_PER_WEEK

    record = ledger.get("alice")
    assert unlocked_pct(record, config, now) == Decimal("30")
    assert unlocked_amount(record, config, now) == Decimal("300")

    rejected = ledger.authorize_withdrawal("alice", Decimal("350"), config, now)
    assert rejected.approved is False
    assert rejected.reason == ReasonCode.VESTING_LOCKED

    approved = ledger.authorize_withdrawal("alice", Decimal("300"), config, now)
    assert approved.approved is True
    assert approved.updated.principal == Decimal("700")
    assert approved.updated.total_withdrawn == Decimal("300")


def test_daily_limit_scenario():
    """Daily 5% of 1000: 30 then 30 the same day is 60 > 50, rejected."""
    config = GuardConfig(
        daily_limit_pct=Decimal("5"),
        weekly_limit_pct=Decimal("25"),
        vesting_unlock_pct_per_week=Decimal("100"),
        removal_cooldown_seconds=0,
    )
    ledger = WithdrawalLedger()
    ledger.record_deposit("bob", Decimal("1000"), config, now=0)
    now = SECONDS_PER_WEEK

    first = ledger.authorize_withdrawal("bob", Decimal("30"), config, now)
    assert first.approved is True
    ledger.commit(first.updated)

    second = ledger.authorize_withdrawal("bob", Decimal("30"), config, now + 60)
    assert second.approved is False
    assert second.reason == ReasonCode.DAILY_LIMIT_EXCEEDED


class TestWithdrawalLedger:
    def setup_method(self):
        self.config = GuardConfig(
            daily_limit_pct=Decimal("5"),
            weekly_limit_pct=Decimal("25"),
            vesting_unlock_pct_per_week=Decimal("100"),
            removal_cooldown_seconds=3600,
        )
        self.ledger = WithdrawalLedger()
        self.ledger.record_deposit("carol", Decimal("1000"), self.config, now=0)
        self.now = SECONDS_PER_WEEK

    def _withdraw(self, amount, now):
        authorization = self.ledger.authorize_withdrawal("carol", Decimal(amount), self.config, now)
        raise_if_rejected(authorization)
        self.ledger.commit(authorization.updated)
        return authorization

    def test_first_deposit_starts_vesting(self):
        self.ledger.record_deposit("carol", Decimal("10"), self.config, now=500)

        record = self.ledger.get("carol")
        assert record.vesting_start == 0
        assert record.principal == Decimal("1010")
        assert record.total_deposited == Decimal("1010")

    def test_authorize_does_not_mutate(self):
        before = self.ledger.get("carol")

        authorization = self.ledger.authorize_withdrawal("carol", Decimal("10"), self.config, self.now)

        assert authorization.approved is True
        assert self.ledger.get("carol") == before

    def test_cooldown_between_withdrawals(self):
        self._withdraw("10", self.now)

        blocked = self.ledger.authorize_withdrawal("carol", Decimal("10"), self.config, self.now + 1800)
        assert blocked.reason == ReasonCode.COOLDOWN_ACTIVE

        allowed = self.ledger.authorize_withdrawal("carol", Decimal("10"), self.config, self.now + 3600)
        assert allowed.approved is True

    def test_daily_window_resets_after_a_day(self):
        self._withdraw("50", self.now)

        same_day = self.ledger.authorize_withdrawal("carol", Decimal("1"), self.config, self.now + 7200)
        assert same_day.reason == ReasonCode.DAILY_LIMIT_EXCEEDED

        next_day = self.ledger.authorize_withdrawal("carol", Decimal("40"), self.config, self.now + SECONDS_PER_DAY)
        assert next_day.approved is True
        assert next_day.updated.daily_withdrawn == Decimal("40")
        assert next_day.updated.daily_window_start == self.now + SECONDS_PER_DAY

    def test_daily_cap_measured_on_principal_at_window_start(self):
        """After 40 of 1000, only 10 more fits (5% of 1000, not of 960)."""
        self._withdraw("40", self.now)

        fits = self.ledger.authorize_withdrawal("carol", Decimal("10"), self.config, self.now + 3600)
        too_much = self.ledger.authorize_withdrawal("carol", Decimal("10.01"), self.config, self.now + 3600)

        assert fits.approved is True
        assert too_much.reason == ReasonCode.DAILY_LIMIT_EXCEEDED

    def test_deposit_inside_window_keeps_cap(self):
        """Daily window opened on 1000 (cap 50); a mid-window deposit does not lift it."""
        self._withdraw("40", self.now)
        self.ledger.record_deposit("carol", Decimal("1000"), self.config, now=self.now + 60)

        fits = self.ledger.authorize_withdrawal("carol", Decimal("10"), self.config, self.now + 3600)
        too_much = self.ledger.authorize_withdrawal("carol", Decimal("11"), self.config, self.now + 3600)
        assert fits.approved is True
        assert too_much.reason == ReasonCode.DAILY_LIMIT_EXCEEDED

        next_day = self.ledger.authorize_withdrawal("carol", Decimal("95"), self.config, self.now + SECONDS_PER_DAY)
        assert next_day.approved is True
        assert next_day.updated.daily_window_base == Decimal("1960")
        assert next_day.updated.weekly_window_base == Decimal("1000")

    def test_first_deposit_opens_windows(self):
        ledger = WithdrawalLedger()
        record = ledger.record_deposit("erin", Decimal("200"), self.config, now=5000)

        assert record.daily_window_start == 5000
        assert record.weekly_window_start == 5000
        assert record.daily_window_base == Decimal("200")

    def test_weekly_limit(self):
        """25% of 1000 per week: 3 x 80 leaves room for exactly 10 more."""
        self.config = self.config.model_copy(update={"daily_limit_pct": Decimal("10")})
        for day in range(3):
            self._withdraw("80", self.now + day * SECONDS_PER_DAY)

        day3 = self.now + 3 * SECONDS_PER_DAY
        fits = self.ledger.authorize_withdrawal("carol", Decimal("10"), self.config, day3)
        blocked = self.ledger.authorize_withdrawal("carol", Decimal("11"), self.config, day3)

        assert fits.approved is True
        assert blocked.reason == ReasonCode.WEEKLY_LIMIT_EXCEEDED

    def test_insufficient_principal(self):
        authorization = self.ledger.authorize_withdrawal("carol", Decimal("1001"), self.config, self.now)
        assert authorization.reason == ReasonCode.INSUFFICIENT_PRINCIPAL

    def test_unknown_account_has_no_principal(self):
        authorization = self.ledger.authorize_withdrawal("nobody", Decimal("1"), self.config, self.now)
        assert authorization.reason == ReasonCode.INSUFFICIENT_PRINCIPAL

    def test_whitelisted_account_skips_limits(self):
        self.ledger.set_whitelisted("carol", True)

        authorization = self.ledger.authorize_withdrawal("carol", Decimal("900"), self.config, now=1)

        assert authorization.approved is True
        assert authorization.updated.principal == Decimal("100")
        assert authorization.updated.total_withdrawn == Decimal("900")
        assert authorization.updated.last_withdrawal_time == 1

    def test_vesting_limits_lifetime_total(self):
        config = self.config.model_copy(update={
            "vesting_unlock_pct_per_week": Decimal("2"),
            "daily_limit_pct": Decimal("100"),
            "weekly_limit_pct": Decimal("100"),
            "removal_cooldown_seconds": 0,
        })
        ledger = WithdrawalLedger()
        ledger.record_deposit("dave", Decimal("1000"), config, now=0)

        first = ledger.authorize_withdrawal("dave", Decimal("20"), config, SECONDS_PER_WEEK)
        ledger.commit(first.updated)
        again = ledger.authorize_withdrawal("dave", Decimal("1"), config, SECONDS_PER_WEEK + 10)

        assert again.reason == ReasonCode.VESTING_LOCKED

    def test_unlocked_pct_is_monotonic_and_capped(self):
        record = self.ledger.get("carol")
        config = self.config.model_copy(update={"vesting_unlock_pct_per_week": Decimal("30")})
        values = [unlocked_pct(record, config, week * SECONDS_PER_WEEK) for week in range(6)]

        assert values == sorted(values)
        assert values[-1] == Decimal("100")

    def test_max_principal_cap(self):
        config = self.config.model_copy(update={"max_principal_per_account": Decimal("1500")})

        with pytest.raises(PolicyViolation) as exc_info:
            self.ledger.record_deposit("carol", Decimal("600"), config, now=10)

        assert exc_info.value.reason == ReasonCode.MAX_PRINCIPAL_EXCEEDED
        assert self.ledger.get("carol").principal == Decimal("1000")

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError, match="positive"):
            self.ledger.authorize_withdrawal("carol", Decimal("0"), self.config, self.now)
        with pytest.raises(ValidationError):
            self.ledger.record_deposit("carol", Decimal("-5"), self.config, self.now)

    def test_raise_if_rejected_carries_reason(self):
        authorization = self.ledger.authorize_withdrawal("carol", Decimal("5000"), self.config, self.now)

        with pytest.raises(PolicyViolation) as exc_info:
            raise_if_rejected(authorization)
        assert exc_info.value.reason == ReasonCode.INSUFFICIENT_PRINCIPAL


def test_roll_windows_returns_copy():
    record = AccountLiquidity(account="x", daily_withdrawn=Decimal("5"), daily_window_start=0)

    rolled = roll_windows(record, SECONDS_PER_DAY)

    assert rolled.daily_withdrawn == Decimal("0")
    assert record.daily_withdrawn == Decimal("5")
