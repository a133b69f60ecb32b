"""
Vesting and rolling-window withdrawal ledger.

Per-account bookkeeping of deposits, vesting start, and daily/weekly
withdrawal usage. Windows are rolling-reset (the counter drops to zero
once a full window has elapsed) and are evaluated lazily from `now` on
every call; nothing runs in the background.

Two independent caps apply to every non-whitelisted withdrawal:
    - rate:     daily / weekly window usage vs. principal at window start
    - lifetime: cumulative withdrawals vs. the vested share of deposits

authorize_withdrawal() never mutates the ledger. It returns the record
that would result, and the caller commits it once every other step of
the operation has succeeded.
"""
import threading
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from liquidity_guard.config.config import GuardConfig
from liquidity_guard.constants import MAX_PCT, PCT_DENOMINATOR, SECONDS_PER_DAY, SECONDS_PER_WEEK
from liquidity_guard.domain.models import AccountLiquidity, WithdrawalAuthorization
from liquidity_guard.exceptions import PolicyViolation, ReasonCode
from liquidity_guard.monitoring.logger import get_logger
from liquidity_guard.utils.amounts import AmountLike, to_positive_amount

logger = get_logger(__name__)


# ============ PURE HELPERS ============

def unlocked_pct(record: AccountLiquidity, config: GuardConfig, now: int) -> Decimal:
    """Share of lifetime deposits vested at `now`, in percent (0-100)."""
    if record.vesting_start is None or now <= record.vesting_start:
        return Decimal("0")
    weeks_elapsed = (now - record.vesting_start) // SECONDS_PER_WEEK
    return min(MAX_PCT, Decimal(weeks_elapsed) * config.vesting_unlock_pct_per_week)


def unlocked_amount(record: AccountLiquidity, config: GuardConfig, now: int) -> Decimal:
    return record.total_deposited * unlocked_pct(record, config, now) / PCT_DENOMINATOR


def roll_windows(record: AccountLiquidity, now: int) -> AccountLiquidity:
    """
    Return a copy with elapsed daily/weekly windows reset to start at `now`.

    A reset window captures the current principal as its base.
    """
    rolled = record.copy()
    if now - rolled.daily_window_start >= SECONDS_PER_DAY:
        rolled.daily_withdrawn = Decimal("0")
        rolled.daily_window_start = now
        rolled.daily_window_base = rolled.principal
    if now - rolled.weekly_window_start >= SECONDS_PER_WEEK:
        rolled.weekly_withdrawn = Decimal("0")
        rolled.weekly_window_start = now
        rolled.weekly_window_base = rolled.principal
    return rolled


def window_limit(window_base: Decimal, limit_pct: Decimal) -> Decimal:
    """Window cap; deposits made after the window opened do not raise it."""
    return window_base * limit_pct / PCT_DENOMINATOR


def _apply_withdrawal(record: AccountLiquidity, amount: Decimal, now: int) -> AccountLiquidity:
    updated = record.copy()
    updated.principal -= amount
    updated.total_withdrawn += amount
    updated.daily_withdrawn += amount
    updated.weekly_withdrawn += amount
    updated.last_withdrawal_time = now
    return updated


def raise_if_rejected(authorization: WithdrawalAuthorization) -> None:
    if not authorization.approved:
        raise PolicyViolation(
            authorization.message,
            authorization.reason,
            {"account": authorization.account, "amount": str(authorization.amount)},
        )


# ============ LEDGER ============

class WithdrawalLedger:
    """Account records keyed by account id."""

    def __init__(self):
        self._accounts: Dict[str, AccountLiquidity] = {}
        self._lock = threading.Lock()

    # -- Queries --

    def get(self, account: str) -> Optional[AccountLiquidity]:
        with self._lock:
            record = self._accounts.get(account)
            return record.copy() if record else None

    def accounts(self) -> List[AccountLiquidity]:
        with self._lock:
            return [record.copy() for record in self._accounts.values()]

    def total_principal(self) -> Decimal:
        with self._lock:
            return sum((r.principal for r in self._accounts.values()), Decimal("0"))

    def _current(self, account: str) -> AccountLiquidity:
        return self.get(account) or AccountLiquidity(account=account)

    # -- Mutation --

    def commit(self, record: AccountLiquidity) -> None:
        with self._lock:
            self._accounts[record.account] = record.copy()

    def restore(self, records: Iterable[AccountLiquidity]) -> None:
        with self._lock:
            self._accounts = {r.account: r.copy() for r in records}

    def set_whitelisted(self, account: str, whitelisted: bool) -> AccountLiquidity:
        record = self._current(account)
        record.whitelisted = whitelisted
        self.commit(record)
        logger.info("Whitelist updated", account=account, whitelisted=whitelisted)
        return record

    # -- Deposits --

    def preview_deposit(self, account: str, amount: AmountLike, config: GuardConfig, now: int) -> AccountLiquidity:
        """
        Record that a deposit of `amount` would produce.

        Raises:
            ValidationError: amount <= 0
            PolicyViolation: max_principal_per_account would be exceeded
        """
        amount = to_positive_amount(amount)
        record = self._current(account)

        new_principal = record.principal + amount
        cap = config.max_principal_per_account
        if cap > 0 and new_principal > cap:
            raise PolicyViolation(
                f"Deposit would raise principal to {new_principal}, above the {cap} cap",
                ReasonCode.MAX_PRINCIPAL_EXCEEDED,
                {"account": account, "principal": str(record.principal), "cap": str(cap)},
            )

        record.principal = new_principal
        record.total_deposited += amount
        if record.vesting_start is None:
            # first deposit opens both windows
            record.vesting_start = now
            record.daily_window_start = record.weekly_window_start = now
            record.daily_window_base = record.weekly_window_base = new_principal
        return record

    def record_deposit(self, account: str, amount: AmountLike, config: GuardConfig, now: int) -> AccountLiquidity:
        record = self.preview_deposit(account, amount, config, now)
        self.commit(record)
        return record

    # -- Withdrawals --

    def authorize_withdrawal(
        self,
        account: str,
        amount: AmountLike,
        config: GuardConfig,
        now: int,
    ) -> WithdrawalAuthorization:
        """
        Validate a withdrawal against cooldown, rolling limits and vesting.

        Returns:
            WithdrawalAuthorization. When approved, `updated` holds the record to commit.

        Raises:
            ValidationError: amount <= 0
        """
        amount = to_positive_amount(amount)
        record = self._current(account)

        def reject(reason: ReasonCode, message: str, pct: Decimal = Decimal("0")) -> WithdrawalAuthorization:
            logger.info("Withdrawal rejected", account=account, amount=str(amount), reason=reason.value)
            return WithdrawalAuthorization(
                approved=False, account=account, amount=amount, reason=reason, message=message, unlocked_pct=pct,
            )

        if amount > record.principal:
            return reject(
                ReasonCode.INSUFFICIENT_PRINCIPAL,
                f"Withdrawal {amount} exceeds principal {record.principal}",
            )

        if record.whitelisted:
            return WithdrawalAuthorization(
                approved=True,
                account=account,
                amount=amount,
                unlocked_pct=MAX_PCT,
                updated=_apply_withdrawal(roll_windows(record, now), amount, now),
            )

        if record.last_withdrawal_time is not None:
            ready_at = record.last_withdrawal_time + config.removal_cooldown_seconds
            if now < ready_at:
                return reject(ReasonCode.COOLDOWN_ACTIVE, f"Cooldown active for another {ready_at - now}s")

        rolled = roll_windows(record, now)

        daily_cap = window_limit(rolled.daily_window_base, config.daily_limit_pct)
        if rolled.daily_withdrawn + amount > daily_cap:
            return reject(
                ReasonCode.DAILY_LIMIT_EXCEEDED,
                f"Daily limit: {rolled.daily_withdrawn} already withdrawn, cap {daily_cap}",
            )

        weekly_cap = window_limit(rolled.weekly_window_base, config.weekly_limit_pct)
        if rolled.weekly_withdrawn + amount > weekly_cap:
            return reject(
                ReasonCode.WEEKLY_LIMIT_EXCEEDED,
                f"Weekly limit: {rolled.weekly_withdrawn} already withdrawn, cap {weekly_cap}",
            )

        pct = unlocked_pct(rolled, config, now)
        vested = rolled.total_deposited * pct / PCT_DENOMINATOR
        if rolled.total_withdrawn + amount > vested:
            return reject(
                ReasonCode.VESTING_LOCKED,
                f"Vesting: {rolled.total_withdrawn} withdrawn of {vested} unlocked ({pct}%)",
                pct,
            )

        return WithdrawalAuthorization(
            approved=True,
            account=account,
            amount=amount,
            unlocked_pct=pct,
            updated=_apply_withdrawal(rolled, amount, now),
        )
