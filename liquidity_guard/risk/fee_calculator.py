"""
Withdrawal fee schedule.

Pure functions of (account record, amount, config, now): no I/O, no
randomness, so the same inputs always give the same fee.

    fee = base + size surcharge
    fee = fee * (100 - unlocked_pct) / 100     (vesting discount)
    fee = min(fee, amount * max_fee_pct / 100)
"""
from dataclasses import dataclass
from decimal import Decimal

from liquidity_guard.config.config import GuardConfig
from liquidity_guard.constants import MAX_PCT, PCT_DENOMINATOR, ZERO
from liquidity_guard.domain.models import AccountLiquidity
from liquidity_guard.risk.withdrawal_ledger import unlocked_pct
from liquidity_guard.utils.amounts import AmountLike, to_amount


@dataclass(frozen=True)
class FeeBreakdown:
    base_fee: Decimal
    size_surcharge: Decimal
    vesting_discount_pct: Decimal
    capped: bool
    total: Decimal


def is_large_withdrawal(record: AccountLiquidity, amount: Decimal, config: GuardConfig) -> bool:
    """amount / principal above the configured threshold share."""
    if record.principal <= 0:
        return False
    return amount * PCT_DENOMINATOR > record.principal * config.large_withdrawal_threshold_pct


def compute_fee_breakdown(
    record: AccountLiquidity,
    amount: AmountLike,
    config: GuardConfig,
    now: int,
) -> FeeBreakdown:
    amount = to_amount(amount)
    if record.whitelisted or amount <= 0:
        return FeeBreakdown(ZERO, ZERO, MAX_PCT if record.whitelisted else ZERO, False, ZERO)

    base_fee = amount * config.base_fee_pct / PCT_DENOMINATOR
    surcharge = ZERO
    if is_large_withdrawal(record, amount, config):
        surcharge = amount * config.large_withdrawal_fee_pct / PCT_DENOMINATOR

    discount_pct = unlocked_pct(record, config, now)
    fee = (base_fee + surcharge) * (MAX_PCT - discount_pct) / PCT_DENOMINATOR

    ceiling = amount * config.max_fee_pct / PCT_DENOMINATOR
    capped = fee > ceiling
    fee = max(ZERO, min(fee, ceiling))

    return FeeBreakdown(
        base_fee=base_fee,
        size_surcharge=surcharge,
        vesting_discount_pct=discount_pct,
        capped=capped,
        total=fee,
    )


def compute_fee(record: AccountLiquidity, amount: AmountLike, config: GuardConfig, now: int) -> Decimal:
    """Fee owed on withdrawing `amount`, computed on the pre-withdrawal record."""
    return compute_fee_breakdown(record, amount, config, now).total
