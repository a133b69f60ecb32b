"""
Domain models for the liquidity protection engine.

These are the core business objects used throughout the application.
Amounts are Decimal token units, timestamps are integer Unix seconds,
liquidity is integer AMM liquidity units.
"""
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from liquidity_guard.exceptions import ReasonCode


# ============ LEDGER ============

@dataclass
class AccountLiquidity:
    """
    Per-depositor vesting and rate-limit bookkeeping.

    `daily_window_base` / `weekly_window_base` hold the principal captured
    when each window opened; the window caps are measured against them.
    """
    account: str
    principal: Decimal = Decimal("0")
    total_deposited: Decimal = Decimal("0")
    total_withdrawn: Decimal = Decimal("0")
    vesting_start: Optional[int] = None
    daily_withdrawn: Decimal = Decimal("0")
    daily_window_start: int = 0
    daily_window_base: Decimal = Decimal("0")
    weekly_withdrawn: Decimal = Decimal("0")
    weekly_window_start: int = 0
    weekly_window_base: Decimal = Decimal("0")
    last_withdrawal_time: Optional[int] = None
    whitelisted: bool = False

    def copy(self) -> "AccountLiquidity":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "principal": str(self.principal),
            "total_deposited": str(self.total_deposited),
            "total_withdrawn": str(self.total_withdrawn),
            "vesting_start": self.vesting_start,
            "daily_withdrawn": str(self.daily_withdrawn),
            "daily_window_start": self.daily_window_start,
            "daily_window_base": str(self.daily_window_base),
            "weekly_withdrawn": str(self.weekly_withdrawn),
            "weekly_window_start": self.weekly_window_start,
            "weekly_window_base": str(self.weekly_window_base),
            "last_withdrawal_time": self.last_withdrawal_time,
            "whitelisted": self.whitelisted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountLiquidity":
        return cls(
            account=data["account"],
            principal=Decimal(str(data.get("principal", "0"))),
            total_deposited=Decimal(str(data.get("total_deposited", "0"))),
            total_withdrawn=Decimal(str(data.get("total_withdrawn", "0"))),
            vesting_start=data.get("vesting_start"),
            daily_withdrawn=Decimal(str(data.get("daily_withdrawn", "0"))),
            daily_window_start=int(data.get("daily_window_start") or 0),
            daily_window_base=Decimal(str(data.get("daily_window_base", "0"))),
            weekly_withdrawn=Decimal(str(data.get("weekly_withdrawn", "0"))),
            weekly_window_start=int(data.get("weekly_window_start") or 0),
            weekly_window_base=Decimal(str(data.get("weekly_window_base", "0"))),
            last_withdrawal_time=data.get("last_withdrawal_time"),
            whitelisted=bool(data.get("whitelisted", False)),
        )


@dataclass
class WithdrawalAuthorization:
    """
    Ledger decision for a proposed withdrawal.

    `updated` is the account record to commit if the withdrawal goes
    through; the ledger itself is untouched until commit.
    """
    approved: bool
    account: str
    amount: Decimal
    reason: Optional[ReasonCode] = None
    message: str = ""
    unlocked_pct: Decimal = Decimal("0")
    updated: Optional[AccountLiquidity] = None


@dataclass(frozen=True)
class WithdrawalReceipt:
    """Withdrawal-completed record returned to the caller."""
    account: str
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    timestamp: int
    twap_price: Optional[Decimal]
    price_source: str
    fee_deferred: bool = False


# ============ POSITIONS ============

class PositionState(str, Enum):
    """
    Position lifecycle states.

    State Machine:
        (no record) → ACTIVE                (mint)
        ACTIVE → PARTIALLY_DECREASED        (decrease)
        PARTIALLY_DECREASED → PARTIALLY_DECREASED
        ACTIVE / PARTIALLY_DECREASED → CLOSED (close)

    Terminal States: CLOSED
    """
    ACTIVE = "active"
    PARTIALLY_DECREASED = "partially_decreased"
    CLOSED = "closed"


@dataclass
class Position:
    """One AMM allocation owned by the Position Manager."""
    position_id: int
    tick_lower: int
    tick_upper: int
    liquidity: int
    state: PositionState = PositionState.ACTIVE
    opened_at: int = 0
    collected0: Decimal = Decimal("0")
    collected1: Decimal = Decimal("0")

    @property
    def active(self) -> bool:
        return self.state != PositionState.CLOSED

    def contains_tick(self, tick: int) -> bool:
        return self.tick_lower <= tick < self.tick_upper

    def midpoint_distance_x2(self, tick: int) -> int:
        """Twice the distance from the range midpoint to `tick` (integer-exact)."""
        return abs(self.tick_lower + self.tick_upper - 2 * tick)

    def copy(self) -> "Position":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "tick_lower": self.tick_lower,
            "tick_upper": self.tick_upper,
            "liquidity": self.liquidity,
            "state": self.state.value,
            "opened_at": self.opened_at,
            "collected0": str(self.collected0),
            "collected1": str(self.collected1),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            position_id=int(data["position_id"]),
            tick_lower=int(data["tick_lower"]),
            tick_upper=int(data["tick_upper"]),
            liquidity=int(data["liquidity"]),
            state=PositionState(data.get("state", PositionState.ACTIVE.value)),
            opened_at=int(data.get("opened_at") or 0),
            collected0=Decimal(str(data.get("collected0", "0"))),
            collected1=Decimal(str(data.get("collected1", "0"))),
        )


class PositionAction(str, Enum):
    MINTED = "minted"
    INCREASED = "increased"
    DECREASED = "decreased"
    COLLECTED = "collected"
    CLOSED = "closed"


@dataclass(frozen=True)
class PositionChange:
    """Outcome of a Position Manager operation."""
    action: PositionAction
    position_id: int
    liquidity_delta: int
    amount0: Decimal
    amount1: Decimal
    tick_lower: int
    tick_upper: int


# ============ AMM WIRE TYPES ============

@dataclass(frozen=True)
class Slot0:
    sqrt_price_x96: int
    tick: int
    tick_spacing: int


@dataclass(frozen=True)
class MintParams:
    tick_lower: int
    tick_upper: int
    amount0_desired: Decimal
    amount1_desired: Decimal
    amount0_min: Decimal
    amount1_min: Decimal
    recipient: str


@dataclass(frozen=True)
class IncreaseParams:
    position_id: int
    amount0_desired: Decimal
    amount1_desired: Decimal
    amount0_min: Decimal
    amount1_min: Decimal


@dataclass(frozen=True)
class DecreaseParams:
    position_id: int
    liquidity: int
    amount0_min: Decimal
    amount1_min: Decimal


@dataclass(frozen=True)
class MintResult:
    position_id: int
    liquidity: int
    amount0: Decimal
    amount1: Decimal


@dataclass(frozen=True)
class LiquidityResult:
    liquidity: int
    amount0: Decimal
    amount1: Decimal


@dataclass(frozen=True)
class AmountPair:
    amount0: Decimal
    amount1: Decimal


# ============ ORACLE ============

class PriceSource(str, Enum):
    """Where the price used for validation came from."""
    LIVE = "live"
    CACHE = "cache"
    UNAVAILABLE_NO_CACHE = "unavailable_no_cache"
    DISABLED = "disabled"


@dataclass(frozen=True)
class TWAPCache:
    price: Decimal
    updated_at: int


@dataclass(frozen=True)
class TWAPReading:
    price: Optional[Decimal]
    source: PriceSource
    as_of: Optional[int] = None


@dataclass(frozen=True)
class PriceCheck:
    """Result of a spot-vs-TWAP validation that passed."""
    spot_price: Optional[Decimal]
    twap_price: Optional[Decimal]
    source: PriceSource
    skipped: bool = False


# ============ EMERGENCY ============

@dataclass
class EmergencyState:
    """Process-wide emergency switches."""
    emergency_mode: bool = False
    emergency_reason: Optional[str] = None
    emergency_changed_at: Optional[int] = None
    circuit_breaker_triggered: bool = False
    circuit_breaker_reason: Optional[str] = None
    circuit_breaker_changed_at: Optional[int] = None

    def copy(self) -> "EmergencyState":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "emergency_mode": self.emergency_mode,
            "emergency_reason": self.emergency_reason,
            "emergency_changed_at": self.emergency_changed_at,
            "circuit_breaker_triggered": self.circuit_breaker_triggered,
            "circuit_breaker_reason": self.circuit_breaker_reason,
            "circuit_breaker_changed_at": self.circuit_breaker_changed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyState":
        known_fields = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known_fields})


# ============ EVENTS ============

class EventType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL_COMPLETED = "WITHDRAWAL_COMPLETED"
    LIQUIDITY_INJECTED = "LIQUIDITY_INJECTED"
    REWARDS_REINVESTED = "REWARDS_REINVESTED"
    POSITION_DECREASED = "POSITION_DECREASED"
    POSITION_CLOSED = "POSITION_CLOSED"
    POSITION_REBALANCED = "POSITION_REBALANCED"
    FEES_COLLECTED = "FEES_COLLECTED"
    FEES_SWEPT = "FEES_SWEPT"
    EMERGENCY_MODE_CHANGED = "EMERGENCY_MODE_CHANGED"
    CIRCUIT_BREAKER_CHANGED = "CIRCUIT_BREAKER_CHANGED"
    EMERGENCY_POSITION_WITHDRAWN = "EMERGENCY_POSITION_WITHDRAWN"
    CONFIG_UPDATED = "CONFIG_UPDATED"
    WHITELIST_UPDATED = "WHITELIST_UPDATED"
