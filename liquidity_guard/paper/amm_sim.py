"""
In-memory AMM, token ledgers and treasury for paper runs and tests.

Models:
- Tick history → tick-cumulative oracle observations (read from a clock)
- Per-window observation failures and one-shot call failures
- Concentrated-liquidity positions with a fill ratio standing in for
  price impact (fill_ratio < 1 returns fewer tokens than requested)
- Token balances and allowances; the pool pulls tokens only up to the
  allowance the owner granted it

Liquidity is a simple linear function of the tokens deposited; the
simulator does not reproduce the AMM's exact amount/liquidity curves.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from liquidity_guard.constants import MAX_TICK, MIN_TICK, ZERO
from liquidity_guard.domain.models import (
    AmountPair,
    DecreaseParams,
    IncreaseParams,
    LiquidityResult,
    MintParams,
    MintResult,
    Slot0,
)
from liquidity_guard.domain.protocols import Clock
from liquidity_guard.exceptions import ReasonCode, SlippageExceeded
from liquidity_guard.monitoring.logger import get_logger
from liquidity_guard.oracle.tick_math import get_sqrt_ratio_at_tick, sqrt_price_x96_to_price

logger = get_logger(__name__)

LIQUIDITY_UNITS_PER_TOKEN = 10**6


class InjectedFault(RuntimeError):
    """Raised by a simulator call that was told to fail."""


# ---------------------------------------------------------------------------
# Token ledger
# ---------------------------------------------------------------------------

class SimulatedToken:
    """
    Fungible token bound to one caller address.

    transfer / transfer_from / approve act on behalf of `bound_to`
    (the engine), as a contract call would use msg.sender.
    """

    def __init__(
        self,
        symbol: str,
        bound_to: str,
        balances: Optional[Dict[str, Decimal]] = None,
    ):
        self.symbol = symbol
        self.bound_to = bound_to
        self._balances: Dict[str, Decimal] = {k: Decimal(str(v)) for k, v in (balances or {}).items()}
        self._allowances: Dict[Tuple[str, str], Decimal] = {}
        self._fail_next: Set[str] = set()
        # Invoked as on_transfer(recipient, amount) before a transfer settles
        self.on_transfer: Optional[Callable[[str, Decimal], None]] = None
        self.transfers: List[Tuple[str, str, Decimal]] = []

    # -- Test controls --

    def mint(self, holder: str, amount: Decimal) -> None:
        self._balances[holder] = self._balances.get(holder, ZERO) + Decimal(str(amount))

    def fail_next(self, method: str) -> None:
        self._fail_next.add(method)

    def _maybe_fail(self, method: str) -> None:
        if method in self._fail_next:
            self._fail_next.discard(method)
            raise InjectedFault(f"[INJECTED] {self.symbol}.{method} failed")

    def allowance(self, owner: str, spender: str) -> Decimal:
        return self._allowances.get((owner, spender), ZERO)

    def set_allowance(self, owner: str, spender: str, amount: Decimal) -> None:
        self._allowances[(owner, spender)] = Decimal(str(amount))

    # -- Ledger --

    def move(self, sender: str, recipient: str, amount: Decimal) -> bool:
        if amount < 0 or self._balances.get(sender, ZERO) < amount:
            return False
        self._balances[sender] = self._balances.get(sender, ZERO) - amount
        self._balances[recipient] = self._balances.get(recipient, ZERO) + amount
        self.transfers.append((sender, recipient, amount))
        return True

    def pull(self, owner: str, spender: str, recipient: str, amount: Decimal) -> bool:
        """Spend `spender`'s allowance over `owner`'s balance."""
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            logger.debug("Allowance too low", token=self.symbol, owner=owner, spender=spender)
            return False
        if not self.move(owner, recipient, amount):
            return False
        self._allowances[(owner, spender)] = allowed - amount
        return True

    def transfer(self, recipient: str, amount: Decimal) -> bool:
        self._maybe_fail("transfer")
        if self.on_transfer is not None:
            self.on_transfer(recipient, amount)
        return self.move(self.bound_to, recipient, amount)

    def transfer_from(self, owner: str, recipient: str, amount: Decimal) -> bool:
        self._maybe_fail("transfer_from")
        return self.move(owner, recipient, amount)

    def approve(self, spender: str, amount: Decimal) -> bool:
        self._maybe_fail("approve")
        self.set_allowance(self.bound_to, spender, amount)
        return True

    def balance_of(self, holder: str) -> Decimal:
        self._maybe_fail("balance_of")
        return self._balances.get(holder, ZERO)


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

@dataclass
class SimPosition:
    owner: str
    tick_lower: int
    tick_upper: int
    liquidity: int
    deposited0: Decimal
    deposited1: Decimal
    owed0: Decimal = ZERO
    owed1: Decimal = ZERO


class SimulatedPool:
    """
    Concentrated-liquidity pool with an oracle over a recorded tick history.

    The history starts when the pool is created; observing further back
    than that raises, as the real oracle does.
    """

    def __init__(
        self,
        clock: Clock,
        token0: SimulatedToken,
        token1: SimulatedToken,
        address: str = "amm-pool",
        tick_spacing: int = 10,
        initial_tick: int = 0,
        fill_ratio: Decimal = Decimal("1"),
        enforce_minimums: bool = False,
    ):
        if tick_spacing <= 0:
            raise ValueError("tick_spacing must be positive")
        self.clock = clock
        self.token0 = token0
        self.token1 = token1
        self.address = address
        self.tick_spacing = tick_spacing
        self.fill_ratio = Decimal(str(fill_ratio))
        self.enforce_minimums = enforce_minimums

        self._history: List[Tuple[int, int]] = [(clock.time(), initial_tick)]
        self._positions: Dict[int, SimPosition] = {}
        self._next_id = 1
        self._failing_windows: Set[int] = set()
        self._fail_next: Set[str] = set()

    # -- Test controls --

    @property
    def current_tick(self) -> int:
        return self._history[-1][1]

    def set_tick(self, tick: int) -> None:
        """Move the price; recorded at the clock's current time."""
        if not MIN_TICK <= tick <= MAX_TICK:
            raise ValueError(f"tick {tick} out of range")
        now = self.clock.time()
        if now < self._history[-1][0]:
            raise ValueError("Clock moved backwards")
        if now == self._history[-1][0]:
            self._history[-1] = (now, tick)
        else:
            self._history.append((now, tick))

    def fail_windows(self, *seconds_agos: int) -> None:
        self._failing_windows.update(seconds_agos)

    def fail_all_observations(self) -> None:
        self._failing_windows.add(0)

    def fail_next(self, method: str) -> None:
        self._fail_next.add(method)

    def _maybe_fail(self, method: str) -> None:
        if method in self._fail_next:
            self._fail_next.discard(method)
            raise InjectedFault(f"[INJECTED] pool.{method} failed")

    def accrue_fees(self, position_id: int, amount0: Decimal, amount1: Decimal) -> None:
        """Credit trading fees to a position; the pool must hold the tokens."""
        position = self._position(position_id)
        self.token0.mint(self.address, amount0)
        self.token1.mint(self.address, amount1)
        position.owed0 += Decimal(str(amount0))
        position.owed1 += Decimal(str(amount1))

    def position_info(self, position_id: int) -> SimPosition:
        return self._position(position_id)

    # -- Oracle --

    def _cumulative_at(self, t: int) -> int:
        start = self._history[0][0]
        if t < start:
            raise ValueError(f"OLD: observation at {t} predates pool history ({start})")
        cumulative = 0
        for i, (ts, tick) in enumerate(self._history):
            if ts >= t:
                break
            end = self._history[i + 1][0] if i + 1 < len(self._history) else t
            cumulative += tick * (min(end, t) - ts)
        return cumulative

    def observe(self, seconds_agos: Sequence[int]) -> List[int]:
        self._maybe_fail("observe")
        for seconds_ago in seconds_agos:
            if seconds_ago in self._failing_windows:
                raise InjectedFault(f"[INJECTED] observe({seconds_ago}) failed")
        now = self.clock.time()
        return [self._cumulative_at(now - seconds_ago) for seconds_ago in seconds_agos]

    def slot0(self) -> Slot0:
        self._maybe_fail("slot0")
        tick = self.current_tick
        return Slot0(sqrt_price_x96=get_sqrt_ratio_at_tick(tick), tick=tick, tick_spacing=self.tick_spacing)

    # -- Positions --

    def _position(self, position_id: int) -> SimPosition:
        if position_id not in self._positions:
            raise ValueError(f"Invalid token ID {position_id}")
        return self._positions[position_id]

    def _check_minimums(self, used0: Decimal, used1: Decimal, min0: Decimal, min1: Decimal) -> None:
        if self.enforce_minimums and (used0 < min0 or used1 < min1):
            raise SlippageExceeded(
                "Price slippage check",
                ReasonCode.SLIPPAGE_EXCEEDED,
                {"amount0": str(used0), "amount1": str(used1)},
            )

    def _pull(self, owner: str, amount0: Decimal, amount1: Decimal) -> None:
        if not self.token0.pull(owner, self.address, self.address, amount0):
            raise ValueError(f"STF: {self.token0.symbol} transfer from {owner} failed")
        if not self.token1.pull(owner, self.address, self.address, amount1):
            raise ValueError(f"STF: {self.token1.symbol} transfer from {owner} failed")

    @staticmethod
    def _liquidity_for(amount0: Decimal, amount1: Decimal) -> int:
        return int((amount0 + amount1) * LIQUIDITY_UNITS_PER_TOKEN)

    def mint(self, params: MintParams) -> MintResult:
        self._maybe_fail("mint")
        if params.tick_lower >= params.tick_upper:
            raise ValueError("TLU: tick_lower must be below tick_upper")
        if params.tick_lower % self.tick_spacing or params.tick_upper % self.tick_spacing:
            raise ValueError("Ticks must be multiples of the tick spacing")

        used0 = params.amount0_desired * self.fill_ratio
        used1 = params.amount1_desired * self.fill_ratio
        self._check_minimums(used0, used1, params.amount0_min, params.amount1_min)

        liquidity = self._liquidity_for(used0, used1)
        if liquidity <= 0:
            raise ValueError("Mint would create zero liquidity")
        self._pull(params.recipient, used0, used1)

        position_id = self._next_id
        self._next_id += 1
        self._positions[position_id] = SimPosition(
            owner=params.recipient,
            tick_lower=params.tick_lower,
            tick_upper=params.tick_upper,
            liquidity=liquidity,
            deposited0=used0,
            deposited1=used1,
        )
        return MintResult(position_id=position_id, liquidity=liquidity, amount0=used0, amount1=used1)

    def increase_liquidity(self, params: IncreaseParams) -> LiquidityResult:
        self._maybe_fail("increase_liquidity")
        position = self._position(params.position_id)

        used0 = params.amount0_desired * self.fill_ratio
        used1 = params.amount1_desired * self.fill_ratio
        self._check_minimums(used0, used1, params.amount0_min, params.amount1_min)

        liquidity = self._liquidity_for(used0, used1)
        self._pull(position.owner, used0, used1)

        position.liquidity += liquidity
        position.deposited0 += used0
        position.deposited1 += used1
        return LiquidityResult(liquidity=liquidity, amount0=used0, amount1=used1)

    def decrease_liquidity(self, params: DecreaseParams) -> AmountPair:
        self._maybe_fail("decrease_liquidity")
        position = self._position(params.position_id)
        if params.liquidity <= 0 or params.liquidity > position.liquidity:
            raise ValueError(f"Cannot remove {params.liquidity} of {position.liquidity} liquidity")

        share = Decimal(params.liquidity) / Decimal(position.liquidity)
        released0 = position.deposited0 * share
        released1 = position.deposited1 * share
        out0 = released0 * self.fill_ratio
        out1 = released1 * self.fill_ratio
        self._check_minimums(out0, out1, params.amount0_min, params.amount1_min)

        position.liquidity -= params.liquidity
        position.deposited0 -= released0
        position.deposited1 -= released1
        position.owed0 += out0
        position.owed1 += out1
        return AmountPair(amount0=out0, amount1=out1)

    def collect(self, position_id: int) -> AmountPair:
        self._maybe_fail("collect")
        position = self._position(position_id)
        amount0, amount1 = position.owed0, position.owed1
        if amount0 > 0 and not self.token0.move(self.address, position.owner, amount0):
            raise ValueError(f"Pool short of {self.token0.symbol}")
        if amount1 > 0 and not self.token1.move(self.address, position.owner, amount1):
            raise ValueError(f"Pool short of {self.token1.symbol}")
        position.owed0 = ZERO
        position.owed1 = ZERO
        return AmountPair(amount0=amount0, amount1=amount1)

    def burn(self, position_id: int) -> None:
        self._maybe_fail("burn")
        position = self._position(position_id)
        if position.liquidity != 0 or position.owed0 != 0 or position.owed1 != 0:
            raise ValueError("Not cleared")
        del self._positions[position_id]


# ---------------------------------------------------------------------------
# Treasury
# ---------------------------------------------------------------------------

class SimulatedTreasury:
    """
    Sends the paired asset to the engine for injections.

    The paired amount is `amount` valued at the pool's spot price when a
    pool is given, otherwise `amount * ratio`.
    """

    def __init__(
        self,
        paired_token: SimulatedToken,
        engine_address: str,
        address: str = "treasury",
        pool: Optional[SimulatedPool] = None,
        ratio: Decimal = Decimal("1"),
    ):
        self.paired_token = paired_token
        self.engine_address = engine_address
        self.address = address
        self.pool = pool
        self.ratio = Decimal(str(ratio))
        self._fail_next = False

    def fail_next(self) -> None:
        self._fail_next = True

    def withdraw_paired_asset_equivalent(self, amount: Decimal) -> Decimal:
        if self._fail_next:
            self._fail_next = False
            raise InjectedFault("[INJECTED] treasury withdrawal failed")
        ratio = self.ratio
        if self.pool is not None:
            ratio = sqrt_price_x96_to_price(self.pool.slot0().sqrt_price_x96)
        paired = Decimal(str(amount)) * ratio
        if not self.paired_token.move(self.address, self.engine_address, paired):
            raise ValueError(f"Treasury holds too little {self.paired_token.symbol} for {paired}")
        return paired
