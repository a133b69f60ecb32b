"""
AMM Position Manager.

Owns the set of open concentrated-liquidity positions and is the only
component that talks to the AMM's position primitives.

Lifecycle per position:
    (no record) → ACTIVE → (PARTIALLY_DECREASED)* → CLOSED

Every operation computes its parameters (tick range, slippage minimums)
before touching the AMM. The local record is written after each AMM call
that succeeds, so it always matches what the AMM holds: liquidity the AMM
added on worse terms than the minimums is unwound again, and a close that
failed part way resumes where it stopped.

Active positions are kept in a list plus a position_id → index map so
closing a position is O(1) (swap-with-last).
"""
import threading
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from liquidity_guard.constants import BPS_DENOMINATOR, ZERO
from liquidity_guard.domain.models import (
    AmountPair,
    DecreaseParams,
    IncreaseParams,
    MintParams,
    Position,
    PositionAction,
    PositionChange,
    PositionState,
    Slot0,
)
from liquidity_guard.domain.protocols import AMMAdapter, TokenLedger
from liquidity_guard.exceptions import LiquidityGuardError, ReasonCode, SlippageExceeded, ValidationError
from liquidity_guard.monitoring.logger import get_logger
from liquidity_guard.oracle.tick_math import floor_to_spacing, usable_tick_bounds
from liquidity_guard.utils.amounts import AmountLike, to_amount
from liquidity_guard.utils.external import call_external, checked_approve

logger = get_logger(__name__)


def compute_tick_range(current_tick: int, tick_spacing: int, half_width: int) -> Tuple[int, int]:
    """
    Range centred on `current_tick`, both ends floored to the tick spacing.

    The AMM rejects ticks that are not multiples of the spacing.
    """
    if half_width < 1:
        raise ValueError(f"half_width must be >= 1, got {half_width}")
    span = half_width * tick_spacing
    lower = floor_to_spacing(current_tick - span, tick_spacing)
    upper = floor_to_spacing(current_tick + span, tick_spacing)
    min_usable, max_usable = usable_tick_bounds(tick_spacing)
    lower = max(lower, min_usable)
    upper = min(upper, max_usable)
    if upper <= lower:
        upper = lower + tick_spacing
    return lower, upper


def min_out(desired: Decimal, slippage_bps: int) -> Decimal:
    """Minimum acceptable amount for `desired` under the slippage tolerance."""
    return desired * (BPS_DENOMINATOR - Decimal(slippage_bps)) / BPS_DENOMINATOR


def check_slippage(operation: str, received: AmountPair, minimum0: Decimal, minimum1: Decimal) -> None:
    if received.amount0 < minimum0 or received.amount1 < minimum1:
        logger.error(
            "Slippage exceeded",
            operation=operation,
            amount0=str(received.amount0),
            amount1=str(received.amount1),
            amount0_min=str(minimum0),
            amount1_min=str(minimum1),
        )
        raise SlippageExceeded(
            f"{operation}: received ({received.amount0}, {received.amount1}) "
            f"below minimum ({minimum0}, {minimum1})",
            ReasonCode.SLIPPAGE_EXCEEDED,
            {"operation": operation},
        )


class PositionManager:
    """
    Active AMM positions and their mint / increase / decrease / collect / close lifecycle.

    Capability-agnostic: callers decide who may invoke what.
    """

    def __init__(self, amm: AMMAdapter, token0: TokenLedger, token1: TokenLedger, owner: str):
        self.amm = amm
        self.token0 = token0
        self.token1 = token1
        self.owner = owner
        self._positions: List[Position] = []
        self._index: Dict[int, int] = {}
        self._lock = threading.Lock()

    # -- Queries --

    def active_positions(self) -> List[Position]:
        with self._lock:
            return [p.copy() for p in self._positions]

    def get(self, position_id: int) -> Optional[Position]:
        with self._lock:
            idx = self._index.get(position_id)
            return self._positions[idx].copy() if idx is not None else None

    def _require_active(self, position_id: int) -> Position:
        position = self.get(position_id)
        if position is None:
            raise ValidationError(
                f"Position {position_id} is not active",
                ReasonCode.UNKNOWN_POSITION,
                {"position_id": position_id},
            )
        return position

    def best_position(self, current_tick: int) -> Optional[Position]:
        """
        Active position whose range contains `current_tick` with the closest midpoint.

        Ties go to the lowest position id.
        """
        candidates = [p for p in self.active_positions() if p.contains_tick(current_tick)]
        if not candidates:
            return None
        return min(candidates, key=lambda p: (p.midpoint_distance_x2(current_tick), p.position_id))

    # -- Local state --

    def _store(self, position: Position) -> None:
        with self._lock:
            idx = self._index.get(position.position_id)
            if idx is None:
                self._index[position.position_id] = len(self._positions)
                self._positions.append(position.copy())
            else:
                self._positions[idx] = position.copy()

    def _remove(self, position_id: int) -> None:
        with self._lock:
            idx = self._index.pop(position_id)
            last = self._positions.pop()
            if idx < len(self._positions):
                self._positions[idx] = last
                self._index[last.position_id] = idx

    def restore(self, positions: Iterable[Position]) -> None:
        with self._lock:
            self._positions = []
            self._index = {}
            for position in positions:
                if not position.active:
                    continue
                self._index[position.position_id] = len(self._positions)
                self._positions.append(position.copy())

    # -- Operations --

    def open_or_increase(
        self,
        amount0: AmountLike,
        amount1: AmountLike,
        slippage_bps: int,
        half_width: int,
        now: int,
    ) -> PositionChange:
        """
        Deploy (amount0, amount1) into the best in-range position, or mint a new one.

        When the AMM fills below the minimums, the liquidity it added is
        unwound before SlippageExceeded propagates. Allowances granted for
        the call are reset to zero whenever it aborts.

        Raises:
            ValidationError: negative amounts, or both zero
            SlippageExceeded: AMM used less than the minimum of either leg
            ExternalCallFailure: approve / slot0 / mint / increase failed
        """
        amount0 = to_amount(amount0, field="amount0")
        amount1 = to_amount(amount1, field="amount1")
        if amount0 < 0 or amount1 < 0 or (amount0 == 0 and amount1 == 0):
            raise ValidationError(
                f"Invalid deployment amounts ({amount0}, {amount1})",
                ReasonCode.INVALID_AMOUNT,
            )

        slot0 = call_external("amm.slot0", self.amm.slot0)
        minimum0 = min_out(amount0, slippage_bps)
        minimum1 = min_out(amount1, slippage_bps)

        checked_approve(self.token0, self.amm.address, amount0)
        checked_approve(self.token1, self.amm.address, amount1)
        try:
            target = self.best_position(slot0.tick)
            if target is None:
                return self._mint(slot0, amount0, amount1, minimum0, minimum1, half_width, now)
            return self._increase(target, slot0, amount0, amount1, minimum0, minimum1)
        except LiquidityGuardError:
            self._revoke_allowances()
            raise

    def _mint(
        self,
        slot0: Slot0,
        amount0: Decimal,
        amount1: Decimal,
        minimum0: Decimal,
        minimum1: Decimal,
        half_width: int,
        now: int,
    ) -> PositionChange:
        tick_lower, tick_upper = compute_tick_range(slot0.tick, slot0.tick_spacing, half_width)
        result = call_external(
            "amm.mint",
            self.amm.mint,
            MintParams(
                tick_lower=tick_lower,
                tick_upper=tick_upper,
                amount0_desired=amount0,
                amount1_desired=amount1,
                amount0_min=minimum0,
                amount1_min=minimum1,
                recipient=self.owner,
            ),
        )
        # the AMM holds the position from here on
        position = Position(
            position_id=result.position_id,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            liquidity=result.liquidity,
            state=PositionState.ACTIVE,
            opened_at=now,
        )
        self._store(position)
        try:
            check_slippage("mint", AmountPair(result.amount0, result.amount1), minimum0, minimum1)
        except SlippageExceeded:
            self._unwind(position, result.liquidity, burn=True)
            raise

        logger.info(
            "Position minted",
            position_id=position.position_id,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            liquidity=result.liquidity,
            current_tick=slot0.tick,
        )
        return PositionChange(
            PositionAction.MINTED, position.position_id, result.liquidity,
            result.amount0, result.amount1, tick_lower, tick_upper,
        )

    def _increase(
        self,
        target: Position,
        slot0: Slot0,
        amount0: Decimal,
        amount1: Decimal,
        minimum0: Decimal,
        minimum1: Decimal,
    ) -> PositionChange:
        result = call_external(
            "amm.increase_liquidity",
            self.amm.increase_liquidity,
            IncreaseParams(
                position_id=target.position_id,
                amount0_desired=amount0,
                amount1_desired=amount1,
                amount0_min=minimum0,
                amount1_min=minimum1,
            ),
        )
        target.liquidity += result.liquidity
        self._store(target)
        try:
            check_slippage("increase_liquidity", AmountPair(result.amount0, result.amount1), minimum0, minimum1)
        except SlippageExceeded:
            self._unwind(target, result.liquidity, burn=False)
            raise

        logger.info(
            "Position increased",
            position_id=target.position_id,
            liquidity_added=result.liquidity,
            liquidity=target.liquidity,
            current_tick=slot0.tick,
        )
        return PositionChange(
            PositionAction.INCREASED, target.position_id, result.liquidity,
            result.amount0, result.amount1, target.tick_lower, target.tick_upper,
        )

    def _unwind(self, position: Position, liquidity: int, burn: bool) -> None:
        """
        Take back liquidity the AMM added below the slippage minimums.

        The returned tokens are capital, not earnings, so the collected
        counters and the position state are left as they were. A failure
        part way leaves the record matching the AMM; close() finishes it.
        """
        state = position.state
        self._release(position, liquidity, ZERO, ZERO, "unwind")
        call_external("amm.collect", self.amm.collect, position.position_id)
        if burn:
            call_external("amm.burn", self.amm.burn, position.position_id)
            self._remove(position.position_id)
        else:
            position.state = state
            self._store(position)
        logger.warning("Under-filled liquidity unwound", position_id=position.position_id, liquidity=liquidity, burned=burn)

    def _revoke_allowances(self) -> None:
        checked_approve(self.token0, self.amm.address, ZERO)
        checked_approve(self.token1, self.amm.address, ZERO)

    def _release(
        self,
        position: Position,
        liquidity: int,
        minimum0: Decimal,
        minimum1: Decimal,
        operation: str,
    ) -> AmountPair:
        """
        Remove liquidity at the AMM and record the reduction at once.

        The record follows the AMM even when the amounts then fail the
        slippage check, so a retry never asks for liquidity that is gone.
        """
        removed = call_external(
            "amm.decrease_liquidity",
            self.amm.decrease_liquidity,
            DecreaseParams(position.position_id, liquidity, minimum0, minimum1),
        )
        position.liquidity -= liquidity
        position.state = PositionState.PARTIALLY_DECREASED
        self._store(position)
        check_slippage(operation, removed, minimum0, minimum1)
        return removed

    def _collect_owed(self, position: Position) -> AmountPair:
        collected = call_external("amm.collect", self.amm.collect, position.position_id)
        position.collected0 += collected.amount0
        position.collected1 += collected.amount1
        self._store(position)
        return collected

    def decrease(
        self,
        position_id: int,
        liquidity: int,
        amount0_min: AmountLike = ZERO,
        amount1_min: AmountLike = ZERO,
    ) -> PositionChange:
        """
        Remove `liquidity` units from a position, then collect what is owed.

        The reduced liquidity is recorded as soon as the AMM releases it;
        if the collect fails, a later collect or close sweeps the tokens.

        Raises:
            ValidationError: unknown position, or liquidity outside (0, recorded]
            SlippageExceeded: decrease returned less than the minimums
        """
        position = self._require_active(position_id)
        if liquidity <= 0 or liquidity > position.liquidity:
            raise ValidationError(
                f"Cannot remove {liquidity} liquidity from position {position_id} holding {position.liquidity}",
                ReasonCode.LIQUIDITY_EXCEEDS_POSITION,
                {"position_id": position_id, "liquidity": liquidity, "recorded": position.liquidity},
            )
        minimum0 = to_amount(amount0_min, field="amount0_min")
        minimum1 = to_amount(amount1_min, field="amount1_min")

        self._release(position, liquidity, minimum0, minimum1, "decrease_liquidity")
        collected = self._collect_owed(position)
        logger.info(
            "Position decreased",
            position_id=position_id,
            liquidity_removed=liquidity,
            liquidity=position.liquidity,
            collected0=str(collected.amount0),
            collected1=str(collected.amount1),
        )
        return PositionChange(
            PositionAction.DECREASED, position_id, -liquidity,
            collected.amount0, collected.amount1, position.tick_lower, position.tick_upper,
        )

    def collect(self, position_id: int) -> PositionChange:
        """Sweep owed tokens (accrued fees) without touching liquidity."""
        position = self._require_active(position_id)
        collected = self._collect_owed(position)
        logger.info(
            "Position fees collected",
            position_id=position_id,
            collected0=str(collected.amount0),
            collected1=str(collected.amount1),
        )
        return PositionChange(
            PositionAction.COLLECTED, position_id, 0,
            collected.amount0, collected.amount1, position.tick_lower, position.tick_upper,
        )

    def close(
        self,
        position_id: int,
        amount0_min: AmountLike = ZERO,
        amount1_min: AmountLike = ZERO,
    ) -> PositionChange:
        """
        Remove all liquidity, collect everything owed, burn, and drop from the active set.

        Each step is recorded as it succeeds. A close that failed after the
        decrease resumes from the collect on the next call.
        """
        position = self._require_active(position_id)
        minimum0 = to_amount(amount0_min, field="amount0_min")
        minimum1 = to_amount(amount1_min, field="amount1_min")

        liquidity_removed = position.liquidity
        if liquidity_removed > 0:
            self._release(position, liquidity_removed, minimum0, minimum1, "close")
        collected = self._collect_owed(position)
        call_external("amm.burn", self.amm.burn, position_id)

        self._remove(position_id)
        logger.info(
            "Position closed",
            position_id=position_id,
            liquidity_removed=liquidity_removed,
            collected0=str(collected.amount0),
            collected1=str(collected.amount1),
        )
        return PositionChange(
            PositionAction.CLOSED, position_id, -liquidity_removed,
            collected.amount0, collected.amount1, position.tick_lower, position.tick_upper,
        )

    def rebalance(
        self,
        position_id: int,
        slippage_bps: int,
        half_width: int,
        now: int,
    ) -> Optional[Tuple[PositionChange, PositionChange]]:
        """
        Move an out-of-range position back around the current tick.

        Returns:
            (close change, redeploy change), or None when the position is still in range.
        """
        position = self._require_active(position_id)
        slot0 = call_external("amm.slot0", self.amm.slot0)
        if position.contains_tick(slot0.tick):
            logger.debug("Rebalance skipped, position in range", position_id=position_id, current_tick=slot0.tick)
            return None

        closed = self.close(position_id)
        if closed.amount0 == 0 and closed.amount1 == 0:
            logger.warning("Rebalance closed an empty position, nothing to redeploy", position_id=position_id)
            return closed, closed
        redeployed = self.open_or_increase(closed.amount0, closed.amount1, slippage_bps, half_width, now)
        logger.info(
            "Position rebalanced",
            old_position_id=position_id,
            new_position_id=redeployed.position_id,
            current_tick=slot0.tick,
        )
        return closed, redeployed
