"""
Test: AMM position lifecycle, best-position selection and slippage handling.
"""
from decimal import Decimal

import pytest

from liquidity_guard.domain.models import Position, PositionAction, PositionState
from liquidity_guard.exceptions import ExternalCallFailure, ReasonCode, SlippageExceeded, ValidationError
from liquidity_guard.execution.position_manager import PositionManager, compute_tick_range, min_out
from liquidity_guard.paper.amm_sim import SimulatedPool, SimulatedToken
from liquidity_guard.utils.clock import SimClock

ENGINE = "engine"
SLIPPAGE_BPS = 50


class TestTickRange:
    def test_centred_on_current_tick(self):
        assert compute_tick_range(150, 10, 5) == (100, 200)

    def test_negative_ticks_floor_downwards(self):
        assert compute_tick_range(-15, 10, 1) == (-30, -10)

    def test_clamped_to_usable_bounds(self):
        lower, upper = compute_tick_range(887_200, 60, 10)
        assert upper == 887_220
        assert lower < upper

    def test_min_out(self):
        assert min_out(Decimal("1000"), 50) == Decimal("995")
        assert min_out(Decimal("1000"), 0) == Decimal("1000")


class TestPositionManager:
    def setup_method(self):
        self.clock = SimClock(start=0)
        self.token0 = SimulatedToken("T0", bound_to=ENGINE, balances={ENGINE: Decimal("100000")})
        self.token1 = SimulatedToken("T1", bound_to=ENGINE, balances={ENGINE: Decimal("100000")})
        self.pool = SimulatedPool(self.clock, self.token0, self.token1, tick_spacing=10, initial_tick=150)
        self.manager = PositionManager(self.pool, self.token0, self.token1, ENGINE)

    def _deploy(self, amount0="100", amount1="100", half_width=5):
        return self.manager.open_or_increase(
            Decimal(amount0), Decimal(amount1), SLIPPAGE_BPS, half_width, now=self.clock.time(),
        )

    def test_top_up_increases_in_range_position(self):
        """Position [100, 200], tick 150: a second deployment increases it."""
        minted = self._deploy()
        assert minted.action == PositionAction.MINTED
        assert (minted.tick_lower, minted.tick_upper) == (100, 200)

        increased = self._deploy("50", "50")

        assert increased.action == PositionAction.INCREASED
        assert increased.position_id == minted.position_id
        assert len(self.manager.active_positions()) == 1
        assert self.manager.get(minted.position_id).liquidity == minted.liquidity_delta + increased.liquidity_delta

    def test_out_of_range_tick_mints_new_position(self):
        first = self._deploy()
        self.pool.set_tick(1000)

        second = self._deploy()

        assert second.action == PositionAction.MINTED
        assert second.position_id != first.position_id
        assert len(self.manager.active_positions()) == 2

    def test_upper_tick_is_exclusive(self):
        self._deploy()
        self.pool.set_tick(200)

        assert self.manager.best_position(200) is None
        assert self._deploy().action == PositionAction.MINTED

    def test_best_position_prefers_closest_midpoint(self):
        self.manager.restore([
            Position(position_id=1, tick_lower=0, tick_upper=400, liquidity=10),
            Position(position_id=2, tick_lower=120, tick_upper=200, liquidity=10),
        ])
        assert self.manager.best_position(150).position_id == 2

    def test_best_position_tie_goes_to_lowest_id(self):
        self.manager.restore([
            Position(position_id=7, tick_lower=100, tick_upper=200, liquidity=10),
            Position(position_id=3, tick_lower=100, tick_upper=200, liquidity=10),
        ])
        assert self.manager.best_position(150).position_id == 3

    def test_restore_skips_closed_positions(self):
        self.manager.restore([
            Position(position_id=1, tick_lower=100, tick_upper=200, liquidity=10, state=PositionState.CLOSED),
        ])
        assert self.manager.active_positions() == []

    def test_close_swaps_last_into_removed_slot(self):
        ids = []
        for tick in (150, 1000, 2000):
            self.pool.set_tick(tick)
            ids.append(self._deploy().position_id)

        closed = self.manager.close(ids[0])

        assert closed.action == PositionAction.CLOSED
        assert [p.position_id for p in self.manager.active_positions()] == [ids[2], ids[1]]
        assert self.manager.get(ids[0]) is None
        assert self.manager.get(ids[2]).position_id == ids[2]

    def test_close_returns_tokens_and_burns(self):
        minted = self._deploy()

        closed = self.manager.close(minted.position_id)

        assert closed.amount0 == Decimal("100")
        assert closed.amount1 == Decimal("100")
        assert self.token0.balance_of(ENGINE) == Decimal("100000")
        with pytest.raises(ValueError):
            self.pool.position_info(minted.position_id)

    def test_slippage_aborts_without_recording(self):
        self.pool.fill_ratio = Decimal("0.9")

        with pytest.raises(SlippageExceeded):
            self._deploy()

        assert self.manager.active_positions() == []

    def test_underfilled_mint_is_unwound(self):
        """Mint fills 90 of 100: the position is taken back and burned, allowances reset."""
        self.pool.fill_ratio = Decimal("0.9")

        with pytest.raises(SlippageExceeded):
            self._deploy()

        with pytest.raises(ValueError):
            self.pool.position_info(1)
        assert self.token0.allowance(ENGINE, self.pool.address) == Decimal("0")
        assert self.token1.allowance(ENGINE, self.pool.address) == Decimal("0")
        # 90 in, 81 back out at the same fill ratio
        assert self.token0.balance_of(ENGINE) == Decimal("99991")

    def test_underfilled_increase_is_unwound(self):
        minted = self._deploy()
        self.pool.fill_ratio = Decimal("0.9")

        with pytest.raises(SlippageExceeded):
            self._deploy("50", "50")

        position = self.manager.get(minted.position_id)
        assert position.liquidity == minted.liquidity_delta
        assert position.state == PositionState.ACTIVE
        assert position.collected0 == Decimal("0")
        assert self.pool.position_info(minted.position_id).liquidity == minted.liquidity_delta

    def test_pool_side_slippage_check_aborts(self):
        self.pool.fill_ratio = Decimal("0.9")
        self.pool.enforce_minimums = True

        with pytest.raises(SlippageExceeded):
            self._deploy()
        assert self.manager.active_positions() == []

    def test_slippage_within_tolerance(self):
        self.pool.fill_ratio = Decimal("0.996")

        change = self._deploy()

        assert change.amount0 == Decimal("99.6")

    def test_amm_failure_wrapped(self):
        self.pool.fail_next("mint")

        with pytest.raises(ExternalCallFailure) as exc_info:
            self._deploy()

        assert exc_info.value.reason == ReasonCode.EXTERNAL_CALL_FAILED
        assert self.manager.active_positions() == []

    def test_decrease_collects_and_marks_partial(self):
        minted = self._deploy()
        half = minted.liquidity_delta // 2

        change = self.manager.decrease(minted.position_id, half)

        position = self.manager.get(minted.position_id)
        assert change.action == PositionAction.DECREASED
        assert position.state == PositionState.PARTIALLY_DECREASED
        assert position.liquidity == minted.liquidity_delta - half
        assert change.amount0 == Decimal("50")
        assert position.collected0 == Decimal("50")

    def test_decrease_more_than_recorded(self):
        minted = self._deploy()

        with pytest.raises(ValidationError) as exc_info:
            self.manager.decrease(minted.position_id, minted.liquidity_delta + 1)

        assert exc_info.value.reason == ReasonCode.LIQUIDITY_EXCEEDS_POSITION
        assert self.manager.get(minted.position_id).liquidity == minted.liquidity_delta

    def test_unknown_position(self):
        with pytest.raises(ValidationError) as exc_info:
            self.manager.close(999)
        assert exc_info.value.reason == ReasonCode.UNKNOWN_POSITION

    def test_collect_sweeps_fees(self):
        minted = self._deploy()
        self.pool.accrue_fees(minted.position_id, Decimal("1.5"), Decimal("0.5"))

        change = self.manager.collect(minted.position_id)

        assert (change.amount0, change.amount1) == (Decimal("1.5"), Decimal("0.5"))
        assert self.manager.get(minted.position_id).liquidity == minted.liquidity_delta

    def test_rebalance_in_range_is_noop(self):
        minted = self._deploy()
        assert self.manager.rebalance(minted.position_id, SLIPPAGE_BPS, 5, now=0) is None

    def test_rebalance_recentres_out_of_range_position(self):
        minted = self._deploy()
        self.pool.set_tick(1000)

        closed, redeployed = self.manager.rebalance(minted.position_id, SLIPPAGE_BPS, 5, now=0)

        assert closed.action == PositionAction.CLOSED
        assert redeployed.action == PositionAction.MINTED
        assert (redeployed.tick_lower, redeployed.tick_upper) == (950, 1050)
        assert [p.position_id for p in self.manager.active_positions()] == [redeployed.position_id]

    def test_decrease_recorded_when_collect_fails(self):
        minted = self._deploy()
        half = minted.liquidity_delta // 2
        self.pool.fail_next("collect")

        with pytest.raises(ExternalCallFailure):
            self.manager.decrease(minted.position_id, half)

        position = self.manager.get(minted.position_id)
        assert position.liquidity == minted.liquidity_delta - half
        assert position.state == PositionState.PARTIALLY_DECREASED
        assert self.manager.collect(minted.position_id).amount0 == Decimal("50")

    def test_close_resumes_after_failed_collect(self):
        minted = self._deploy()
        self.pool.fail_next("collect")

        with pytest.raises(ExternalCallFailure):
            self.manager.close(minted.position_id)

        assert self.manager.get(minted.position_id).liquidity == 0
        assert self.pool.position_info(minted.position_id).liquidity == 0

        closed = self.manager.close(minted.position_id)

        assert closed.amount0 == Decimal("100")
        assert closed.liquidity_delta == 0
        assert self.manager.get(minted.position_id) is None
        assert self.token0.balance_of(ENGINE) == Decimal("100000")
