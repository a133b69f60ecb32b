"""
Test: TWAP oracle adapter (weighting, window failures, cache fallback, deviation).
"""
from decimal import Decimal, localcontext

import pytest

from liquidity_guard.config.config import TWAPConfig
from liquidity_guard.constants import PRICE_PRECISION
from liquidity_guard.domain.models import PriceSource
from liquidity_guard.exceptions import OracleUnavailable, PriceDeviationError, ReasonCode
from liquidity_guard.oracle.tick_math import tick_to_price
from liquidity_guard.oracle.twap import TWAPOracleAdapter, average_tick
from liquidity_guard.paper.amm_sim import SimulatedPool, SimulatedToken
from liquidity_guard.utils.clock import SimClock

EPSILON = Decimal("1e-30")


def weighted(*pairs):
    with localcontext() as ctx:
        ctx.prec = PRICE_PRECISION
        total = sum((price * window for window, price in pairs), Decimal("0"))
        return total / Decimal(sum(window for window, _ in pairs))


class TestAverageTick:
    def test_rounds_toward_negative_infinity(self):
        assert average_tick(0, 15, 10) == 1
        assert average_tick(0, -15, 10) == -2
        assert average_tick(0, -20, 10) == -2

    def test_rejects_non_positive_window(self):
        with pytest.raises(ValueError):
            average_tick(0, 10, 0)


class TestTWAPOracleAdapter:
    def setup_method(self):
        self.clock = SimClock(start=0)
        t0 = SimulatedToken("T0", bound_to="engine")
        t1 = SimulatedToken("T1", bound_to="engine")
        self.pool = SimulatedPool(self.clock, t0, t1, initial_tick=100)
        self.oracle = TWAPOracleAdapter(self.pool)
        # tick 100 for 100s, then tick 200 for 100s
        self.clock.advance(seconds=100)
        self.pool.set_tick(200)
        self.clock.advance(seconds=100)
        self.config = TWAPConfig(windows=[100, 200], max_deviation_pct=Decimal("5"), cache_ttl_seconds=3600)

    def test_duration_weighted_average(self):
        """Each window's price is weighted by its length."""
        twap = self.oracle.compute_twap(self.config, now=self.clock.time())

        expected = weighted((100, tick_to_price(200)), (200, tick_to_price(150)))
        assert abs(twap - expected) < EPSILON

    def test_failing_window_is_skipped(self):
        self.pool.fail_windows(100)

        twap = self.oracle.compute_twap(self.config, now=self.clock.time())

        assert abs(twap - tick_to_price(150)) < EPSILON

    def test_window_older_than_history_is_skipped(self):
        config = TWAPConfig(windows=[100, 1000])

        twap = self.oracle.compute_twap(config, now=self.clock.time())

        assert abs(twap - tick_to_price(200)) < EPSILON

    def test_all_windows_failing_returns_none(self):
        self.pool.fail_all_observations()
        assert self.oracle.compute_twap(self.config, now=self.clock.time()) is None

    def test_successful_compute_refreshes_cache(self):
        twap = self.oracle.compute_twap(self.config, now=self.clock.time())

        cache = self.oracle.snapshot()
        assert cache.price == twap
        assert cache.updated_at == self.clock.time()

    def test_fresh_cache_used_when_all_windows_fail(self):
        twap = self.oracle.compute_twap(self.config, now=self.clock.time())
        self.pool.fail_all_observations()
        self.clock.advance(seconds=3599)

        reading = self.oracle.resolve_twap(self.config, now=self.clock.time())

        assert reading.source == PriceSource.CACHE
        assert reading.price == twap

    def test_stale_cache_raises(self):
        self.oracle.compute_twap(self.config, now=self.clock.time())
        self.pool.fail_all_observations()
        self.clock.advance(seconds=3600)

        with pytest.raises(OracleUnavailable) as exc_info:
            self.oracle.resolve_twap(self.config, now=self.clock.time())
        assert exc_info.value.reason == ReasonCode.ORACLE_UNAVAILABLE

    def test_no_cache_ever_fails_open(self):
        """Validation is skipped when no TWAP has ever been computed."""
        self.pool.fail_all_observations()

        check = self.oracle.validate_price(self.config, now=self.clock.time())

        assert check.skipped is True
        assert check.source == PriceSource.UNAVAILABLE_NO_CACHE
        assert self.oracle.snapshot() is None

    def test_disabled_validation_is_skipped(self):
        config = TWAPConfig(enabled=False, windows=[])

        check = self.oracle.validate_price(config, now=self.clock.time())

        assert check.skipped is True
        assert check.source == PriceSource.DISABLED


class TestPriceDeviation:
    def setup_method(self):
        self.clock = SimClock(start=0)
        t0 = SimulatedToken("T0", bound_to="engine")
        t1 = SimulatedToken("T1", bound_to="engine")
        self.pool = SimulatedPool(self.clock, t0, t1, initial_tick=0)
        self.oracle = TWAPOracleAdapter(self.pool)
        self.config = TWAPConfig(windows=[1800], max_deviation_pct=Decimal("5"))
        self.clock.advance(seconds=3600)

    def test_sharp_drop_is_rejected(self):
        """Spot ~9.5% below a ~1.0 TWAP exceeds 5%."""
        self.pool.set_tick(-1000)
        self.clock.advance(seconds=1)

        with pytest.raises(PriceDeviationError) as exc_info:
            self.oracle.validate_price(self.config, now=self.clock.time())
        assert exc_info.value.reason == ReasonCode.PRICE_DEVIATION

    def test_small_drop_passes(self):
        """Spot ~3% below the TWAP is within tolerance."""
        self.pool.set_tick(-300)
        self.clock.advance(seconds=1)

        check = self.oracle.validate_price(self.config, now=self.clock.time())

        assert check.skipped is False
        assert check.source == PriceSource.LIVE
        assert check.spot_price < check.twap_price

    def test_rally_always_passes(self):
        """Upside deviation is never restricted."""
        self.pool.set_tick(5000)
        self.clock.advance(seconds=1)

        check = self.oracle.validate_price(self.config, now=self.clock.time())

        assert check.spot_price > check.twap_price

    def test_drop_checked_against_cached_twap(self):
        self.oracle.compute_twap(self.config, now=self.clock.time())
        self.pool.set_tick(-1000)
        self.pool.fail_all_observations()
        self.clock.advance(seconds=60)

        with pytest.raises(PriceDeviationError):
            self.oracle.validate_price(self.config, now=self.clock.time())
