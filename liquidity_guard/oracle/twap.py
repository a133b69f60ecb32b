"""
TWAP oracle adapter.

Turns tick-cumulative observations from the AMM pool into one
duration-weighted average price and compares the pool's spot price
against it. Only downside deviation is restricted: a spot price above
the TWAP always passes, so withdrawals are not blocked during rallies.

Failure handling:
    - a window whose observe() call fails is skipped (logged)
    - all windows fail, fresh cache      -> cached price
    - all windows fail, no cache ever    -> deviation check skipped (fail-open)
    - all windows fail, cache too old    -> OracleUnavailable
"""
import threading
from decimal import Decimal, localcontext
from typing import List, Optional, Tuple

from liquidity_guard.config.config import TWAPConfig
from liquidity_guard.constants import PCT_DENOMINATOR, PRICE_PRECISION
from liquidity_guard.domain.models import PriceCheck, PriceSource, TWAPCache, TWAPReading
from liquidity_guard.domain.protocols import AMMAdapter
from liquidity_guard.exceptions import OracleUnavailable, PriceDeviationError, ReasonCode
from liquidity_guard.monitoring.logger import get_logger
from liquidity_guard.oracle.tick_math import sqrt_price_x96_to_price, tick_to_price

logger = get_logger(__name__)


def average_tick(cumulative_past: int, cumulative_now: int, window: int) -> int:
    """Arithmetic-mean tick over `window` seconds, rounded toward negative infinity."""
    if window <= 0:
        raise ValueError(f"window must be positive, got {window}")
    return (cumulative_now - cumulative_past) // window


class TWAPOracleAdapter:
    """
    Multi-window TWAP with fail-safe caching.

    The adapter owns the TWAP cache; the pool is only read.
    """

    def __init__(self, pool: AMMAdapter):
        self.pool = pool
        self._cache: Optional[TWAPCache] = None
        self._lock = threading.Lock()

    # -- Cache --

    @property
    def cache(self) -> Optional[TWAPCache]:
        with self._lock:
            return self._cache

    def snapshot(self) -> Optional[TWAPCache]:
        """Read-only view of the last good TWAP."""
        return self.cache

    def restore_cache(self, cache: Optional[TWAPCache]) -> None:
        with self._lock:
            self._cache = cache

    # -- Observation --

    def _window_price(self, window: int) -> Decimal:
        cumulatives = self.pool.observe([window, 0])
        if len(cumulatives) != 2:
            raise ValueError(f"observe() returned {len(cumulatives)} values, expected 2")
        tick = average_tick(int(cumulatives[0]), int(cumulatives[1]), window)
        return tick_to_price(tick)

    def observe_windows(self, config: TWAPConfig) -> List[Tuple[int, Decimal]]:
        """Price per window for every window that could be observed."""
        prices = []
        for window in config.windows:
            try:
                prices.append((window, self._window_price(window)))
            except Exception as e:
                logger.warning(
                    "TWAP window observation failed, skipping",
                    window_seconds=window,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return prices

    def compute_twap(self, config: TWAPConfig, now: int) -> Optional[Decimal]:
        """
        Duration-weighted average of the per-window prices.

        Returns:
            The TWAP, or None when every window failed.
        """
        prices = self.observe_windows(config)
        if not prices:
            logger.warning("All TWAP windows failed", windows=list(config.windows))
            return None

        with localcontext() as ctx:
            ctx.prec = PRICE_PRECISION
            weighted = sum((price * window for window, price in prices), Decimal("0"))
            total_weight = sum(window for window, _ in prices)
            twap = weighted / Decimal(total_weight)

        with self._lock:
            self._cache = TWAPCache(price=twap, updated_at=now)
        return twap

    def resolve_twap(self, config: TWAPConfig, now: int) -> TWAPReading:
        """
        Price to validate against, with its provenance.

        Raises:
            OracleUnavailable: all windows failed and the cache is older than the TTL
        """
        twap = self.compute_twap(config, now)
        if twap is not None:
            return TWAPReading(price=twap, source=PriceSource.LIVE, as_of=now)

        cache = self.cache
        if cache is None:
            logger.warning("TWAP unavailable and no cached value, skipping deviation check")
            return TWAPReading(price=None, source=PriceSource.UNAVAILABLE_NO_CACHE)

        age = now - cache.updated_at
        if age < config.cache_ttl_seconds:
            logger.info("Using cached TWAP", cache_age_seconds=age, price=str(cache.price))
            return TWAPReading(price=cache.price, source=PriceSource.CACHE, as_of=cache.updated_at)

        raise OracleUnavailable(
            f"All TWAP windows failed and cached value is {age}s old (ttl {config.cache_ttl_seconds}s)",
            ReasonCode.ORACLE_UNAVAILABLE,
            {"cache_age_seconds": age, "cache_ttl_seconds": config.cache_ttl_seconds},
        )

    def spot_price(self) -> Decimal:
        return sqrt_price_x96_to_price(self.pool.slot0().sqrt_price_x96)

    def validate_price(self, config: TWAPConfig, now: int) -> PriceCheck:
        """
        Compare the pool's spot price against the TWAP.

        Passes when spot >= twap, or when twap - spot <= twap * max_deviation_pct / 100.

        Raises:
            PriceDeviationError: spot is too far below the TWAP
            OracleUnavailable: see resolve_twap
        """
        if not config.enabled:
            return PriceCheck(spot_price=None, twap_price=None, source=PriceSource.DISABLED, skipped=True)

        reading = self.resolve_twap(config, now)
        if reading.price is None:
            return PriceCheck(spot_price=None, twap_price=None, source=reading.source, skipped=True)

        spot = self.spot_price()
        twap = reading.price
        if spot >= twap:
            return PriceCheck(spot_price=spot, twap_price=twap, source=reading.source)

        with localcontext() as ctx:
            ctx.prec = PRICE_PRECISION
            allowed = twap * config.max_deviation_pct / PCT_DENOMINATOR
            deviation = twap - spot

        if deviation > allowed:
            logger.info(
                "Price deviation check failed",
                spot_price=str(spot),
                twap_price=str(twap),
                max_deviation_pct=str(config.max_deviation_pct),
                source=reading.source.value,
            )
            raise PriceDeviationError(
                f"Spot {spot} is below TWAP {twap} by more than {config.max_deviation_pct}%",
                ReasonCode.PRICE_DEVIATION,
                {"spot_price": str(spot), "twap_price": str(twap)},
            )

        return PriceCheck(spot_price=spot, twap_price=twap, source=reading.source)
