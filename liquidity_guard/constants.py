"""
Engine-wide constants.

Centralizes magic numbers used across modules.
"""
from decimal import Decimal

# Time
SECONDS_PER_DAY = 86_400
SECONDS_PER_WEEK = 7 * SECONDS_PER_DAY
MAX_TWAP_WINDOW_SECONDS = SECONDS_PER_WEEK

# Percent / basis-point denominators
PCT_DENOMINATOR = Decimal("100")
BPS_DENOMINATOR = Decimal("10000")
MAX_PCT = Decimal("100")
MAX_SLIPPAGE_BPS = 10_000

# Concentrated-liquidity tick bounds (price = 1.0001 ** tick)
MIN_TICK = -887_272
MAX_TICK = 887_272

# Q-format fixed point
Q192 = 2 ** 192
MAX_UINT256 = 2 ** 256 - 1

# Precision used when turning fixed-point ratios into Decimal prices
PRICE_PRECISION = 60

ZERO = Decimal("0")
