"""
Fixed-point tick math for concentrated-liquidity pools.

price = 1.0001 ** tick. The square root of the price is computed in
Q128 with a binary-exponentiation ladder: each set bit of |tick|
multiplies in a precomputed 2**128 / sqrt(1.0001) ** (2 ** i). The
ladder always produces the ratio for -|tick|; positive ticks take the
reciprocal, so both signs share one code path and stay symmetric.
The result is rounded up into Q96, matching the AMM's own TickMath.
"""
from decimal import Decimal, localcontext

from liquidity_guard.constants import MAX_TICK, MAX_UINT256, MIN_TICK, PRICE_PRECISION, Q192

_Q128_ONE = 0x100000000000000000000000000000000

# (bit, 2**128 / sqrt(1.0001) ** bit) for bits 2 .. 2**19
_SQRT_RATIO_LADDER = (
    (0x2, 0xfff97272373d413259a46990580e213a),
    (0x4, 0xfff2e50f5f656932ef12357cf3c7fdcc),
    (0x8, 0xffe5caca7e10e4e61c3624eaa0941cd0),
    (0x10, 0xffcb9843d60f6159c9db58835c926644),
    (0x20, 0xff973b41fa98c081472e6896dfb254c0),
    (0x40, 0xff2ea16466c96a3843ec78b326b52861),
    (0x80, 0xfe5dee046a99a2a811c461f1969c3053),
    (0x100, 0xfcbe86c7900a88aedcffc83b479aa3a4),
    (0x200, 0xf987a7253ac413176f2b074cf7815e54),
    (0x400, 0xf3392b0822b70005940c7a398e4b70f3),
    (0x800, 0xe7159475a2c29b7443b29c7fa6e889d9),
    (0x1000, 0xd097f3bdfd2022b8845ad8f792aa5825),
    (0x2000, 0xa9f746462d870fdf8a65dc1f90e061e5),
    (0x4000, 0x70d869a156d2a1b890bb3df62baf32f7),
    (0x8000, 0x31be135f97d08fd981231505542fcfa6),
    (0x10000, 0x9aa508b5b7a84e1c677de54f3e99bc9),
    (0x20000, 0x5d6af8dedb81196699c329225ee604),
    (0x40000, 0x2216e584f5fa1ea926041bedfe98),
    (0x80000, 0x48a170391f7dc42444e8fa2),
)
_SQRT_RATIO_BIT0 = 0xfffcb933bd6fad37aa2d162d1a594001


def get_sqrt_ratio_at_tick(tick: int) -> int:
    """
    Return sqrt(1.0001 ** tick) as a Q64.96 integer.

    Raises:
        ValueError: tick outside [MIN_TICK, MAX_TICK]
    """
    if tick < MIN_TICK or tick > MAX_TICK:
        raise ValueError(f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]")

    abs_tick = abs(tick)
    ratio = _SQRT_RATIO_BIT0 if abs_tick & 0x1 else _Q128_ONE
    for bit, magic in _SQRT_RATIO_LADDER:
        if abs_tick & bit:
            ratio = (ratio * magic) >> 128

    if tick > 0:
        ratio = MAX_UINT256 // ratio

    # Q128 -> Q96, rounding up
    return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)


def sqrt_price_x96_to_price(sqrt_price_x96: int) -> Decimal:
    """Convert a Q64.96 square-root price into a Decimal price (token1 per token0)."""
    if sqrt_price_x96 <= 0:
        raise ValueError(f"sqrt_price_x96 must be positive, got {sqrt_price_x96}")
    with localcontext() as ctx:
        ctx.prec = PRICE_PRECISION
        return (Decimal(sqrt_price_x96) * Decimal(sqrt_price_x96)) / Decimal(Q192)


def tick_to_price(tick: int) -> Decimal:
    """Price at a tick, via the fixed-point ladder."""
    return sqrt_price_x96_to_price(get_sqrt_ratio_at_tick(tick))


def floor_to_spacing(tick: int, tick_spacing: int) -> int:
    """Round a tick down (toward negative infinity) to a multiple of tick_spacing."""
    if tick_spacing <= 0:
        raise ValueError(f"tick_spacing must be positive, got {tick_spacing}")
    return (tick // tick_spacing) * tick_spacing


def usable_tick_bounds(tick_spacing: int) -> tuple[int, int]:
    """Lowest and highest spacing multiples inside [MIN_TICK, MAX_TICK]."""
    lower = -((-MIN_TICK) // tick_spacing) * tick_spacing
    upper = (MAX_TICK // tick_spacing) * tick_spacing
    return lower, upper
