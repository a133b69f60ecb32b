"""
Liquidity protection engine for an AMM-backed pool.

Entry point: liquidity_guard.guard.LiquidityGuard
"""
__version__ = "0.1.0"
