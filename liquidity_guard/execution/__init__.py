"""
Execution module.

Contains AMM position management.

ARCHITECTURE:
    LiquidityGuard (capability + emergency gates)
        │
        └── PositionManager (active set, swap-with-last removal)
                │
                └── AMMAdapter (mint / increase / decrease / collect / burn)
"""
from liquidity_guard.execution.position_manager import (
    PositionManager,
    compute_tick_range,
    min_out,
)

__all__ = [
    "PositionManager",
    "compute_tick_range",
    "min_out",
]
