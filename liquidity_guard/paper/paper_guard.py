"""
Paper environment: a LiquidityGuard wired to simulated collaborators.

Usage:
    env = build_paper_environment(config)
    env.fund("alice", Decimal("1000"))
    env.guard.deposit("alice", Decimal("1000"))
    env.clock.advance(weeks=3)
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from liquidity_guard.config.config import Config
from liquidity_guard.domain.protocols import EventRecorder
from liquidity_guard.guard import LiquidityGuard
from liquidity_guard.paper.amm_sim import SimulatedPool, SimulatedToken, SimulatedTreasury
from liquidity_guard.safety.access import AccessController, Role
from liquidity_guard.utils.clock import SimClock

PAPER_ADMIN = "paper-admin"


@dataclass
class PaperEnvironment:
    clock: SimClock
    token: SimulatedToken
    paired_token: SimulatedToken
    pool: SimulatedPool
    treasury: SimulatedTreasury
    access: AccessController
    guard: LiquidityGuard

    def fund(self, holder: str, amount: Decimal) -> None:
        self.token.mint(holder, amount)


def build_paper_environment(
    config: Config,
    start: int = 0,
    initial_tick: int = 0,
    tick_spacing: int = 10,
    treasury_balance: Decimal = Decimal("1000000"),
    admin: str = PAPER_ADMIN,
    event_recorder: Optional[EventRecorder] = None,
) -> PaperEnvironment:
    """Fresh guard over simulated pool / tokens / treasury; `admin` holds every role."""
    clock = SimClock(start=start)
    engine = config.engine_address

    token = SimulatedToken("GUARD", bound_to=engine)
    paired_token = SimulatedToken("PAIR", bound_to=engine)
    pool = SimulatedPool(clock, token, paired_token, tick_spacing=tick_spacing, initial_tick=initial_tick)
    treasury = SimulatedTreasury(paired_token, engine_address=engine, pool=pool)
    paired_token.mint(treasury.address, treasury_balance)

    access = AccessController({role: [admin] for role in Role})
    guard = LiquidityGuard(
        config,
        amm=pool,
        token=token,
        paired_token=paired_token,
        treasury=treasury,
        access=access,
        clock=clock,
        event_recorder=event_recorder,
        address=engine,
    )
    return PaperEnvironment(clock, token, paired_token, pool, treasury, access, guard)
