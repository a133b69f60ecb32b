"""
Pytest configuration and shared fixtures.

Every fixture is in-memory: simulated pool, tokens and treasury driven
by a SimClock. Storage tests use a sqlite file under tmp_path.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from liquidity_guard.config.config import Config, GuardConfig, TWAPConfig
from liquidity_guard.guard import LiquidityGuard
from liquidity_guard.paper.amm_sim import SimulatedPool, SimulatedToken, SimulatedTreasury
from liquidity_guard.safety.access import AccessController, Role
from liquidity_guard.utils.clock import SimClock

ENGINE = "engine"
GOVERNOR = "governor"
OPERATOR = "operator"
RESPONDER = "responder"
START = 1_000_000


class RecordingEventSink:
    """In-memory EventRecorder."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def __call__(self, event_type: str, subject: str, details: Dict[str, Any], timestamp: Optional[int] = None):
        self.events.append({"type": event_type, "subject": subject, "details": details, "timestamp": timestamp})

    def types(self) -> List[str]:
        return [e["type"] for e in self.events]


@pytest.fixture
def clock():
    return SimClock(start=START)


@pytest.fixture
def token():
    return SimulatedToken("GUARD", bound_to=ENGINE)


@pytest.fixture
def paired_token():
    t = SimulatedToken("PAIR", bound_to=ENGINE)
    t.mint("treasury", Decimal("1000000"))
    return t


@pytest.fixture
def pool(clock, token, paired_token):
    return SimulatedPool(clock, token, paired_token, tick_spacing=10, initial_tick=0)


@pytest.fixture
def treasury(paired_token):
    return SimulatedTreasury(paired_token, engine_address=ENGINE)


@pytest.fixture
def access():
    return AccessController({
        Role.GOVERNANCE: [GOVERNOR],
        Role.OPERATOR: [OPERATOR],
        Role.EMERGENCY: [RESPONDER],
    })


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def config():
    """Loose defaults so tests opt into the policy they exercise."""
    return Config(
        environment="test",
        engine_address=ENGINE,
        guard=GuardConfig(
            daily_limit_pct=Decimal("100"),
            weekly_limit_pct=Decimal("100"),
            vesting_unlock_pct_per_week=Decimal("10"),
            removal_cooldown_seconds=0,
        ),
        twap=TWAPConfig(windows=[1800, 3600], max_deviation_pct=Decimal("5"), cache_ttl_seconds=3600),
    )


@pytest.fixture
def guard(config, pool, token, paired_token, treasury, access, clock, events):
    return LiquidityGuard(
        config,
        amm=pool,
        token=token,
        paired_token=paired_token,
        treasury=treasury,
        access=access,
        clock=clock,
        event_recorder=events,
        address=ENGINE,
    )


@pytest.fixture
def funded(guard, token):
    """Helper: mint to a user and deposit through the guard."""

    def _deposit(account: str, amount: Decimal):
        token.mint(account, amount)
        return guard.deposit(account, amount)

    return _deposit
