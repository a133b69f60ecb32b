"""
Test: SQLAlchemy persistence of guard state and the event trail (sqlite under tmp_path).
"""
from decimal import Decimal

import pytest

from liquidity_guard.config.config import GuardConfig, PositionConfig, TWAPConfig
from liquidity_guard.domain.models import AccountLiquidity, EmergencyState, Position, PositionState, TWAPCache
from liquidity_guard.guard import GuardSnapshot
from liquidity_guard.storage.db import Database
from liquidity_guard.storage.repository import (
    StateRepository,
    get_recent_events,
    make_event_recorder,
    record_event,
)


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'guard.db'}")
    database.create_all()
    return database


def make_snapshot():
    return GuardSnapshot(
        guard_config=GuardConfig(daily_limit_pct=Decimal("7.5"), fee_sink="sink"),
        twap_config=TWAPConfig(windows=[600, 1200], max_deviation_pct=Decimal("2.5")),
        position_config=PositionConfig(tick_half_width=4),
        accounts=[
            AccountLiquidity(
                account="alice",
                principal=Decimal("700.123456789012345678"),
                total_deposited=Decimal("1000"),
                total_withdrawn=Decimal("299.876543210987654322"),
                vesting_start=10,
                daily_withdrawn=Decimal("12.5"),
                daily_window_start=100,
                daily_window_base=Decimal("712.625"),
                weekly_withdrawn=Decimal("40"),
                weekly_window_start=50,
                weekly_window_base=Decimal("1000"),
                last_withdrawal_time=120,
            ),
            AccountLiquidity(account="bob", whitelisted=True),
        ],
        positions=[
            Position(position_id=4, tick_lower=-100, tick_upper=100, liquidity=2**80,
                     state=PositionState.PARTIALLY_DECREASED, opened_at=5, collected0=Decimal("1.25")),
            Position(position_id=9, tick_lower=900, tick_upper=1100, liquidity=12345, opened_at=6),
        ],
        twap_cache=TWAPCache(price=Decimal("1.000100000000000000000000000001"), updated_at=77),
        emergency=EmergencyState(circuit_breaker_triggered=True, circuit_breaker_reason="drill",
                                 circuit_breaker_changed_at=80),
        accumulated_fees=Decimal("3.14"),
        pending_fees=Decimal("0.5"),
    )


class TestStateRepository:
    def test_nothing_saved_yet(self, db):
        assert StateRepository(db).load_state() is None

    def test_save_and_load_roundtrip(self, db):
        snapshot = make_snapshot()
        repo = StateRepository(db)

        repo.save_state(snapshot, now=1000)
        loaded = repo.load_state()

        assert loaded.guard_config == snapshot.guard_config
        assert loaded.twap_config == snapshot.twap_config
        assert loaded.position_config == snapshot.position_config
        assert sorted(loaded.accounts, key=lambda r: r.account) == snapshot.accounts
        assert loaded.positions == snapshot.positions
        assert loaded.twap_cache == snapshot.twap_cache
        assert loaded.emergency == snapshot.emergency
        assert loaded.accumulated_fees == Decimal("3.14")
        assert loaded.pending_fees == Decimal("0.5")

    def test_closed_positions_dropped_on_resave(self, db):
        snapshot = make_snapshot()
        repo = StateRepository(db)
        repo.save_state(snapshot, now=1000)

        snapshot.positions = snapshot.positions[1:]
        snapshot.twap_cache = None
        repo.save_state(snapshot, now=2000)
        loaded = repo.load_state()

        assert [p.position_id for p in loaded.positions] == [9]
        assert loaded.twap_cache is None


class TestEventTrail:
    def test_recorder_persists_events(self, db):
        recorder = make_event_recorder(db)

        recorder("DEPOSIT", "alice", {"amount": Decimal("10")}, 100)
        recorder("WITHDRAWAL_COMPLETED", "alice", {"amount": "5", "fee": "0.1"}, 200)
        record_event(db, "DEPOSIT", "bob", {"amount": "1"}, 150)

        events = get_recent_events(db)
        assert [e["timestamp"] for e in events] == [200, 150, 100]
        assert events[2]["details"] == {"amount": "10"}

    def test_filters(self, db):
        recorder = make_event_recorder(db)
        recorder("DEPOSIT", "alice", {}, 1)
        recorder("DEPOSIT", "bob", {}, 2)
        recorder("EMERGENCY_MODE_CHANGED", "responder", {"enabled": True}, 3)

        assert len(get_recent_events(db, event_type="DEPOSIT")) == 2
        assert [e["subject"] for e in get_recent_events(db, subject="bob")] == ["bob"]
        assert len(get_recent_events(db, limit=1)) == 1
