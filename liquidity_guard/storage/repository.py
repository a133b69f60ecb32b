"""
Persistence for guard state and the event audit trail.

Tables:
    accounts         one row per depositor record
    positions        active AMM positions (rewritten on every save)
    guard_settings   config sections plus accumulated and pending fees, JSON payloads
    twap_cache       single row, last good TWAP
    emergency_state  single row, both switches
    guard_events     append-only audit trail

Decimal amounts are stored as strings so they survive sqlite unchanged.
"""
import json
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, Column, Index, Integer, String

from liquidity_guard.config.config import GuardConfig, PositionConfig, TWAPConfig
from liquidity_guard.domain.models import AccountLiquidity, EmergencyState, Position, PositionState, TWAPCache
from liquidity_guard.domain.protocols import EventRecorder
from liquidity_guard.guard import GuardSnapshot
from liquidity_guard.monitoring.logger import get_logger
from liquidity_guard.storage.db import Base, Database

logger = get_logger(__name__)

_SINGLETON_ID = 1


class AccountModel(Base):
    """ORM model for per-account vesting and rate-limit state."""
    __tablename__ = "accounts"

    account = Column(String, primary_key=True)
    principal = Column(String, nullable=False)
    total_deposited = Column(String, nullable=False)
    total_withdrawn = Column(String, nullable=False)
    vesting_start = Column(Integer, nullable=True)
    daily_withdrawn = Column(String, nullable=False)
    daily_window_start = Column(Integer, nullable=False)
    daily_window_base = Column(String, nullable=False, default="0")
    weekly_withdrawn = Column(String, nullable=False)
    weekly_window_start = Column(Integer, nullable=False)
    weekly_window_base = Column(String, nullable=False, default="0")
    last_withdrawal_time = Column(Integer, nullable=True)
    whitelisted = Column(Boolean, nullable=False, default=False)


class PositionModel(Base):
    """ORM model for active AMM positions."""
    __tablename__ = "positions"

    position_id = Column(Integer, primary_key=True, autoincrement=False)
    tick_lower = Column(Integer, nullable=False)
    tick_upper = Column(Integer, nullable=False)
    liquidity = Column(String, nullable=False)  # may exceed 64-bit
    state = Column(String, nullable=False)
    opened_at = Column(Integer, nullable=False)
    collected0 = Column(String, nullable=False)
    collected1 = Column(String, nullable=False)


class GuardSettingsModel(Base):
    __tablename__ = "guard_settings"

    key = Column(String, primary_key=True)
    payload = Column(String, nullable=False)  # JSON string
    updated_at = Column(Integer, nullable=False)


class TWAPCacheModel(Base):
    __tablename__ = "twap_cache"

    id = Column(Integer, primary_key=True, autoincrement=False)
    price = Column(String, nullable=False)
    updated_at = Column(Integer, nullable=False)


class EmergencyStateModel(Base):
    __tablename__ = "emergency_state"

    id = Column(Integer, primary_key=True, autoincrement=False)
    emergency_mode = Column(Boolean, nullable=False, default=False)
    emergency_reason = Column(String, nullable=True)
    emergency_changed_at = Column(Integer, nullable=True)
    circuit_breaker_triggered = Column(Boolean, nullable=False, default=False)
    circuit_breaker_reason = Column(String, nullable=True)
    circuit_breaker_changed_at = Column(Integer, nullable=True)


class GuardEventModel(Base):
    """ORM model for the audit trail."""
    __tablename__ = "guard_events"
    __table_args__ = (
        Index("idx_guard_event_type_time", "event_type", "timestamp"),
        Index("idx_guard_event_subject", "subject", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(Integer, nullable=False)
    event_type = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    details = Column(String, nullable=False)  # JSON string


def _json_default(obj):
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _dumps(payload: Any) -> str:
    return json.dumps(payload, default=_json_default, sort_keys=True)


# ============ STATE ============

class StateRepository:
    """Saves and loads a GuardSnapshot."""

    def __init__(self, db: Database):
        self.db = db

    def save_state(self, snapshot: GuardSnapshot, now: Optional[int] = None) -> None:
        now = int(time.time()) if now is None else now
        with self.db.get_session() as session:
            for record in snapshot.accounts:
                session.merge(AccountModel(
                    account=record.account,
                    principal=str(record.principal),
                    total_deposited=str(record.total_deposited),
                    total_withdrawn=str(record.total_withdrawn),
                    vesting_start=record.vesting_start,
                    daily_withdrawn=str(record.daily_withdrawn),
                    daily_window_start=record.daily_window_start,
                    daily_window_base=str(record.daily_window_base),
                    weekly_withdrawn=str(record.weekly_withdrawn),
                    weekly_window_start=record.weekly_window_start,
                    weekly_window_base=str(record.weekly_window_base),
                    last_withdrawal_time=record.last_withdrawal_time,
                    whitelisted=record.whitelisted,
                ))

            session.query(PositionModel).delete()
            for position in snapshot.positions:
                session.add(PositionModel(
                    position_id=position.position_id,
                    tick_lower=position.tick_lower,
                    tick_upper=position.tick_upper,
                    liquidity=str(position.liquidity),
                    state=position.state.value,
                    opened_at=position.opened_at,
                    collected0=str(position.collected0),
                    collected1=str(position.collected1),
                ))

            settings = {
                "guard": snapshot.guard_config.model_dump(mode="json"),
                "twap": snapshot.twap_config.model_dump(mode="json"),
                "positions": snapshot.position_config.model_dump(mode="json"),
                "accumulated_fees": str(snapshot.accumulated_fees),
                "pending_fees": str(snapshot.pending_fees),
            }
            for key, payload in settings.items():
                session.merge(GuardSettingsModel(key=key, payload=_dumps(payload), updated_at=now))

            if snapshot.twap_cache is None:
                session.query(TWAPCacheModel).delete()
            else:
                session.merge(TWAPCacheModel(
                    id=_SINGLETON_ID,
                    price=str(snapshot.twap_cache.price),
                    updated_at=snapshot.twap_cache.updated_at,
                ))

            session.merge(EmergencyStateModel(id=_SINGLETON_ID, **snapshot.emergency.to_dict()))

        logger.info(
            "Guard state saved",
            accounts=len(snapshot.accounts),
            positions=len(snapshot.positions),
        )

    def load_state(self) -> Optional[GuardSnapshot]:
        """Last saved snapshot, or None if nothing was ever saved."""
        with self.db.get_session() as session:
            settings = {row.key: json.loads(row.payload) for row in session.query(GuardSettingsModel).all()}
            if "guard" not in settings:
                return None

            accounts = [
                AccountLiquidity(
                    account=row.account,
                    principal=Decimal(row.principal),
                    total_deposited=Decimal(row.total_deposited),
                    total_withdrawn=Decimal(row.total_withdrawn),
                    vesting_start=row.vesting_start,
                    daily_withdrawn=Decimal(row.daily_withdrawn),
                    daily_window_start=row.daily_window_start,
                    daily_window_base=Decimal(row.daily_window_base),
                    weekly_withdrawn=Decimal(row.weekly_withdrawn),
                    weekly_window_start=row.weekly_window_start,
                    weekly_window_base=Decimal(row.weekly_window_base),
                    last_withdrawal_time=row.last_withdrawal_time,
                    whitelisted=bool(row.whitelisted),
                )
                for row in session.query(AccountModel).order_by(AccountModel.account).all()
            ]

            positions = [
                Position(
                    position_id=row.position_id,
                    tick_lower=row.tick_lower,
                    tick_upper=row.tick_upper,
                    liquidity=int(row.liquidity),
                    state=PositionState(row.state),
                    opened_at=row.opened_at,
                    collected0=Decimal(row.collected0),
                    collected1=Decimal(row.collected1),
                )
                for row in session.query(PositionModel).order_by(PositionModel.position_id).all()
            ]

            cache_row = session.get(TWAPCacheModel, _SINGLETON_ID)
            twap_cache = TWAPCache(Decimal(cache_row.price), cache_row.updated_at) if cache_row else None

            emergency_row = session.get(EmergencyStateModel, _SINGLETON_ID)
            emergency = EmergencyState()
            if emergency_row is not None:
                emergency = EmergencyState(
                    emergency_mode=bool(emergency_row.emergency_mode),
                    emergency_reason=emergency_row.emergency_reason,
                    emergency_changed_at=emergency_row.emergency_changed_at,
                    circuit_breaker_triggered=bool(emergency_row.circuit_breaker_triggered),
                    circuit_breaker_reason=emergency_row.circuit_breaker_reason,
                    circuit_breaker_changed_at=emergency_row.circuit_breaker_changed_at,
                )

        return GuardSnapshot(
            guard_config=GuardConfig.model_validate(settings["guard"]),
            twap_config=TWAPConfig.model_validate(settings.get("twap", {})),
            position_config=PositionConfig.model_validate(settings.get("positions", {})),
            accounts=accounts,
            positions=positions,
            twap_cache=twap_cache,
            emergency=emergency,
            accumulated_fees=Decimal(settings.get("accumulated_fees", "0")),
            pending_fees=Decimal(settings.get("pending_fees", "0")),
        )


# ============ EVENTS ============

def record_event(
    db: Database,
    event_type: str,
    subject: str,
    details: Dict[str, Any],
    timestamp: Optional[int] = None,
) -> None:
    """
    Record an engine event for the audit trail.

    Args:
        event_type: EventType value (e.g. WITHDRAWAL_COMPLETED)
        subject: Account or position id the event is about
        details: Dictionary of details (will be JSON serialized)
        timestamp: Unix seconds; defaults to now
    """
    if timestamp is None:
        timestamp = int(time.time())

    with db.get_session() as session:
        session.add(GuardEventModel(
            timestamp=timestamp,
            event_type=event_type,
            subject=subject,
            details=_dumps(details),
        ))


def make_event_recorder(db: Database) -> EventRecorder:
    """EventRecorder bound to `db`, for LiquidityGuard(event_recorder=...)."""

    def recorder(
        event_type: str,
        subject: str,
        details: Dict[str, Any],
        timestamp: Optional[int] = None,
    ) -> None:
        record_event(db, event_type, subject, details, timestamp)

    return recorder


def get_recent_events(
    db: Database,
    limit: int = 50,
    event_type: Optional[str] = None,
    subject: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Most recent events first."""
    with db.get_session() as session:
        query = session.query(GuardEventModel)

        if event_type:
            query = query.filter(GuardEventModel.event_type == event_type)

        if subject:
            query = query.filter(GuardEventModel.subject == subject)

        events = query.order_by(GuardEventModel.timestamp.desc(), GuardEventModel.id.desc()).limit(limit).all()

        return [
            {
                "id": e.id,
                "timestamp": e.timestamp,
                "type": e.event_type,
                "subject": e.subject,
                "details": json.loads(e.details),
            }
            for e in events
        ]
