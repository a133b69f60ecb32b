"""
Emergency switches: emergency mode and circuit breaker.

Both switches are latched: once set they stay set until the emergency
role clears them explicitly. Nothing here resets on its own.

    emergency_mode            blocks deposits, withdrawals, injection,
                              reinvestment and operator position maintenance;
                              enables emergency_withdraw_position
    circuit_breaker_triggered blocks deposits, injection and reinvestment;
                              withdrawals stay open
"""
import threading
from typing import Optional

from liquidity_guard.domain.models import EmergencyState
from liquidity_guard.exceptions import OperationHaltedError, ReasonCode
from liquidity_guard.monitoring.logger import get_logger

logger = get_logger(__name__)


class EmergencyControls:
    def __init__(self, state: Optional[EmergencyState] = None):
        self._state = state.copy() if state else EmergencyState()
        self._lock = threading.Lock()

    @property
    def emergency_mode(self) -> bool:
        with self._lock:
            return self._state.emergency_mode

    @property
    def circuit_breaker_triggered(self) -> bool:
        with self._lock:
            return self._state.circuit_breaker_triggered

    def snapshot(self) -> EmergencyState:
        with self._lock:
            return self._state.copy()

    def restore(self, state: EmergencyState) -> None:
        with self._lock:
            self._state = state.copy()

    def set_emergency_mode(self, enabled: bool, now: int, reason: Optional[str] = None) -> bool:
        """
        Set or clear emergency mode.

        Returns:
            True if the switch changed state
        """
        with self._lock:
            if self._state.emergency_mode == enabled:
                return False
            self._state.emergency_mode = enabled
            self._state.emergency_reason = reason if enabled else None
            self._state.emergency_changed_at = now

        if enabled:
            logger.critical("EMERGENCY MODE ENABLED", reason=reason, timestamp=now)
        else:
            logger.critical("Emergency mode cleared", timestamp=now)
        return True

    def set_circuit_breaker(self, triggered: bool, now: int, reason: Optional[str] = None) -> bool:
        with self._lock:
            if self._state.circuit_breaker_triggered == triggered:
                return False
            self._state.circuit_breaker_triggered = triggered
            self._state.circuit_breaker_reason = reason if triggered else None
            self._state.circuit_breaker_changed_at = now

        if triggered:
            logger.critical("CIRCUIT BREAKER TRIGGERED", reason=reason, timestamp=now)
        else:
            logger.critical("Circuit breaker reset", timestamp=now)
        return True

    # -- Gates --

    def require_not_emergency(self, operation: str) -> None:
        if self.emergency_mode:
            raise OperationHaltedError(
                f"{operation} blocked: emergency mode is active",
                ReasonCode.EMERGENCY_MODE,
                {"operation": operation},
            )

    def require_operational(self, operation: str) -> None:
        """Both switches clear."""
        self.require_not_emergency(operation)
        if self.circuit_breaker_triggered:
            raise OperationHaltedError(
                f"{operation} blocked: circuit breaker is triggered",
                ReasonCode.CIRCUIT_BREAKER,
                {"operation": operation},
            )

    def require_emergency(self, operation: str) -> None:
        if not self.emergency_mode:
            raise OperationHaltedError(
                f"{operation} is only available in emergency mode",
                ReasonCode.EMERGENCY_MODE_REQUIRED,
                {"operation": operation},
            )

    def get_status(self) -> dict:
        state = self.snapshot()
        return {
            "emergency_mode": state.emergency_mode,
            "emergency_reason": state.emergency_reason,
            "emergency_changed_at": state.emergency_changed_at,
            "circuit_breaker_triggered": state.circuit_breaker_triggered,
            "circuit_breaker_reason": state.circuit_breaker_reason,
            "circuit_breaker_changed_at": state.circuit_breaker_changed_at,
        }
