"""
Custom exception hierarchy for the liquidity protection engine.

Every error carries a ReasonCode so callers can branch on a specific
cause without parsing messages.

Hierarchy:

    LiquidityGuardError (base)
    ├── PolicyViolation       : protective policy rejected the request
    │   ├── PriceDeviationError  : spot below TWAP by more than allowed
    │   └── OperationHaltedError : emergency mode / circuit breaker
    ├── OracleUnavailable     : every TWAP window failed, cache stale
    ├── SlippageExceeded      : AMM returned worse terms than the minimum
    ├── ExternalCallFailure   : AMM / token ledger / treasury call failed
    ├── Unauthorized          : capability check failed
    ├── ValidationError       : malformed input (amounts, config, ids)
    └── InvariantError        : safety violation, never caught and continued
        └── ReentrantCallError

Rules:
    - PolicyViolation: caller may retry later or with a smaller amount.
      Never retried automatically.
    - OracleUnavailable / SlippageExceeded / ExternalCallFailure: the
      operation aborted as a whole; engine state is unchanged.
    - Unauthorized / ValidationError: never retried.
    - InvariantError: bug or attack; let it propagate.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ReasonCode(str, Enum):
    """Specific reason attached to every engine error."""
    # Policy
    COOLDOWN_ACTIVE = "cooldown_active"
    DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"
    WEEKLY_LIMIT_EXCEEDED = "weekly_limit_exceeded"
    VESTING_LOCKED = "vesting_locked"
    MAX_PRINCIPAL_EXCEEDED = "max_principal_exceeded"
    INSUFFICIENT_PRINCIPAL = "insufficient_principal"
    BELOW_REINJECTION_THRESHOLD = "below_reinjection_threshold"
    PRICE_DEVIATION = "price_deviation"
    EMERGENCY_MODE = "emergency_mode"
    CIRCUIT_BREAKER = "circuit_breaker"
    EMERGENCY_MODE_REQUIRED = "emergency_mode_required"
    # Oracle / AMM / ledger
    ORACLE_UNAVAILABLE = "oracle_unavailable"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    EXTERNAL_CALL_FAILED = "external_call_failed"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    # Access / input
    UNAUTHORIZED = "unauthorized"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_CONFIG = "invalid_config"
    UNKNOWN_POSITION = "unknown_position"
    LIQUIDITY_EXCEEDS_POSITION = "liquidity_exceeds_position"
    # Invariants
    REENTRANT_CALL = "reentrant_call"
    INVARIANT_BROKEN = "invariant_broken"


class LiquidityGuardError(Exception):
    """Base exception for all engine errors."""

    default_reason = ReasonCode.INVARIANT_BROKEN

    def __init__(
        self,
        message: str,
        reason: Optional[ReasonCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.reason = reason or self.default_reason
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.reason.value}] {super().__str__()}"


# ============ POLICY (recoverable by the caller) ============

class PolicyViolation(LiquidityGuardError):
    """Rate limit, vesting, cooldown or max-principal rejection."""
    pass


class PriceDeviationError(PolicyViolation):
    """Spot price fell further below the TWAP than max_deviation_pct allows."""
    default_reason = ReasonCode.PRICE_DEVIATION


class OperationHaltedError(PolicyViolation):
    """Operation blocked by emergency mode or the circuit breaker."""
    default_reason = ReasonCode.EMERGENCY_MODE


# ============ ORACLE / EXTERNAL ============

class OracleUnavailable(LiquidityGuardError):
    """All TWAP windows failed and no fresh cached value exists."""
    default_reason = ReasonCode.ORACLE_UNAVAILABLE


class SlippageExceeded(LiquidityGuardError):
    """The AMM returned less than the configured minimum.

    Aborts the whole enclosing operation.
    """
    default_reason = ReasonCode.SLIPPAGE_EXCEEDED


class ExternalCallFailure(LiquidityGuardError):
    """An AMM, token ledger or treasury call raised or returned failure."""
    default_reason = ReasonCode.EXTERNAL_CALL_FAILED


# ============ ACCESS / INPUT ============

class Unauthorized(LiquidityGuardError):
    """Caller lacks the capability required for the operation."""
    default_reason = ReasonCode.UNAUTHORIZED


class ValidationError(LiquidityGuardError):
    """Malformed request: non-positive amount, bad config, unknown position."""
    default_reason = ReasonCode.INVALID_AMOUNT


# ============ INVARIANT (halt) ============

class InvariantError(LiquidityGuardError):
    """Safety invariant violation.

    This should never be caught and silently continued.
    """
    default_reason = ReasonCode.INVARIANT_BROKEN


class ReentrantCallError(InvariantError):
    """A mutating operation was invoked from inside another one."""
    default_reason = ReasonCode.REENTRANT_CALL
