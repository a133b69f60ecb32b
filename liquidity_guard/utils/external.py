"""
Checked calls into external collaborators (AMM, token ledgers, treasury).

Engine errors raised by a collaborator pass through unchanged; anything
else becomes ExternalCallFailure. A token call returning a falsy value
is treated as a failure, never ignored.
"""
from decimal import Decimal
from typing import Any, Callable, TypeVar

from liquidity_guard.domain.protocols import TokenLedger
from liquidity_guard.exceptions import ExternalCallFailure, LiquidityGuardError, ReasonCode
from liquidity_guard.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def call_external(name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    try:
        return fn(*args, **kwargs)
    except LiquidityGuardError:
        raise
    except Exception as e:
        logger.error("External call failed", call=name, error=str(e), error_type=type(e).__name__)
        raise ExternalCallFailure(
            f"{name} failed: {e}",
            ReasonCode.EXTERNAL_CALL_FAILED,
            {"call": name, "error_type": type(e).__name__},
        ) from e


def _require_success(name: str, result: Any) -> None:
    if not result:
        logger.error("External call returned failure", call=name)
        raise ExternalCallFailure(f"{name} returned {result!r}", ReasonCode.EXTERNAL_CALL_FAILED, {"call": name})


def checked_transfer(token: TokenLedger, recipient: str, amount: Decimal) -> None:
    name = f"{token.symbol}.transfer"
    _require_success(name, call_external(name, token.transfer, recipient, amount))


def checked_transfer_from(token: TokenLedger, owner: str, recipient: str, amount: Decimal) -> None:
    name = f"{token.symbol}.transfer_from"
    _require_success(name, call_external(name, token.transfer_from, owner, recipient, amount))


def checked_approve(token: TokenLedger, spender: str, amount: Decimal) -> None:
    name = f"{token.symbol}.approve"
    _require_success(name, call_external(name, token.approve, spender, amount))


def balance_of(token: TokenLedger, holder: str) -> Decimal:
    return Decimal(str(call_external(f"{token.symbol}.balance_of", token.balance_of, holder)))
