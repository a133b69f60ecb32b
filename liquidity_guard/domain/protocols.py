"""
Domain protocols (interfaces) for dependency inversion.

These protocols define the contracts external collaborators must
implement: the concentrated-liquidity AMM, fungible token ledgers, the
treasury, the clock and the audit event sink. Engine code depends on
these abstractions only; `liquidity_guard.paper.amm_sim` provides
in-memory implementations.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from liquidity_guard.domain.models import (
    AmountPair,
    DecreaseParams,
    IncreaseParams,
    LiquidityResult,
    MintParams,
    MintResult,
    Slot0,
)


@runtime_checkable
class AMMAdapter(Protocol):
    """Pool oracle plus position primitives of the external AMM."""

    address: str

    def observe(self, seconds_agos: Sequence[int]) -> List[int]: ...

    def slot0(self) -> Slot0: ...

    def mint(self, params: MintParams) -> MintResult: ...

    def increase_liquidity(self, params: IncreaseParams) -> LiquidityResult: ...

    def decrease_liquidity(self, params: DecreaseParams) -> AmountPair: ...

    def collect(self, position_id: int) -> AmountPair: ...

    def burn(self, position_id: int) -> None: ...


@runtime_checkable
class TokenLedger(Protocol):
    """Fungible token bound to the engine's address (the implicit sender)."""

    symbol: str

    def transfer(self, recipient: str, amount: Decimal) -> bool: ...

    def transfer_from(self, owner: str, recipient: str, amount: Decimal) -> bool: ...

    def approve(self, spender: str, amount: Decimal) -> bool: ...

    def balance_of(self, holder: str) -> Decimal: ...


@runtime_checkable
class Treasury(Protocol):
    """Supplies paired capital during injection / reinvestment."""

    address: str

    def withdraw_paired_asset_equivalent(self, amount: Decimal) -> Decimal: ...


@runtime_checkable
class Clock(Protocol):
    def time(self) -> int: ...


@runtime_checkable
class EventRecorder(Protocol):
    """
    Protocol for recording engine events (withdrawals, emergency switches, ...).

    Implemented by liquidity_guard.storage.repository.make_event_recorder in
    production. Can be replaced with a no-op or in-memory recorder in tests.
    """

    def __call__(
        self,
        event_type: str,
        subject: str,
        details: Dict[str, Any],
        timestamp: Optional[int] = None,
    ) -> None: ...


def _noop_event_recorder(
    event_type: str,
    subject: str,
    details: Dict[str, Any],
    timestamp: Optional[int] = None,
) -> None:
    """No-op event recorder for use in tests or when persistence is unavailable."""
    pass
