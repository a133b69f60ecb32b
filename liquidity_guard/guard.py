"""
LiquidityGuard: the engine façade.

Composes the withdrawal ledger, fee schedule, TWAP oracle adapter,
position manager and emergency switches behind one API.

Every mutating operation:
    1. capability check (privileged operations only)
    2. enters the single-writer OperationGuard (reentrant calls fail)
    3. emergency / circuit-breaker gate
    4. computes the new state without committing it
    5. performs the external calls (token transfers, AMM)
    6. commits local state, then records the event

A failure at any step before (6) leaves engine state exactly as it was.
The engine preflights its own balance before paying out. Calls that run
after a commit (the withdrawal fee transfer) cannot undo it: their
failure is recorded as pending work instead. Position changes are
mirrored call by call, see PositionManager.
"""
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from liquidity_guard.config.config import Config, GuardConfig, PositionConfig, TWAPConfig
from liquidity_guard.constants import ZERO
from liquidity_guard.domain.models import (
    AccountLiquidity,
    EmergencyState,
    EventType,
    Position,
    PositionChange,
    TWAPCache,
    WithdrawalReceipt,
)
from liquidity_guard.domain.protocols import (
    AMMAdapter,
    Clock,
    EventRecorder,
    TokenLedger,
    Treasury,
    _noop_event_recorder,
)
from liquidity_guard.exceptions import (
    ExternalCallFailure,
    LiquidityGuardError,
    PolicyViolation,
    ReasonCode,
    ValidationError,
)
from liquidity_guard.execution.position_manager import PositionManager
from liquidity_guard.monitoring.logger import get_logger
from liquidity_guard.oracle.twap import TWAPOracleAdapter
from liquidity_guard.risk.fee_calculator import FeeBreakdown, compute_fee_breakdown
from liquidity_guard.risk.withdrawal_ledger import WithdrawalLedger, raise_if_rejected
from liquidity_guard.safety.access import AccessController, Role
from liquidity_guard.safety.emergency import EmergencyControls
from liquidity_guard.safety.operation_guard import OperationGuard
from liquidity_guard.utils.amounts import AmountLike, to_amount, to_positive_amount
from liquidity_guard.utils.clock import SystemClock
from liquidity_guard.utils.external import (
    balance_of,
    call_external,
    checked_transfer,
    checked_transfer_from,
)

logger = get_logger(__name__)


@dataclass
class GuardSnapshot:
    """Everything needed to rebuild a guard after a restart."""
    guard_config: GuardConfig
    twap_config: TWAPConfig
    position_config: PositionConfig
    accounts: List[AccountLiquidity] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    twap_cache: Optional[TWAPCache] = None
    emergency: EmergencyState = field(default_factory=EmergencyState)
    accumulated_fees: Decimal = ZERO
    pending_fees: Decimal = ZERO


class LiquidityGuard:
    """
    Protected liquidity pool engine.

    `token` is the guarded asset users deposit and withdraw (AMM token0);
    `paired_token` is the asset the treasury supplies for injections
    (AMM token1).
    """

    def __init__(
        self,
        config: Config,
        amm: AMMAdapter,
        token: TokenLedger,
        paired_token: TokenLedger,
        treasury: Treasury,
        access: AccessController,
        clock: Optional[Clock] = None,
        event_recorder: Optional[EventRecorder] = None,
        address: Optional[str] = None,
    ):
        self._config = config.model_copy(deep=True)
        self.address = address or config.engine_address
        self.amm = amm
        self.token = token
        self.paired_token = paired_token
        self.treasury = treasury
        self.access = access
        self.clock = clock or SystemClock()
        self._record_event = event_recorder or _noop_event_recorder

        self.ledger = WithdrawalLedger()
        self.oracle = TWAPOracleAdapter(amm)
        self.positions = PositionManager(amm, token, paired_token, self.address)
        self.emergency = EmergencyControls()

        self._op_guard = OperationGuard()
        self._state_lock = threading.Lock()
        self._accumulated_fees = ZERO
        self._pending_fees = ZERO

        logger.info(
            "LiquidityGuard initialized",
            address=self.address,
            token=token.symbol,
            paired_token=paired_token.symbol,
            twap_enabled=self._config.twap.enabled,
            twap_windows=list(self._config.twap.windows),
        )

    # ============ QUERIES ============

    def get_config(self) -> Config:
        with self._state_lock:
            return self._config.model_copy(deep=True)

    @property
    def guard_config(self) -> GuardConfig:
        with self._state_lock:
            return self._config.guard.model_copy()

    @property
    def twap_config(self) -> TWAPConfig:
        with self._state_lock:
            return self._config.twap.model_copy(deep=True)

    @property
    def position_config(self) -> PositionConfig:
        with self._state_lock:
            return self._config.positions.model_copy()

    def get_account(self, account: str) -> Optional[AccountLiquidity]:
        return self.ledger.get(account)

    def twap_snapshot(self) -> Optional[TWAPCache]:
        return self.oracle.snapshot()

    def list_positions(self) -> List[Position]:
        return self.positions.active_positions()

    def emergency_state(self) -> EmergencyState:
        return self.emergency.snapshot()

    def accumulated_fees(self) -> Decimal:
        with self._state_lock:
            return self._accumulated_fees

    def pending_fees(self) -> Decimal:
        """Fees charged but not yet delivered to the fee sink."""
        with self._state_lock:
            return self._pending_fees

    def quote_withdrawal_fee(self, account: str, amount: AmountLike) -> FeeBreakdown:
        """Fee a withdrawal of `amount` would pay right now; no state is touched."""
        record = self.ledger.get(account) or AccountLiquidity(account=account)
        return compute_fee_breakdown(record, to_positive_amount(amount), self.guard_config, self.clock.time())

    def get_status(self) -> Dict[str, Any]:
        cache = self.twap_snapshot()
        return {
            "address": self.address,
            "accounts": len(self.ledger.accounts()),
            "total_principal": str(self.ledger.total_principal()),
            "accumulated_fees": str(self.accumulated_fees()),
            "pending_fees": str(self.pending_fees()),
            "active_positions": len(self.list_positions()),
            "twap_cache": {"price": str(cache.price), "updated_at": cache.updated_at} if cache else None,
            **self.emergency.get_status(),
        }

    # ============ USER OPERATIONS ============

    def deposit(self, account: str, amount: AmountLike) -> AccountLiquidity:
        """
        Pull `amount` from `account` into the engine and credit its principal.

        Raises:
            OperationHaltedError: emergency mode or circuit breaker
            ValidationError: amount <= 0
            PolicyViolation: MAX_PRINCIPAL_EXCEEDED
            ExternalCallFailure: transfer_from failed
        """
        with self._op_guard.enter("deposit"):
            self.emergency.require_operational("deposit")
            amount = to_positive_amount(amount)
            now = self.clock.time()

            updated = self.ledger.preview_deposit(account, amount, self.guard_config, now)
            checked_transfer_from(self.token, account, self.address, amount)
            self.ledger.commit(updated)

            logger.info("Deposit recorded", account=account, amount=str(amount), principal=str(updated.principal))
            self._record(EventType.DEPOSIT, account, {
                "amount": str(amount),
                "principal": str(updated.principal),
                "vesting_start": updated.vesting_start,
            }, now)
            return updated

    def withdraw(self, account: str, amount: AmountLike) -> WithdrawalReceipt:
        """
        Withdraw `amount` of principal, net of fees.

        Order: emergency gate → ledger authorization → TWAP validation →
        fee → balance preflight → payout → commit → fee to the fee sink.

        The payout is the only transfer the withdrawal depends on. A fee
        transfer that fails after the commit leaves the fee pending in the
        engine (`fee_deferred` on the receipt) for sweep_pending_fees.

        Raises:
            OperationHaltedError: emergency mode
            PolicyViolation: cooldown / daily / weekly / vesting / insufficient principal
            PriceDeviationError: spot too far below TWAP
            OracleUnavailable: every TWAP window failed and the cache is stale
            ExternalCallFailure: engine balance too low, or the payout failed
        """
        with self._op_guard.enter("withdraw"):
            self.emergency.require_not_emergency("withdraw")
            amount = to_positive_amount(amount)
            now = self.clock.time()
            config = self.guard_config

            record = self.ledger.get(account) or AccountLiquidity(account=account)
            authorization = self.ledger.authorize_withdrawal(account, amount, config, now)
            raise_if_rejected(authorization)

            price_check = self.oracle.validate_price(self.twap_config, now)

            fee = compute_fee_breakdown(record, amount, config, now).total
            net_amount = amount - fee

            self._require_balance(self.token, amount + self.pending_fees(), "withdraw")
            if net_amount > 0:
                checked_transfer(self.token, account, net_amount)

            self.ledger.commit(authorization.updated)
            with self._state_lock:
                self._accumulated_fees += fee
            fee_deferred = fee > 0 and not self._route_fee(fee, config.fee_sink, account)

            receipt = WithdrawalReceipt(
                account=account,
                amount=amount,
                fee=fee,
                net_amount=net_amount,
                timestamp=now,
                twap_price=price_check.twap_price,
                price_source=price_check.source.value,
                fee_deferred=fee_deferred,
            )
            logger.info(
                "Withdrawal completed",
                account=account,
                amount=str(amount),
                fee=str(fee),
                net_amount=str(net_amount),
                price_source=price_check.source.value,
                fee_deferred=fee_deferred,
            )
            self._record(EventType.WITHDRAWAL_COMPLETED, account, {
                "amount": str(amount),
                "fee": str(fee),
                "net_amount": str(net_amount),
                "unlocked_pct": str(authorization.unlocked_pct),
                "twap_price": str(price_check.twap_price) if price_check.twap_price is not None else None,
                "price_source": price_check.source.value,
                "fee_deferred": fee_deferred,
            }, now)
            return receipt

    # ============ GOVERNANCE ============

    def inject_liquidity(self, caller: str, amount: AmountLike) -> PositionChange:
        """Deploy `amount` of the engine's guarded token, paired by the treasury, into the AMM."""
        self.access.require(Role.GOVERNANCE, caller)
        with self._op_guard.enter("inject_liquidity"):
            return self._deploy("inject_liquidity", EventType.LIQUIDITY_INJECTED, caller, amount)

    def reinvest_rewards(self, caller: str, amount: AmountLike) -> PositionChange:
        """Same as inject_liquidity, gated by the reinjection threshold."""
        self.access.require(Role.GOVERNANCE, caller)
        with self._op_guard.enter("reinvest_rewards"):
            amount = to_positive_amount(amount)
            threshold = self.guard_config.reinjection_threshold
            if amount < threshold:
                logger.info("Reinvestment below threshold", amount=str(amount), threshold=str(threshold))
                raise PolicyViolation(
                    f"Reward amount {amount} is below the reinjection threshold {threshold}",
                    ReasonCode.BELOW_REINJECTION_THRESHOLD,
                    {"amount": str(amount), "threshold": str(threshold)},
                )
            return self._deploy("reinvest_rewards", EventType.REWARDS_REINVESTED, caller, amount)

    def _deploy(self, operation: str, event_type: EventType, caller: str, amount: AmountLike) -> PositionChange:
        self.emergency.require_operational(operation)
        amount = to_positive_amount(amount)
        now = self.clock.time()
        config = self.guard_config

        price_check = self.oracle.validate_price(self.twap_config, now)
        self._require_balance(self.token, amount + self.pending_fees(), operation)
        paired_before = balance_of(self.paired_token, self.address)

        paired = to_amount(
            call_external(
                "treasury.withdraw_paired_asset_equivalent",
                self.treasury.withdraw_paired_asset_equivalent,
                amount,
            ),
            field="paired_amount",
        )
        if paired < 0:
            raise ExternalCallFailure(
                f"Treasury returned a negative paired amount {paired}",
                ReasonCode.EXTERNAL_CALL_FAILED,
                {"call": "treasury.withdraw_paired_asset_equivalent"},
            )

        try:
            change = self.positions.open_or_increase(
                amount,
                paired,
                config.slippage_tolerance_bps,
                self.position_config.tick_half_width,
                now,
            )
        except LiquidityGuardError:
            self._return_paired(paired_before, operation)
            raise
        logger.info(
            "Liquidity deployed",
            operation=operation,
            caller=caller,
            amount=str(amount),
            paired_amount=str(paired),
            position_id=change.position_id,
            action=change.action.value,
        )
        self._record(event_type, str(change.position_id), {
            "caller": caller,
            "amount": str(amount),
            "paired_amount": str(paired),
            "action": change.action.value,
            "liquidity_delta": change.liquidity_delta,
            "tick_lower": change.tick_lower,
            "tick_upper": change.tick_upper,
            "twap_price": str(price_check.twap_price) if price_check.twap_price is not None else None,
        }, now)
        return change

    def update_guard_config(self, caller: str, updates: Dict[str, Any]) -> GuardConfig:
        """
        Replace guard policy fields.

        Raises:
            ValidationError: INVALID_CONFIG when the merged config fails validation
        """
        self.access.require(Role.GOVERNANCE, caller)
        with self._op_guard.enter("update_guard_config"):
            new_config = self._validated(GuardConfig, self.guard_config, updates)
            with self._state_lock:
                self._config = self._config.model_copy(update={"guard": new_config})
            self._record_config_change("guard", caller, updates)
            return new_config.model_copy()

    def update_twap_config(self, caller: str, updates: Dict[str, Any]) -> TWAPConfig:
        self.access.require(Role.GOVERNANCE, caller)
        with self._op_guard.enter("update_twap_config"):
            new_config = self._validated(TWAPConfig, self.twap_config, updates)
            with self._state_lock:
                self._config = self._config.model_copy(update={"twap": new_config})
            self._record_config_change("twap", caller, updates)
            return new_config.model_copy(deep=True)

    def set_whitelisted(self, caller: str, account: str, whitelisted: bool) -> AccountLiquidity:
        self.access.require(Role.GOVERNANCE, caller)
        with self._op_guard.enter("set_whitelisted"):
            record = self.ledger.set_whitelisted(account, whitelisted)
            self._record(EventType.WHITELIST_UPDATED, account, {
                "caller": caller,
                "whitelisted": whitelisted,
            }, self.clock.time())
            return record

    def sweep_pending_fees(self, caller: str) -> Decimal:
        """
        Deliver fees whose withdrawal-time transfer failed to the fee sink.

        Returns:
            The amount swept (zero when nothing was pending)
        """
        self.access.require(Role.GOVERNANCE, caller)
        with self._op_guard.enter("sweep_pending_fees"):
            self.emergency.require_not_emergency("sweep_pending_fees")
            pending = self.pending_fees()
            if pending == 0:
                return ZERO
            fee_sink = self.guard_config.fee_sink
            checked_transfer(self.token, fee_sink, pending)
            with self._state_lock:
                self._pending_fees -= pending

            logger.info("Pending fees swept", amount=str(pending), fee_sink=fee_sink, caller=caller)
            self._record(EventType.FEES_SWEPT, fee_sink, {
                "caller": caller,
                "amount": str(pending),
            }, self.clock.time())
            return pending

    # ============ OPERATOR ============

    def decrease_position(
        self,
        caller: str,
        position_id: int,
        liquidity: int,
        amount0_min: AmountLike = ZERO,
        amount1_min: AmountLike = ZERO,
    ) -> PositionChange:
        self.access.require(Role.OPERATOR, caller)
        with self._op_guard.enter("decrease_position"):
            self.emergency.require_not_emergency("decrease_position")
            change = self.positions.decrease(position_id, liquidity, amount0_min, amount1_min)
            self._record_position_change(EventType.POSITION_DECREASED, caller, change)
            return change

    def collect_position_fees(self, caller: str, position_id: int) -> PositionChange:
        self.access.require(Role.OPERATOR, caller)
        with self._op_guard.enter("collect_position_fees"):
            self.emergency.require_not_emergency("collect_position_fees")
            change = self.positions.collect(position_id)
            self._record_position_change(EventType.FEES_COLLECTED, caller, change)
            return change

    def close_position(
        self,
        caller: str,
        position_id: int,
        amount0_min: AmountLike = ZERO,
        amount1_min: AmountLike = ZERO,
    ) -> PositionChange:
        self.access.require(Role.OPERATOR, caller)
        with self._op_guard.enter("close_position"):
            self.emergency.require_not_emergency("close_position")
            change = self.positions.close(position_id, amount0_min, amount1_min)
            self._record_position_change(EventType.POSITION_CLOSED, caller, change)
            return change

    def rebalance_position(self, caller: str, position_id: int) -> Optional[Tuple[PositionChange, PositionChange]]:
        """Recentre an out-of-range position. Returns None when it is still in range."""
        self.access.require(Role.OPERATOR, caller)
        with self._op_guard.enter("rebalance_position"):
            self.emergency.require_not_emergency("rebalance_position")
            now = self.clock.time()
            result = self.positions.rebalance(
                position_id,
                self.guard_config.slippage_tolerance_bps,
                self.position_config.tick_half_width,
                now,
            )
            if result is not None:
                closed, redeployed = result
                self._record(EventType.POSITION_REBALANCED, str(position_id), {
                    "caller": caller,
                    "new_position_id": redeployed.position_id,
                    "action": redeployed.action.value,
                    "amount0": str(closed.amount0),
                    "amount1": str(closed.amount1),
                    "tick_lower": redeployed.tick_lower,
                    "tick_upper": redeployed.tick_upper,
                }, now)
            return result

    # ============ EMERGENCY ============

    def set_emergency_mode(self, caller: str, enabled: bool, reason: Optional[str] = None) -> EmergencyState:
        self.access.require(Role.EMERGENCY, caller)
        with self._op_guard.enter("set_emergency_mode"):
            now = self.clock.time()
            if self.emergency.set_emergency_mode(enabled, now, reason):
                self._record(EventType.EMERGENCY_MODE_CHANGED, caller, {
                    "enabled": enabled,
                    "reason": reason,
                }, now)
            return self.emergency.snapshot()

    def set_circuit_breaker(self, caller: str, triggered: bool, reason: Optional[str] = None) -> EmergencyState:
        self.access.require(Role.EMERGENCY, caller)
        with self._op_guard.enter("set_circuit_breaker"):
            now = self.clock.time()
            if self.emergency.set_circuit_breaker(triggered, now, reason):
                self._record(EventType.CIRCUIT_BREAKER_CHANGED, caller, {
                    "triggered": triggered,
                    "reason": reason,
                }, now)
            return self.emergency.snapshot()

    def emergency_withdraw_position(self, caller: str, position_id: int) -> PositionChange:
        """Close a position with zero slippage minimums. Emergency mode only."""
        self.access.require(Role.EMERGENCY, caller)
        with self._op_guard.enter("emergency_withdraw_position"):
            self.emergency.require_emergency("emergency_withdraw_position")
            change = self.positions.close(position_id, ZERO, ZERO)
            logger.critical(
                "Emergency position withdrawal",
                caller=caller,
                position_id=position_id,
                amount0=str(change.amount0),
                amount1=str(change.amount1),
            )
            self._record_position_change(EventType.EMERGENCY_POSITION_WITHDRAWN, caller, change)
            return change

    # ============ STATE SNAPSHOT ============

    def export_state(self) -> GuardSnapshot:
        with self._state_lock:
            guard_config = self._config.guard.model_copy()
            twap_config = self._config.twap.model_copy(deep=True)
            position_config = self._config.positions.model_copy()
            fees = self._accumulated_fees
            pending = self._pending_fees
        return GuardSnapshot(
            guard_config=guard_config,
            twap_config=twap_config,
            position_config=position_config,
            accounts=self.ledger.accounts(),
            positions=self.positions.active_positions(),
            twap_cache=self.oracle.snapshot(),
            emergency=self.emergency.snapshot(),
            accumulated_fees=fees,
            pending_fees=pending,
        )

    def restore_state(self, snapshot: GuardSnapshot) -> None:
        with self._op_guard.enter("restore_state"):
            with self._state_lock:
                self._config = self._config.model_copy(update={
                    "guard": snapshot.guard_config.model_copy(),
                    "twap": snapshot.twap_config.model_copy(deep=True),
                    "positions": snapshot.position_config.model_copy(),
                })
                self._accumulated_fees = snapshot.accumulated_fees
                self._pending_fees = snapshot.pending_fees
            self.ledger.restore(snapshot.accounts)
            self.positions.restore(snapshot.positions)
            self.oracle.restore_cache(snapshot.twap_cache)
            self.emergency.restore(snapshot.emergency)
        logger.info(
            "Guard state restored",
            accounts=len(snapshot.accounts),
            positions=len(snapshot.positions),
            emergency_mode=snapshot.emergency.emergency_mode,
            circuit_breaker=snapshot.emergency.circuit_breaker_triggered,
        )

    # ============ INTERNALS ============

    def _route_fee(self, fee: Decimal, fee_sink: str, account: str) -> bool:
        """Send a withdrawal fee to the fee sink; on failure keep it pending."""
        try:
            checked_transfer(self.token, fee_sink, fee)
        except ExternalCallFailure as e:
            with self._state_lock:
                self._pending_fees += fee
            logger.error(
                "Fee transfer failed, fee kept pending",
                account=account,
                fee=str(fee),
                fee_sink=fee_sink,
                error=str(e),
            )
            return False
        return True

    def _return_paired(self, baseline: Decimal, operation: str) -> None:
        """Send paired tokens drawn for an aborted deployment back to the treasury."""
        leftover = balance_of(self.paired_token, self.address) - baseline
        if leftover <= 0:
            return
        checked_transfer(self.paired_token, self.treasury.address, leftover)
        logger.warning("Paired asset returned to treasury", operation=operation, amount=str(leftover))

    def _require_balance(self, token: TokenLedger, amount: Decimal, operation: str) -> None:
        available = balance_of(token, self.address)
        if available < amount:
            logger.error(
                "Engine balance too low",
                operation=operation,
                token=token.symbol,
                required=str(amount),
                available=str(available),
            )
            raise ExternalCallFailure(
                f"{operation}: engine holds {available} {token.symbol}, needs {amount}",
                ReasonCode.INSUFFICIENT_BALANCE,
                {"operation": operation, "required": str(amount), "available": str(available)},
            )

    @staticmethod
    def _validated(model, current, updates: Dict[str, Any]):
        merged = {**current.model_dump(), **updates}
        try:
            return model.model_validate(merged)
        except PydanticValidationError as e:
            logger.warning("Config update rejected", section=model.__name__, errors=e.error_count())
            raise ValidationError(
                f"Invalid {model.__name__} update: {e}",
                ReasonCode.INVALID_CONFIG,
                {"fields": sorted(updates)},
            ) from e

    def _record_config_change(self, section: str, caller: str, updates: Dict[str, Any]) -> None:
        logger.info("Config updated", section=section, caller=caller, fields=sorted(updates))
        self._record(EventType.CONFIG_UPDATED, section, {
            "caller": caller,
            "updates": {k: str(v) if isinstance(v, Decimal) else v for k, v in updates.items()},
        }, self.clock.time())

    def _record_position_change(self, event_type: EventType, caller: str, change: PositionChange) -> None:
        self._record(event_type, str(change.position_id), {
            "caller": caller,
            "action": change.action.value,
            "liquidity_delta": change.liquidity_delta,
            "amount0": str(change.amount0),
            "amount1": str(change.amount1),
        }, self.clock.time())

    def _record(self, event_type: EventType, subject: str, details: Dict[str, Any], now: int) -> None:
        """Record an event for a committed operation; recorder failures never undo the commit."""
        try:
            self._record_event(event_type.value, subject, details, now)
        except Exception as e:
            logger.error(
                "Failed to record event",
                event_type=event_type.value,
                subject=subject,
                error=str(e),
                error_type=type(e).__name__,
            )
