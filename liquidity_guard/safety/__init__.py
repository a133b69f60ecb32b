"""
Safety module.

Contains capability checks, the single-writer operation guard and the
emergency switches.
"""
from liquidity_guard.safety.access import AccessController, Role
from liquidity_guard.safety.emergency import EmergencyControls
from liquidity_guard.safety.operation_guard import OperationGuard

__all__ = [
    "AccessController",
    "Role",
    "EmergencyControls",
    "OperationGuard",
]
