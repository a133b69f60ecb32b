"""
Role-based capability checks for privileged operations.

Roles:
    GOVERNANCE  - liquidity injection, reward reinvestment, config, whitelist
    OPERATOR    - position maintenance (decrease / collect / close / rebalance)
    EMERGENCY   - emergency mode, circuit breaker, emergency position withdrawal

Checks happen in the orchestrator before any component is touched.
"""
import threading
from enum import Enum
from typing import Dict, Iterable, Optional, Set

from liquidity_guard.exceptions import ReasonCode, Unauthorized
from liquidity_guard.monitoring.logger import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    GOVERNANCE = "governance"
    EMERGENCY = "emergency"
    OPERATOR = "operator"


class AccessController:
    """Role → holder addresses."""

    def __init__(self, grants: Optional[Dict[Role, Iterable[str]]] = None):
        self._holders: Dict[Role, Set[str]] = {role: set() for role in Role}
        self._lock = threading.Lock()
        for role, holders in (grants or {}).items():
            for holder in holders:
                self._holders[Role(role)].add(holder)

    def grant(self, role: Role, holder: str) -> None:
        with self._lock:
            self._holders[role].add(holder)
        logger.info("Role granted", role=role.value, holder=holder)

    def revoke(self, role: Role, holder: str) -> bool:
        with self._lock:
            if holder not in self._holders[role]:
                return False
            self._holders[role].discard(holder)
        logger.info("Role revoked", role=role.value, holder=holder)
        return True

    def has_role(self, role: Role, holder: str) -> bool:
        with self._lock:
            return holder in self._holders[role]

    def require(self, role: Role, caller: str) -> None:
        """Raise Unauthorized unless `caller` holds `role`."""
        if not self.has_role(role, caller):
            logger.warning("Unauthorized call rejected", role=role.value, caller=caller)
            raise Unauthorized(
                f"{caller} lacks the {role.value} role",
                ReasonCode.UNAUTHORIZED,
                {"role": role.value, "caller": caller},
            )
