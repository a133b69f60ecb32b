"""
OperationGuard: single-writer, non-reentrant section for mutating operations.

Usage:
    guard = OperationGuard()

    with guard.enter("withdraw"):
        ...  # external calls, then commit

A mutating call made while another is already running on the same
thread (e.g. from a token or AMM callback) raises ReentrantCallError
instead of deadlocking or interleaving with the in-flight operation.
Writers on other threads wait on the lock. Log lines emitted inside the
section carry `operation=<name>`.
"""
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from liquidity_guard.exceptions import ReasonCode, ReentrantCallError
from liquidity_guard.monitoring.logger import get_logger

logger = get_logger(__name__)


class OperationGuard:
    def __init__(self):
        self._lock = threading.Lock()
        self._local = threading.local()

    @property
    def current_operation(self) -> Optional[str]:
        """Operation running on this thread, if any."""
        return getattr(self._local, "operation", None)

    @contextmanager
    def enter(self, operation: str) -> Iterator[None]:
        active = self.current_operation
        if active is not None:
            logger.critical("Reentrant call blocked", operation=operation, active_operation=active)
            raise ReentrantCallError(
                f"{operation} called while {active} is in progress",
                ReasonCode.REENTRANT_CALL,
                {"operation": operation, "active_operation": active},
            )

        with self._lock, structlog.contextvars.bound_contextvars(operation=operation):
            self._local.operation = operation
            try:
                yield
            finally:
                self._local.operation = None
