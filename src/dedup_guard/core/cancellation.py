"""Cooperative cancellation shared between the safety engine and workers."""

import threading
from typing import Optional

from dedup_guard.core.errors import EmergencyStopped


class CancellationToken:
    """
    Flag checked at safe points by long-running work.

    Setting it never interrupts a unit of work in flight; it only prevents
    new units from starting.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "emergency stop") -> None:
        self.reason = reason
        self._event.set()

    def reset(self) -> None:
        self.reason = None
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str) -> None:
        """Raise EmergencyStopped at an operation boundary if a stop was requested."""
        if self.cancelled:
            raise EmergencyStopped(operation)
