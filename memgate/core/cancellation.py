"""Cooperative cancellation for in-flight resolutions."""

from __future__ import annotations

import threading
import time
from typing import Optional

from memgate.exceptions import ResolutionCancelled


class CancellationToken:
    """Deadline plus explicit cancel flag, checked between pipeline stages.

    An external call already in progress is not interrupted; stages that
    have not started yet are abandoned.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout else None
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("timeout")
            return True
        return False

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ResolutionCancelled(f"Resolution {self.reason or 'cancelled'}")

