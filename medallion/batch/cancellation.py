"""
Cooperative cancellation for loader runs.
"""

import threading

from medallion.core.errors import BatchCancelled


class CancellationToken:
    """
    Flag checked by the loader between steps, never during a write.

    Usage:
        token = CancellationToken()
        threading.Timer(60, token.cancel).start()
        loader.run(batch_id, cancel=token)
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, step: str) -> None:
        if self.cancelled:
            raise BatchCancelled(f"{self.reason or 'cancelled'} before {step}")
