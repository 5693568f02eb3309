"""
Cooperative cancellation for batch operations.

A token is created per user-initiated batch. Once cancelled it stays cancelled;
holders check `cancelled` at their own check points.
"""
import asyncio


class CancellationToken:
    """Single-use, shared cancellation signal."""

    def __init__(self):
        self._cancelled = False
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Signal cancellation. Repeated calls have no further effect."""
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for `delay` seconds unless cancelled first.

        Returns:
            True if the sleep was cut short by cancellation
        """
        if self._cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self):
        return f"<CancellationToken(cancelled={self._cancelled})>"
