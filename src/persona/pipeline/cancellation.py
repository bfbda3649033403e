"""
Cancellation token shared by the segmenter, dispatcher and sequencer.
"""

import asyncio
from typing import Callable, List, Optional

import structlog

logger = structlog.get_logger()


class CancellationToken:
    """
    One-shot cancellation signal.

    cancel() is synchronous and idempotent; registered callbacks run once,
    in registration order, on the first cancel().
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return

        self.reason = reason
        self._event.set()
        logger.info("pipeline.cancelled", reason=reason)

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation (immediately if already cancelled)"""
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> None:
        await self._event.wait()
