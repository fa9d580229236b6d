"""Cooperative cancellation shared between jobs, discovery and adapters."""

import asyncio
from typing import Optional

from directory_sync.errors import OperationCancelled


class CancellationToken:
    """
    One-shot cancellation flag.

    The owner calls ``cancel()``; workers call ``raise_if_cancelled()`` between
    units of work or race a blocking call against ``wait()``.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = 'cancelled'):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self):
        await self._event.wait()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled(f"Operation cancelled: {self.reason}")
