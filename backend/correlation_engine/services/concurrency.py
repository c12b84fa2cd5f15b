"""Per-connector concurrency limit shared by every running batch.

Jobs run their batches on separate event loops (one per background task), so
the limit is kept under a thread lock and waiters are woken on their own loop.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

_Waiter = tuple[asyncio.AbstractEventLoop, asyncio.Future]


class ConnectorSlots:
    """Counting semaphore keyed by connector id, usable from any event loop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_use: dict[str, int] = {}
        self._waiters: dict[str, deque[_Waiter]] = {}

    def in_use(self, connector_id: str) -> int:
        with self._lock:
            return self._in_use.get(connector_id, 0)

    @asynccontextmanager
    async def hold(self, connector_id: str, limit: int) -> AsyncIterator[None]:
        await self._acquire(connector_id, max(limit, 1))
        try:
            yield
        finally:
            self._release(connector_id)

    async def _acquire(self, connector_id: str, limit: int) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            queue = self._waiters.get(connector_id)
            if self._in_use.get(connector_id, 0) < limit and not queue:
                self._in_use[connector_id] = self._in_use.get(connector_id, 0) + 1
                return
            waiter: _Waiter = (loop, loop.create_future())
            self._waiters.setdefault(connector_id, deque()).append(waiter)
        try:
            await waiter[1]
        except asyncio.CancelledError:
            with self._lock:
                queue = self._waiters.get(connector_id)
                if queue is not None and waiter in queue:
                    queue.remove(waiter)
                    raise
            # The slot was handed over before the cancellation arrived.
            self._release(connector_id)
            raise

    def _release(self, connector_id: str) -> None:
        with self._lock:
            queue = self._waiters.get(connector_id)
            if queue:
                loop, future = queue.popleft()
                if not queue:
                    del self._waiters[connector_id]
                # The slot passes straight to the waiter; the count is unchanged.
                loop.call_soon_threadsafe(_wake, future)
                return
            remaining = self._in_use.get(connector_id, 0) - 1
            if remaining > 0:
                self._in_use[connector_id] = remaining
            else:
                self._in_use.pop(connector_id, None)


def _wake(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


connector_slots = ConnectorSlots()
