import asyncio
import inspect
import itertools
from typing import Callable, Dict, Set
from pricefeed.core.models import PriceUpdate
from pricefeed.core.logger import logger


class UpdateHub:
    """
    Process-wide fan-out of PriceUpdates to independent consumers.

    Callbacks may be plain functions or coroutine functions. Plain callbacks run
    inline during publish(); coroutine callbacks are scheduled as tasks on the
    running loop. Delivery order across callbacks is not guaranteed.
    """

    def __init__(self):
        self._callbacks: Dict[int, Callable] = {}
        self._tokens = itertools.count(1)
        self._pending: Set[asyncio.Task] = set()
        self.delivery_errors = 0

    def subscribe(self, callback: Callable) -> int:
        """Register a callback. Returns the handle to pass to unsubscribe()."""
        handle = next(self._tokens)
        self._callbacks[handle] = callback
        return handle

    def unsubscribe(self, handle: int):
        # Idempotent: unknown or already-removed handles are ignored
        self._callbacks.pop(handle, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def publish(self, update: PriceUpdate):
        # Snapshot so callbacks can (un)subscribe while we iterate
        for handle, callback in list(self._callbacks.items()):
            try:
                if inspect.iscoroutinefunction(callback):
                    task = asyncio.get_running_loop().create_task(callback(update))
                    self._pending.add(task)
                    task.add_done_callback(self._on_task_done)
                else:
                    callback(update)
            except Exception as e:
                self.delivery_errors += 1
                logger.error(f"Subscriber {handle} failed on {update.symbol}: {e}", exc_info=True)

    def _on_task_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.delivery_errors += 1
            logger.error(f"Async subscriber failed: {exc}", exc_info=exc)

    async def drain(self):
        """Wait for scheduled coroutine callbacks to finish"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
