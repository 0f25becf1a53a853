import asyncio
from contextlib import asynccontextmanager
from unittest.mock import MagicMock
from websockets.exceptions import ConnectionClosedOK
from websockets.frames import Close


class FakeWS:
    """In-memory stand-in for a websockets client connection"""

    def __init__(self, frames=()):
        self.queue = asyncio.Queue()
        for frame in frames:
            self.queue.put_nowait(frame)
        self.closed_with = None

    async def recv(self):
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code=1000, reason=""):
        self.closed_with = code
        self.queue.put_nowait(ConnectionClosedOK(Close(code, reason), Close(code, reason)))


def make_connector(outcomes):
    """Each connect pops the next outcome: a FakeWS to yield or an exception to raise"""
    urls = []

    @asynccontextmanager
    async def connect(url):
        urls.append(url)
        outcome = outcomes.pop(0) if outcomes else OSError("connection refused")
        if isinstance(outcome, BaseException):
            raise outcome
        yield outcome

    connect.urls = urls
    return connect


class FakeTimers:
    """Replaces BinanceStream._start_timer; tests fire callbacks by hand"""

    def __init__(self):
        self.scheduled = []

    def __call__(self, delay, callback):
        handle = MagicMock()
        self.scheduled.append((delay, callback, handle))
        return handle

    @property
    def delays(self):
        return [d for d, _, _ in self.scheduled]

    def fire_last(self):
        _, callback, _ = self.scheduled[-1]
        callback()


async def settle(rounds=20):
    for _ in range(rounds):
        await asyncio.sleep(0)
