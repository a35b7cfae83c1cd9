"""
Pytest configuration and fixtures for escalada_client tests.

Time and sockets are driven by hand:
- FakeClock: `call_later` timers fire only on `advance()`
- FakeConnector / FakeConnection: each connect attempt stays pending until the test
  accepts or refuses it; inbound frames are fed explicitly
"""
import asyncio
import json
from typing import Any, Callable, Optional

import pytest

from escalada_client.config import Settings

_CLOSE = object()


# ==================== CLOCK ====================
class FakeTimer:
    def __init__(self, when: float, delay: float, callback: Callable[[], Any]):
        self.when = when
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.delays: list[float] = []
        self._timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], Any]) -> FakeTimer:
        timer = FakeTimer(self.now + delay, delay, callback)
        self.delays.append(delay)
        self._timers.append(timer)
        return timer

    def time(self) -> float:
        return self.now

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        self.now += seconds
        while True:
            due = [t for t in self.pending if t.when <= self.now]
            if not due:
                return
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            timer.callback()


# ==================== SOCKETS ====================
class FakeConnection:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.close_code: Optional[int] = None
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(message)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self._inbox.put_nowait(_CLOSE)

    def feed(self, message: Any) -> None:
        self._inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self, code: int = 1006) -> None:
        """Server-side close (or network loss) with the given close code."""
        self.closed = True
        self.close_code = code
        self._inbox.put_nowait(_CLOSE)

    def sent_json(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class FakeConnector:
    def __init__(self) -> None:
        self.urls: list[str] = []
        self.attempts: list[asyncio.Future] = []
        self.connections: list[FakeConnection] = []

    async def __call__(self, url: str) -> FakeConnection:
        future = asyncio.get_running_loop().create_future()
        self.urls.append(url)
        self.attempts.append(future)
        return await future

    def accept(self, index: int = -1) -> FakeConnection:
        conn = FakeConnection()
        self.connections.append(conn)
        self.attempts[index].set_result(conn)
        return conn

    def refuse(self, index: int = -1, exc: Optional[Exception] = None) -> None:
        self.attempts[index].set_exception(exc or ConnectionRefusedError("connection refused"))


async def settle(rounds: int = 20) -> None:
    """Let pending callbacks and tasks run (no real time passes)."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ==================== FIXTURES ====================
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_base="http://testserver/api",
        auth_token=None,
        log_file=None,
    )
