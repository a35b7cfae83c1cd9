"""Timer seam for reconnect backoff and polling (swapped for a manual clock in tests)."""

import asyncio
from typing import Any, Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle: ...

    def time(self) -> float: ...


class LoopClock:
    """Clock backed by the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    def time(self) -> float:
        return asyncio.get_running_loop().time()
