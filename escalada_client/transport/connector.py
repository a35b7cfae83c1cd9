"""
Socket seam for the transport channel.

A connector is an async callable `url -> Connection`; awaiting it is the handshake.
The default implementation uses the `websockets` asyncio client.
"""

from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from websockets.asyncio.client import connect


class Connection(Protocol):
    close_code: int | None

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[Any]: ...


Connector = Callable[[str], Awaitable[Connection]]


async def websocket_connector(url: str) -> Connection:
    # Liveness is driven by the server's PING/PONG frames at application level,
    # so the protocol-level keepalive is disabled.
    return await connect(url, ping_interval=None, open_timeout=10)
