# escalada_client/transport/channel.py
"""
Resilient streaming connection to the Escalada API.

State machine:
    IDLE -> CONNECTING -> OPEN -> CLOSED_WILL_RETRY -> CONNECTING (after backoff) -> ...
                                                   \\-> CLOSED_CIRCUIT_OPEN (terminal)

- Handshake success resets the attempt counter and flushes queued outbound messages (FIFO)
- Any close/error schedules a retry after min(base * 2**attempts, cap) while
  attempts < max_attempts; at the threshold the circuit opens and `error` is set
- Auth close codes (4401/4403) open the circuit immediately: retrying cannot help
- Every attempt carries a generation number; callbacks from a superseded attempt are no-ops
- Inbound PING is answered by the shared HeartbeatResponder; malformed frames are dropped
"""

# -------------------- Standard library imports --------------------
import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Coroutine

# -------------------- Third-party imports --------------------
from pydantic import BaseModel

# -------------------- Local application imports --------------------
from escalada_client.errors import AuthRequiredError, CircuitOpenError
from escalada_client.messages import encode, parse_inbound
from escalada_client.transport.clock import Clock, LoopClock, TimerHandle
from escalada_client.transport.connector import Connection, Connector, websocket_connector
from escalada_client.transport.heartbeat import HeartbeatResponder

logger = logging.getLogger(__name__)

# Close codes the API uses for token_required / forbidden_box_or_role.
AUTH_CLOSE_CODES = {4401, 4403}


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED_WILL_RETRY = "closed_will_retry"
    CLOSED_CIRCUIT_OPEN = "closed_circuit_open"


class TransportChannel:
    """One logical stream (one per box, plus one for the public feed)."""

    def __init__(
        self,
        url: str,
        *,
        on_message: Callable[[Any], None],
        connector: Connector = websocket_connector,
        clock: Clock | None = None,
        heartbeat: HeartbeatResponder | None = None,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 10,
        on_state_change: Callable[[ChannelState], None] | None = None,
        on_auth_failure: Callable[[], None] | None = None,
        name: str | None = None,
    ):
        self.url = url
        # Never log the raw URL: it may carry the token as a query param.
        self.name = name or url.split("?", 1)[0]
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts

        self.state = ChannelState.IDLE
        self.attempts = 0
        self.generation = 0
        self.error: Exception | None = None

        self._on_message = on_message
        self._connector = connector
        self._clock = clock or LoopClock()
        self._heartbeat = heartbeat or HeartbeatResponder()
        self._on_state_change = on_state_change
        self._on_auth_failure = on_auth_failure

        self._connection: Connection | None = None
        self._queue: deque[str] = deque()
        self._retry_handle: TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    # ==================== PUBLIC API ====================
    @property
    def is_open(self) -> bool:
        return self.state is ChannelState.OPEN and self._connection is not None

    @property
    def queued(self) -> int:
        return len(self._queue)

    def next_delay(self) -> float:
        """Backoff for the next retry: 1s, 2s, 4s, ... capped."""
        return min(self.base_delay * (2 ** self.attempts), self.max_delay)

    def start(self) -> None:
        if self.state in (ChannelState.CONNECTING, ChannelState.OPEN, ChannelState.CLOSED_WILL_RETRY):
            return
        if self.state is ChannelState.CLOSED_CIRCUIT_OPEN:
            logger.warning("Channel %s circuit is open; use reconnect()", self.name)
            return
        self._connect()

    def reconnect(self) -> None:
        """Manual recovery (also the way out of CLOSED_CIRCUIT_OPEN)."""
        self._cancel_retry()
        self.attempts = 0
        self.error = None
        old = self._connection
        self._connection = None
        self._connect()
        if old is not None:
            self._spawn(self._close_quietly(old))

    async def stop(self) -> None:
        # Invalidate every in-flight attempt before tearing anything down.
        self.generation += 1
        self._cancel_retry()
        old = self._connection
        self._connection = None
        self._set_state(ChannelState.IDLE)
        if old is not None:
            await self._close_quietly(old)
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def send(self, message: BaseModel | str) -> bool:
        """Send now if open (and nothing is waiting), otherwise queue for the next open."""
        data = message if isinstance(message, str) else encode(message)
        connection = self._connection
        if self.state is ChannelState.OPEN and connection is not None and not self._queue:
            try:
                await connection.send(data)
                return True
            except Exception as exc:
                # Closing ends the read loop; the reconnect that follows flushes the queue.
                logger.warning("Send on %s failed, queued and reconnecting: %s", self.name, exc)
                self._queue.append(data)
                self._spawn(self._close_quietly(connection))
                return False
        self._queue.append(data)
        return False

    # ==================== ATTEMPT LIFECYCLE ====================
    def _connect(self) -> None:
        self._retry_handle = None
        self.generation += 1
        generation = self.generation
        self._set_state(ChannelState.CONNECTING)
        logger.debug("Connecting %s (generation %s)", self.name, generation)
        self._spawn(self._run_attempt(generation))

    async def _run_attempt(self, generation: int) -> None:
        try:
            connection = await self._connector(self.url)
        except Exception as exc:
            logger.warning("Connect to %s failed: %s", self.name, exc)
            self._handle_close(generation, None, exc)
            return

        if not self._handle_open(generation, connection):
            await self._close_quietly(connection)
            return

        await self._flush_queue(generation, connection)

        error: Exception | None = None
        try:
            async for raw in connection:
                if generation != self.generation:
                    break
                await self._handle_raw(connection, raw)
        except Exception as exc:
            error = exc
        self._handle_close(generation, connection.close_code, error)

    def _handle_open(self, generation: int, connection: Connection) -> bool:
        if generation != self.generation:
            logger.debug(
                "Ignoring open from superseded attempt %s on %s (current %s)",
                generation,
                self.name,
                self.generation,
            )
            return False
        self._connection = connection
        self.attempts = 0
        self.error = None
        self._set_state(ChannelState.OPEN)
        logger.info("Connected to %s", self.name)
        return True

    async def _flush_queue(self, generation: int, connection: Connection) -> None:
        while self._queue and generation == self.generation:
            data = self._queue[0]
            try:
                await connection.send(data)
            except Exception as exc:
                logger.error("Failed to send queued message on %s: %s", self.name, exc)
                await self._close_quietly(connection)
                return
            self._queue.popleft()

    async def _handle_raw(self, connection: Connection, raw: Any) -> None:
        message = parse_inbound(raw)
        if message is None:
            return
        if await self._heartbeat.handle(message, connection):
            return
        try:
            self._on_message(message)
        except Exception as exc:
            logger.error("Message handler failed on %s: %s", self.name, exc, exc_info=True)

    def _handle_close(self, generation: int, code: int | None, error: Exception | None) -> None:
        if generation != self.generation:
            logger.debug("Ignoring close from superseded attempt %s on %s", generation, self.name)
            return
        self._connection = None

        if code in AUTH_CLOSE_CODES:
            self.error = AuthRequiredError(
                "STREAM",
                detail="auth_required",
                status_code=401 if code == 4401 else 403,
            )
            logger.error("Stream %s closed by server with auth code %s", self.name, code)
            if self._on_auth_failure is not None:
                self._on_auth_failure()
            self._set_state(ChannelState.CLOSED_CIRCUIT_OPEN)
            return

        # Circuit breaker: stop reconnecting after max attempts
        if self.attempts >= self.max_attempts:
            self.error = CircuitOpenError(self.name, self.attempts)
            logger.error("Max reconnect attempts reached for %s", self.name)
            self._set_state(ChannelState.CLOSED_CIRCUIT_OPEN)
            return

        delay = self.next_delay()
        self.attempts += 1
        if error is not None:
            logger.info("Disconnected from %s: %s", self.name, error)
        logger.info("Reconnecting %s in %.1fs (attempt %s)", self.name, delay, self.attempts)
        self._set_state(ChannelState.CLOSED_WILL_RETRY)
        self._retry_handle = self._clock.call_later(delay, self._connect)

    # ==================== HELPERS ====================
    def _set_state(self, state: ChannelState) -> None:
        if state is self.state:
            return
        self.state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception as exc:
                logger.error("State change callback failed on %s: %s", self.name, exc, exc_info=True)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _close_quietly(self, connection: Connection) -> None:
        try:
            await connection.close()
        except Exception as exc:
            logger.debug("Error closing connection on %s: %s", self.name, exc)
