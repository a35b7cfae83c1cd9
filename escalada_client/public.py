# escalada_client/public.py
"""
Read-only public feed (spectator rankings), no authentication.

Stream: `WS /public/ws`
- PUBLIC_STATE_SNAPSHOT {boxes: [...]}      -> replace every box in the store
- BOX_STATUS/FLOW/RANKING_UPDATE {box: ...} -> replace that box
- PING                                     -> answered by the shared heartbeat responder

Fallback: while the stream is not OPEN, `GET /public/rankings` is polled every
`public_poll_interval_sec` (first poll immediately). Polling stops as soon as the stream
opens; on open the feed asks for a fresh snapshot with REQUEST_STATE.
"""

# -------------------- Standard library imports --------------------
import asyncio
import logging
from typing import Any, Coroutine, Optional

# -------------------- Third-party imports --------------------
import httpx
from pydantic import ValidationError

# -------------------- Local application imports --------------------
from escalada_client.commands.fetch import request_with_retry
from escalada_client.config import Settings, get_settings
from escalada_client.errors import EscaladaClientError
from escalada_client.messages import PublicBoxUpdate, PublicStateSnapshot, RequestStateMessage
from escalada_client.ranking import RankingRow, rank_box
from escalada_client.store import BoxStore
from escalada_client.transport import (
    ChannelState,
    Clock,
    Connector,
    HeartbeatResponder,
    LoopClock,
    TransportChannel,
    TimerHandle,
    websocket_connector,
)

logger = logging.getLogger(__name__)


class PublicFeed:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[BoxStore] = None,
        http: Optional[httpx.AsyncClient] = None,
        connector: Connector = websocket_connector,
        clock: Optional[Clock] = None,
        heartbeat: Optional[HeartbeatResponder] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or BoxStore()
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient()
        self._clock = clock or LoopClock()
        self.channel = TransportChannel(
            f"{self.settings.ws_base}/public/ws",
            on_message=self._on_message,
            connector=connector,
            clock=self._clock,
            heartbeat=heartbeat,
            base_delay=self.settings.reconnect_base_delay_sec,
            max_delay=self.settings.reconnect_max_delay_sec,
            max_attempts=self.settings.max_reconnect_attempts,
            on_state_change=self._on_state_change,
            name="public feed",
        )
        self.polling = False
        self.polls = 0
        self._poll_handle: Optional[TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False

    @property
    def rankings_url(self) -> str:
        return f"{self.settings.api_base}/public/rankings"

    # ==================== LIFECYCLE ====================
    def start(self) -> None:
        self._stopped = False
        self.channel.start()

    def reconnect(self) -> None:
        self._stopped = False
        self.channel.reconnect()

    async def close(self) -> None:
        self._stopped = True
        self._stop_polling()
        await self.channel.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> "PublicFeed":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ==================== STREAM ====================
    def _on_message(self, message: Any) -> None:
        if isinstance(message, PublicStateSnapshot):
            self.store.replace_all(message.boxes)
        elif isinstance(message, PublicBoxUpdate):
            self.store.apply_snapshot(message.box)
        else:
            logger.debug("Ignoring %s on public feed", getattr(message, "type", "?"))

    def _on_state_change(self, state: ChannelState) -> None:
        if self._stopped:
            return
        if state is ChannelState.OPEN:
            self._stop_polling()
            self._spawn(self.channel.send(RequestStateMessage()))
        elif state in (ChannelState.CLOSED_WILL_RETRY, ChannelState.CLOSED_CIRCUIT_OPEN):
            self._start_polling()

    # ==================== POLLING FALLBACK ====================
    def _start_polling(self) -> None:
        if self.polling:
            return
        logger.info("Public stream down, polling %s every %ss", self.rankings_url, self.settings.public_poll_interval_sec)
        self.polling = True
        self._tick()

    def _stop_polling(self) -> None:
        if not self.polling:
            return
        logger.info("Public stream open, polling stopped")
        self.polling = False
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None

    def _tick(self) -> None:
        self._poll_handle = None
        if not self.polling:
            return
        self._spawn(self.poll_once())
        self._poll_handle = self._clock.call_later(self.settings.public_poll_interval_sec, self._tick)

    async def poll_once(self) -> bool:
        """Fetch /public/rankings once; errors are logged and ignored."""
        self.polls += 1
        try:
            response = await request_with_retry(
                self.http,
                "GET",
                self.rankings_url,
                retries=1,
                timeout=self.settings.command_timeout_sec,
                command_type="PUBLIC_RANKINGS",
            )
        except EscaladaClientError as exc:
            logger.debug("Public rankings poll failed: %s", exc)
            return False
        if response.status_code != 200:
            logger.debug("Public rankings poll returned %s", response.status_code)
            return False
        try:
            snapshot = PublicStateSnapshot.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            logger.debug("Public rankings poll returned an invalid snapshot: %s", exc)
            return False
        # The stream may have opened while this request was in flight; it wins.
        if self.channel.state is ChannelState.OPEN:
            return False
        self.store.replace_all(snapshot.boxes)
        return True

    # ==================== RANKINGS ====================
    def rankings(self) -> dict[int, list[RankingRow]]:
        return {box_id: rank_box(box) for box_id, box in self.store.all().items()}

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
