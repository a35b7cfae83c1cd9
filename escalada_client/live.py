# escalada_client/live.py
"""
One display surface (control panel, judge, contest screen) wired to the API.

Owns:
- a BoxStore (injectable; surfaces in the same process may share a LocalBus but never a store)
- one authenticated TransportChannel per watched box (`/ws/{boxId}?token=...`)
- a CommandDispatcher for `/cmd` + `/state/{boxId}`
- its endpoints on the `escalada-state` and `timer-cmd` bus topics

Write paths into the store:
- STATE_SNAPSHOT from a box stream          -> apply_snapshot (authoritative)
- SUBMIT_SCORE echo from a box stream       -> apply_score (score on the current route)
- PROGRESS_UPDATE / *_TIMER echoes          -> apply_echo
- timer action / state patch from this surface -> apply_optimistic + post to the bus
- timer action / state patch from the bus     -> apply_optimistic (mirrored)
"""

# -------------------- Standard library imports --------------------
import asyncio
import logging
from functools import partial
from typing import Any, Dict, Optional
from urllib.parse import quote

# -------------------- Third-party imports --------------------
import httpx

# -------------------- Local application imports --------------------
from escalada_client.broadcast import (
    STATE_TOPIC,
    TIMER_TOPIC,
    LocalBus,
    clear_box_state,
    timer_command,
    update_box_state,
)
from escalada_client.commands.dispatcher import CommandDispatcher, CommandResult
from escalada_client.commands.fetch import Sleep
from escalada_client.commands.session import AuthSession
from escalada_client.config import Settings, get_settings
from escalada_client.errors import CommandError
from escalada_client.messages import ProgressEcho, RequestStateMessage, ScoreEcho, StateSnapshot, TimerEcho
from escalada_client.ranking import RankingRow, rank_box
from escalada_client.store import BoxState, BoxStore
from escalada_client.transport import (
    ChannelState,
    Clock,
    Connector,
    HeartbeatResponder,
    TransportChannel,
    websocket_connector,
)

logger = logging.getLogger(__name__)

# Optimistic timer state per action (same mapping every surface applies).
TIMER_STATES = {
    "START_TIMER": "running",
    "STOP_TIMER": "paused",
    "RESUME_TIMER": "running",
}


def next_hold_count(box: BoxState, delta: float | None) -> float:
    """Hold count after a PROGRESS_UPDATE, computed the way the API does (clamped to the route)."""
    delta = delta or 1
    if delta == 1:
        count = float(int(box.hold_count) + 1)
    else:
        count = round(box.hold_count + delta, 1)
    if count < 0:
        count = 0.0
    if box.holds_count > 0 and count > box.holds_count:
        count = float(box.holds_count)
    return count


class LiveClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[BoxStore] = None,
        bus: Optional[LocalBus] = None,
        http: Optional[httpx.AsyncClient] = None,
        auth: Optional[AuthSession] = None,
        connector: Connector = websocket_connector,
        clock: Optional[Clock] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store or BoxStore()
        self.bus = bus or LocalBus()
        self.auth = auth or AuthSession.from_token(self.settings.auth_token)
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient()
        self.dispatcher = CommandDispatcher(
            self.store,
            self.http,
            api_base=self.settings.api_base,
            auth=self.auth,
            retries=self.settings.command_retries,
            timeout=self.settings.command_timeout_sec,
            base_delay=self.settings.retry_base_delay_sec,
            stale_recovery=self.settings.stale_recovery_commands,
            sleep=sleep,
        )
        self.heartbeat = HeartbeatResponder()
        self.channels: Dict[int, TransportChannel] = {}
        self._connector = connector
        self._clock = clock

        self._state_bus = self.bus.channel(STATE_TOPIC, self._on_state_bus)
        self._timer_bus = self.bus.channel(TIMER_TOPIC, self._on_timer_bus)

    async def __aenter__(self) -> "LiveClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ==================== STREAMS ====================
    def stream_url(self, box_id: int) -> str:
        url = f"{self.settings.ws_base}/ws/{box_id}"
        if self.auth.token:
            url = f"{url}?token={quote(self.auth.token, safe='')}"
        return url

    def watch(self, box_id: int) -> TransportChannel:
        """Open (or return) the authenticated stream for one box."""
        channel = self.channels.get(box_id)
        if channel is not None:
            return channel
        channel = TransportChannel(
            self.stream_url(box_id),
            on_message=partial(self._on_stream_message, box_id),
            connector=self._connector,
            clock=self._clock,
            heartbeat=self.heartbeat,
            base_delay=self.settings.reconnect_base_delay_sec,
            max_delay=self.settings.reconnect_max_delay_sec,
            max_attempts=self.settings.max_reconnect_attempts,
            on_state_change=partial(self._on_channel_state, box_id),
            on_auth_failure=self.auth.clear,
            name=f"box {box_id}",
        )
        self.channels[box_id] = channel
        channel.start()
        return channel

    def reconnect(self, box_id: int) -> TransportChannel:
        """Manual recovery for one box (picks up a token obtained since the last attempt)."""
        channel = self.channels.get(box_id)
        if channel is None:
            return self.watch(box_id)
        channel.url = self.stream_url(box_id)
        channel.reconnect()
        return channel

    async def unwatch(self, box_id: int) -> None:
        channel = self.channels.pop(box_id, None)
        if channel is not None:
            await channel.stop()

    async def request_state(self, box_id: int) -> bool:
        """Ask the box stream for a fresh snapshot (queued until the stream is open)."""
        channel = self.watch(box_id)
        return await channel.send(RequestStateMessage(boxId=box_id))

    def _on_stream_message(self, box_id: int, message: Any) -> None:
        if getattr(message, "boxId", None) != box_id:
            logger.debug("Ignoring %s for another box on box %s stream", getattr(message, "type", "?"), box_id)
            return
        if isinstance(message, StateSnapshot):
            self.store.apply_snapshot(message)
        elif isinstance(message, ScoreEcho):
            if message.competitor:
                self.store.apply_score(box_id, message.competitor, message.score, message.registeredTime)
        elif isinstance(message, ProgressEcho):
            box = self.store.get(box_id)
            if box is not None:
                self.store.apply_echo(box_id, {"holdCount": next_hold_count(box, message.delta)})
        elif isinstance(message, TimerEcho):
            self.store.apply_echo(box_id, {"timerState": TIMER_STATES[message.type]})
        else:
            logger.debug("Ignoring %s on box %s stream", getattr(message, "type", "?"), box_id)

    def _on_channel_state(self, box_id: int, state: ChannelState) -> None:
        if state is ChannelState.CLOSED_CIRCUIT_OPEN:
            channel = self.channels.get(box_id)
            error = channel.error if channel is not None else None
            logger.error("Box %s stream stopped: %s", box_id, error)
        else:
            logger.debug("Box %s stream is %s", box_id, state.value)

    # ==================== LOCAL STATE + BUS ====================
    def update_box_state(self, box_id: int, patch: Dict[str, Any]) -> None:
        """Optimistic local patch, mirrored to the other surfaces."""
        self.store.apply_optimistic(box_id, patch)
        self._state_bus.post(update_box_state(box_id, patch))

    def clear_box_state(self, box_id: int) -> None:
        self.store.forget(box_id)
        self._state_bus.post(clear_box_state(box_id))

    def _on_state_bus(self, message: Dict[str, Any]) -> None:
        box_id = message.get("boxId")
        if not isinstance(box_id, int) or isinstance(box_id, bool):
            return
        msg_type = message.get("type")
        if msg_type == "UPDATE_BOX_STATE":
            payload = message.get("payload")
            if isinstance(payload, dict):
                self.store.apply_optimistic(box_id, payload)
        elif msg_type == "CLEAR_BOX_STATE":
            self.store.forget(box_id)

    def _on_timer_bus(self, message: Dict[str, Any]) -> None:
        box_id = message.get("boxId")
        timer_state = TIMER_STATES.get(message.get("action"))
        if timer_state is None or not isinstance(box_id, int) or isinstance(box_id, bool):
            return
        self.store.apply_optimistic(box_id, {"timerState": timer_state})

    # ==================== TIMER ACTIONS ====================
    async def start_timer(self, box_id: int) -> CommandResult:
        return await self._timer_action(box_id, "START_TIMER")

    async def stop_timer(self, box_id: int) -> CommandResult:
        return await self._timer_action(box_id, "STOP_TIMER")

    async def resume_timer(self, box_id: int) -> CommandResult:
        return await self._timer_action(box_id, "RESUME_TIMER")

    async def _timer_action(self, box_id: int, action: str) -> CommandResult:
        # Local first so every surface flips instantly; the next snapshot settles it.
        self.store.apply_optimistic(box_id, {"timerState": TIMER_STATES[action]})
        self._timer_bus.post(timer_command(box_id, action))
        send = {
            "START_TIMER": self.dispatcher.start_timer,
            "STOP_TIMER": self.dispatcher.stop_timer,
            "RESUME_TIMER": self.dispatcher.resume_timer,
        }[action]
        try:
            return await send(box_id)
        except CommandError as exc:
            logger.warning("Timer action %s for box %s failed: %s", action, box_id, exc)
            raise

    # ==================== RANKINGS ====================
    def rankings(self, box_id: int) -> list[RankingRow]:
        box = self.store.get(box_id)
        return rank_box(box) if box is not None else []

    # ==================== LIFECYCLE ====================
    async def close(self) -> None:
        for box_id in list(self.channels):
            await self.unwatch(box_id)
        self._state_bus.close()
        self._timer_bus.close()
        if self._owns_http:
            await self.http.aclose()
