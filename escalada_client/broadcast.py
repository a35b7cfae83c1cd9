# escalada_client/broadcast.py
"""
In-process cross-surface bus (same semantics as the browser BroadcastChannel).

- One `BroadcastChannel` per surface per topic; `post()` reaches every *other* open
  channel on the topic, never the poster
- Receivers get a deep copy; delivery is scheduled with `loop.call_soon`, so order is
  FIFO within a topic (no ordering across topics)
- Nothing is persisted: a message posted with no other listener is gone
- A failing handler is logged and does not affect other receivers

Topics:
- escalada-state: {"type": "UPDATE_BOX_STATE", "boxId", "payload"} / {"type": "CLEAR_BOX_STATE", "boxId"}
- timer-cmd:      {"boxId", "action": "START_TIMER" | "STOP_TIMER" | "RESUME_TIMER", "ts"}
"""

# -------------------- Standard library imports --------------------
import asyncio
import copy
import logging
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

STATE_TOPIC = "escalada-state"
TIMER_TOPIC = "timer-cmd"

TIMER_ACTIONS = ("START_TIMER", "STOP_TIMER", "RESUME_TIMER")

BusHandler = Callable[[Dict[str, Any]], None]


class BroadcastChannel:
    def __init__(self, bus: "LocalBus", topic: str, handler: BusHandler):
        self.bus = bus
        self.topic = topic
        self._handler = handler
        self.closed = False

    def post(self, message: Dict[str, Any]) -> int:
        """Deliver to the other channels on this topic. Returns the number of receivers."""
        if self.closed:
            logger.debug("Post on closed channel %s dropped", self.topic)
            return 0
        return self.bus._deliver_from(self, message)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.bus._remove(self)

    def _receive(self, message: Dict[str, Any]) -> None:
        # Closed between scheduling and delivery
        if self.closed:
            return
        try:
            self._handler(message)
        except Exception as exc:
            logger.error("Bus handler error on %s: %s", self.topic, exc, exc_info=True)


class LocalBus:
    def __init__(self) -> None:
        self._channels: Dict[str, list[BroadcastChannel]] = {}

    def channel(self, topic: str, handler: BusHandler) -> BroadcastChannel:
        ch = BroadcastChannel(self, topic, handler)
        self._channels.setdefault(topic, []).append(ch)
        return ch

    def listeners(self, topic: str) -> int:
        return len(self._channels.get(topic, []))

    def _deliver_from(self, sender: BroadcastChannel, message: Dict[str, Any]) -> int:
        loop = asyncio.get_running_loop()
        receivers = [ch for ch in self._channels.get(sender.topic, []) if ch is not sender]
        for ch in receivers:
            loop.call_soon(ch._receive, copy.deepcopy(message))
        return len(receivers)

    def _remove(self, channel: BroadcastChannel) -> None:
        channels = self._channels.get(channel.topic, [])
        if channel in channels:
            channels.remove(channel)
        if not channels:
            self._channels.pop(channel.topic, None)


# ==================== MESSAGE BUILDERS ====================
def update_box_state(box_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "UPDATE_BOX_STATE", "boxId": box_id, "payload": payload}


def clear_box_state(box_id: int) -> Dict[str, Any]:
    return {"type": "CLEAR_BOX_STATE", "boxId": box_id}


def timer_command(box_id: int, action: str, ts: Optional[float] = None) -> Dict[str, Any]:
    if action not in TIMER_ACTIONS:
        raise ValueError(f"unknown timer action: {action}")
    return {
        "boxId": box_id,
        "action": action,
        "ts": int(ts if ts is not None else time.time() * 1000),
    }
