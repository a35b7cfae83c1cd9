from .channel import AUTH_CLOSE_CODES, ChannelState, TransportChannel
from .clock import Clock, LoopClock, TimerHandle
from .connector import Connection, Connector, websocket_connector
from .heartbeat import HeartbeatResponder

__all__ = [
    "AUTH_CLOSE_CODES",
    "ChannelState",
    "Clock",
    "Connection",
    "Connector",
    "HeartbeatResponder",
    "LoopClock",
    "TimerHandle",
    "TransportChannel",
    "websocket_connector",
]
