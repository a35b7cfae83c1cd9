"""Passive heartbeat: answer the server's PING immediately with a PONG echoing its timestamp."""

import logging

from escalada_client.messages import Ping, Pong, encode
from escalada_client.transport.connector import Connection

logger = logging.getLogger(__name__)


class HeartbeatResponder:
    """
    Shared by every stream (authenticated per-box and public).

    The server closes sockets that stop answering; the client never force-closes on
    missed pings, it only replies.
    """

    def __init__(self) -> None:
        self.replies = 0

    async def handle(self, message: object, connection: Connection) -> bool:
        """Reply if `message` is a PING. Returns True when the message was consumed."""
        if not isinstance(message, Ping):
            return False
        try:
            await connection.send(encode(Pong(timestamp=message.timestamp)))
            self.replies += 1
        except Exception as exc:
            logger.warning("Failed to send PONG: %s", exc)
        return True
