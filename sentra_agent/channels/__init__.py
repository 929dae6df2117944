"""Chat transport."""

from sentra_agent.channels.sender import smart_send
from sentra_agent.channels.websocket import WebSocketClient

__all__ = ["WebSocketClient", "smart_send"]
