"""WebSocket connection manager for real-time execution events."""

from fastapi import WebSocket, WebSocketDisconnect
from typing import Any, Dict, Iterable, Set
import logging
import json

logger = logging.getLogger(__name__)

ALL_CHANNELS = "*"


def event_channels(event: Any) -> list:
    """Channels an event is delivered to: its execution id, its batch id and "*"."""
    channels = [ALL_CHANNELS]
    for attr in ("execution_id", "batch_id"):
        value = getattr(event, attr, None)
        if value and value not in channels:
            channels.append(value)
    return channels


class ConnectionManager:
    """
    Manages active WebSocket subscribers for engine events.

    Subscribers are keyed by channel: an execution id, a batch id, or "*"
    for every event. Implements the EventSink interface, so it can be
    handed to an Executor or a BatchScheduler directly.
    """

    def __init__(self):
        """Initialize connection manager."""
        # Map of channel -> set of WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, channels: Iterable[str] = (ALL_CHANNELS,)) -> None:
        """
        Accept a WebSocket connection and subscribe it to channels.

        Args:
            websocket: WebSocket connection
            channels: Execution ids, batch ids, or "*"
        """
        await websocket.accept()
        for channel in channels:
            self.subscribe(websocket, channel)

        logger.info(f"WebSocket connected - channels: {list(channels)}")

    def subscribe(self, websocket: WebSocket, channel: str) -> None:
        self.active_connections.setdefault(channel, set()).add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        """
        Unsubscribe a WebSocket connection from every channel.

        Args:
            websocket: WebSocket connection
        """
        for channel in list(self.active_connections.keys()):
            self.active_connections[channel].discard(websocket)
            if not self.active_connections[channel]:
                del self.active_connections[channel]

        logger.info("WebSocket disconnected")

    async def send_to_channel(self, channel: str, message: dict) -> int:
        """
        Send message to every subscriber of a channel.

        Args:
            channel: Channel name
            message: Message to send (will be JSON encoded)

        Returns:
            Number of subscribers that received the message
        """
        return await self._send(self.active_connections.get(channel, set()), message)

    async def broadcast(self, message: dict) -> int:
        """
        Broadcast message to all connected clients.

        Args:
            message: Message to broadcast (will be JSON encoded)
        """
        connections: Set[WebSocket] = set()
        for subscribers in self.active_connections.values():
            connections |= subscribers
        return await self._send(connections, message)

    async def emit(self, event: Any) -> None:
        """Deliver an engine event to subscribers of its channels (each socket once)."""
        connections: Set[WebSocket] = set()
        for channel in event_channels(event):
            connections |= self.active_connections.get(channel, set())
        await self._send(connections, event.to_dict())

    async def _send(self, connections: Set[WebSocket], message: dict) -> int:
        if not connections:
            return 0

        message_str = json.dumps(message, default=str)
        disconnected = set()
        delivered = 0

        for connection in list(connections):
            try:
                await connection.send_text(message_str)
                delivered += 1
            except Exception as e:
                logger.error(f"Error sending message: {str(e)}")
                disconnected.add(connection)

        # Clean up disconnected connections
        for connection in disconnected:
            self.disconnect(connection)
        return delivered

    async def listen(self, websocket: WebSocket, channels: Iterable[str] = (ALL_CHANNELS,)) -> None:
        """
        Serve one WebSocket until the client goes away.

        Clients may send {"type": "ping"} (answered with pong) and
        {"type": "subscribe", "channel": "<id>"}.
        """
        channels = list(channels)
        await self.connect(websocket, channels)
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if msg.get("type") == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))
                elif msg.get("type") == "subscribe" and msg.get("channel"):
                    self.subscribe(websocket, str(msg["channel"]))
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(websocket)

    def subscriber_count(self, channel: str = None) -> int:
        if channel is not None:
            return len(self.active_connections.get(channel, set()))
        connections: Set[WebSocket] = set()
        for subscribers in self.active_connections.values():
            connections |= subscribers
        return len(connections)


# Global connection manager instance
manager = ConnectionManager()
