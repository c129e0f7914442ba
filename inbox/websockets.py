from fastapi import WebSocket
from typing import Dict, Set
import logging
from .events import WSEventType

logger = logging.getLogger(__name__)

class ConnectionManager:
    def __init__(self):
        # user_id -> open sockets (one per device/tab)
        self.active_connections: Dict[int, Set[WebSocket]] = {}
        # channel name -> subscribed sockets
        self.subscriptions: Dict[str, Set[WebSocket]] = {}
        # socket -> channels, so a disconnect can clean up
        self.socket_channels: Dict[WebSocket, Set[str]] = {}

    async def connect(self, user_id: int, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.setdefault(user_id, set()).add(websocket)
        self.socket_channels.setdefault(websocket, set())
        logger.info(f"User {user_id} connected. Total connections for user: {len(self.active_connections[user_id])}")

    def disconnect(self, user_id: int, websocket: WebSocket):
        for channel in list(self.socket_channels.pop(websocket, set())):
            self._remove_subscriber(channel, websocket)

        if user_id in self.active_connections:
            self.active_connections[user_id].discard(websocket)
            logger.info(f"User {user_id} disconnected. Remaining connections: {len(self.active_connections[user_id])}")
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

    def subscribe(self, channel: str, websocket: WebSocket):
        self.subscriptions.setdefault(channel, set()).add(websocket)
        self.socket_channels.setdefault(websocket, set()).add(channel)

    def unsubscribe(self, channel: str, websocket: WebSocket):
        self._remove_subscriber(channel, websocket)
        if websocket in self.socket_channels:
            self.socket_channels[websocket].discard(channel)

    def _remove_subscriber(self, channel: str, websocket: WebSocket):
        if channel in self.subscriptions:
            self.subscriptions[channel].discard(websocket)
            if not self.subscriptions[channel]:
                del self.subscriptions[channel]

    def is_subscribed(self, channel: str, websocket: WebSocket) -> bool:
        return websocket in self.subscriptions.get(channel, set())

    def unsubscribe_user(self, channel: str, user_id: int):
        for websocket in list(self.active_connections.get(user_id, set())):
            self.unsubscribe(channel, websocket)

    async def dispatch(self, channel: str, message: dict) -> int:
        """Send ``message`` to every socket subscribed to ``channel``; returns how many got it."""
        # Copy so a failing socket can be dropped mid-iteration
        sockets = list(self.subscriptions.get(channel, set()))
        dead_sockets = []
        delivered = 0
        for connection in sockets:
            try:
                await connection.send_json({"channel": channel, **message})
                delivered += 1
            except Exception as e:
                logger.error(f"Failed to send on channel {channel}: {str(e)}")
                dead_sockets.append(connection)

        for connection in dead_sockets:
            self._drop_socket(connection)

        # The leaver still gets the event above, then loses the channel on every socket
        if message.get("type") == WSEventType.PARTICIPANT_LEFT:
            self.unsubscribe_user(channel, message["user_id"])
        return delivered

    def _drop_socket(self, websocket: WebSocket):
        for channel in list(self.socket_channels.pop(websocket, set())):
            self._remove_subscriber(channel, websocket)
        for user_id in list(self.active_connections.keys()):
            self.active_connections[user_id].discard(websocket)
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

manager = ConnectionManager()
