"""
Realtime broadcast over websockets.

Clients subscribe to a channel such as ``customer:12`` or ``merchant:3``;
emits go to every socket currently subscribed to that channel. Delivery is
fire-and-forget: sockets that fail to receive are dropped and logged.
"""
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect


logger = logging.getLogger(__name__)


class ConnectionManager:

    def __init__(self):
        self._channels: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, channel: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._channels[channel].add(websocket)
        logger.info(
            "Websocket subscribed. channel=%s subscribers=%s",
            channel,
            len(self._channels[channel]),
        )

    def disconnect(self, channel: str, websocket: WebSocket) -> None:
        subscribers = self._channels.get(channel)
        if not subscribers:
            return
        subscribers.discard(websocket)
        if not subscribers:
            del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def emit(self, channel: str, event_name: str, payload: dict[str, Any]) -> int:
        message = {
            "event": event_name,
            "channel": channel,
            "payload": payload,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }

        delivered = 0
        for websocket in list(self._channels.get(channel, ())):
            try:
                await websocket.send_json(message)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError):
                logger.warning(
                    "Dropping websocket after failed send. channel=%s event=%s",
                    channel,
                    event_name,
                )
                self.disconnect(channel, websocket)

        logger.debug(
            "Broadcast emitted. channel=%s event=%s delivered=%s",
            channel,
            event_name,
            delivered,
        )
        return delivered


connection_manager = ConnectionManager()
