"""
WebSocket subscriptions for real-time case notifications.

One socket may listen on several channels at once:
- 'org:{org_id}': every case event for an organization (managers' dashboards)
- 'user:{user_id}': events addressed to one requester or contractor
- 'alerts:{org_id}': emergencies and critical escalations
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from app.core.logging import get_logger
from app.db.records import utcnow

logger = get_logger(__name__)


@dataclass
class Subscriber:
    org_id: str
    channels: Set[str]
    user_id: Optional[str] = None
    connected_at: str = field(default_factory=lambda: utcnow().isoformat())


class ConnectionManager:
    """Tracks which sockets listen on which channels and publishes to them."""

    def __init__(self):
        self.subscriptions: Dict[str, Set[WebSocket]] = {}
        self.subscribers: Dict[WebSocket, Subscriber] = {}
        self._lock = asyncio.Lock()

    async def connect(
        self,
        websocket: WebSocket,
        org_id: str,
        channels: Iterable[str],
        user_id: Optional[str] = None,
    ):
        """Accept the socket and subscribe it to every requested channel."""
        await websocket.accept()
        subscriber = Subscriber(org_id=org_id, channels=set(channels), user_id=user_id)

        async with self._lock:
            self.subscribers[websocket] = subscriber
            for channel in subscriber.channels:
                self.subscriptions.setdefault(channel, set()).add(websocket)

        logger.info(f"WebSocket subscribed to {sorted(subscriber.channels)} (user: {user_id})")

        await websocket.send_json({
            "type": "connected",
            "channels": sorted(subscriber.channels),
            "timestamp": subscriber.connected_at,
        })

    async def disconnect(self, websocket: WebSocket):
        """Drop the socket from all of its channels."""
        async with self._lock:
            subscriber = self.subscribers.pop(websocket, None)
            if subscriber is None:
                return
            for channel in subscriber.channels:
                sockets = self.subscriptions.get(channel)
                if sockets is None:
                    continue
                sockets.discard(websocket)
                if not sockets:
                    del self.subscriptions[channel]

        logger.info(f"WebSocket unsubscribed from {sorted(subscriber.channels)}")

    async def publish(self, channel: str, message: Dict[str, Any]) -> int:
        """Send to every socket on the channel. Returns the number of deliveries."""
        sockets = list(self.subscriptions.get(channel, ()))
        if not sockets:
            return 0

        message.setdefault("timestamp", utcnow().isoformat())
        message["channel"] = channel

        delivered = 0
        dead: List[WebSocket] = []
        for websocket in sockets:
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping WebSocket on '{channel}' after failed send: {e}")
                dead.append(websocket)

        for websocket in dead:
            await self.disconnect(websocket)
        return delivered

    def channel_count(self, channel: str) -> int:
        return len(self.subscriptions.get(channel, ()))

    def snapshot(self, org_id: Optional[str] = None) -> Dict[str, int]:
        """Subscriber count per channel, optionally for one organization."""
        if org_id is None:
            return {channel: len(sockets) for channel, sockets in self.subscriptions.items()}
        counts: Dict[str, int] = {}
        for subscriber in self.subscribers.values():
            if subscriber.org_id != org_id:
                continue
            for channel in subscriber.channels:
                counts[channel] = counts.get(channel, 0) + 1
        return counts


_manager: Optional[ConnectionManager] = None


def get_websocket_manager() -> ConnectionManager:
    """Get or create the global connection manager."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager
