"""
WebSocket routes for real-time case notifications.
"""
from typing import List, Optional, Set

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from app.core.logging import logger
from app.services.notifications import alerts_channel, org_channel, user_channel
from app.services.websocket_manager import get_websocket_manager

router = APIRouter()

CHANNEL_NOT_ALLOWED = 4003


def allowed_channels(org_id: str, user_id: Optional[str]) -> Set[str]:
    channels = {org_channel(org_id), alerts_channel(org_id)}
    if user_id:
        channels.add(user_channel(user_id))
    return channels


def requested_channels(org_id: str, user_id: Optional[str], channels: Optional[str]) -> List[str]:
    """Comma-separated channel list; defaults to everything the caller may hear."""
    if channels:
        return [c.strip() for c in channels.split(",") if c.strip()]
    return sorted(allowed_channels(org_id, user_id))


@router.websocket("/notifications")
async def websocket_notifications(
    websocket: WebSocket,
    org_id: str = Query(...),
    channels: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
):
    """
    WebSocket endpoint for case notifications.

    Query params:
    - org_id: Organization of the caller
    - channels: comma-separated subset of org:{org_id}, alerts:{org_id}, user:{user_id}
    - user_id: Caller id, needed for the user channel

    Message types received:
    - connected: Subscription confirmation
    - case_created, case_accepted, case_declined, case_scheduled
    - emergency_escalation, decline_escalation
    """
    manager = get_websocket_manager()
    wanted = requested_channels(org_id, user_id, channels)

    refused = set(wanted) - allowed_channels(org_id, user_id)
    if refused or not wanted:
        logger.warning(f"Refused WebSocket subscription to {sorted(refused)} for org {org_id}")
        await websocket.close(code=CHANNEL_NOT_ALLOWED, reason="Channel not allowed")
        return

    try:
        await manager.connect(websocket, org_id, wanted, user_id)

        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})

    except WebSocketDisconnect:
        await manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await manager.disconnect(websocket)


@router.get("/notifications/status")
async def get_notification_status(org_id: Optional[str] = Query(default=None)):
    """Current subscriber counts per channel."""
    counts = get_websocket_manager().snapshot(org_id)
    return {
        "channels": counts,
        "total_subscriptions": sum(counts.values()),
    }
