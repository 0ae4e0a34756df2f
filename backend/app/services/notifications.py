"""
Notification Dispatcher

Decides who hears about a case event and fans it out over the WebSocket
channels. Delivery is best effort: a failed send is logged and the pipeline
carries on.
"""
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from app.core.config import settings
from app.core.failure_policy import Operation, get_failure_policy
from app.core.logging import get_logger, log_audit_event
from app.db.records import Case, CasePriority, utcnow
from app.services.websocket_manager import ConnectionManager, get_websocket_manager

logger = get_logger(__name__)


class NotificationEvent(str, Enum):
    CASE_CREATED = "case_created"
    CASE_ACCEPTED = "case_accepted"
    CASE_DECLINED = "case_declined"
    CASE_SCHEDULED = "case_scheduled"
    EMERGENCY_ESCALATION = "emergency_escalation"
    DECLINE_ESCALATION = "decline_escalation"


# Events that also go to the organization's alert channel
ALERT_EVENTS = {NotificationEvent.EMERGENCY_ESCALATION, NotificationEvent.DECLINE_ESCALATION}


def org_channel(org_id: str) -> str:
    return f"org:{org_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def alerts_channel(org_id: str) -> str:
    return f"alerts:{org_id}"


@dataclass
class Notification:
    event: NotificationEvent
    org_id: str
    channels: List[str]
    payload: Dict[str, Any]
    case_id: Optional[str] = None
    conversation_id: Optional[str] = None
    delivered: int = 0
    failed: bool = False
    created_at: str = field(default_factory=lambda: utcnow().isoformat())


def _case_payload(case: Case) -> Dict[str, Any]:
    return {
        "title": case.title,
        "priority": case.priority.value,
        "status": case.status.value,
    }


class NotificationDispatcher:
    """Builds case notifications and hands them to the connection manager."""

    def __init__(self, manager: Optional[ConnectionManager] = None, history_size: Optional[int] = None):
        self.manager = manager or get_websocket_manager()
        # Most recent notifications only
        self.sent: Deque[Notification] = deque(maxlen=history_size or settings.NOTIFICATION_HISTORY_SIZE)

    async def case_created(self, case: Case) -> Notification:
        return await self.dispatch(
            NotificationEvent.CASE_CREATED,
            case.org_id,
            recipients=[case.reporter_id],
            case_id=case.id,
            needs_manual_assignment=case.needs_manual_assignment,
            recommended_contractor_ids=list(case.recommended_contractor_ids),
            duplicate_of_id=case.duplicate_of_id,
            **_case_payload(case),
        )

    async def emergency(
        self,
        org_id: str,
        requester_id: str,
        safety_flags: List[str],
        instructions: str,
        conversation_id: Optional[str] = None,
        case: Optional[Case] = None,
    ) -> Notification:
        """Raised as soon as triage records an immediate hazard, case or no case."""
        extra = _case_payload(case) if case is not None else {}
        return await self.dispatch(
            NotificationEvent.EMERGENCY_ESCALATION,
            org_id,
            recipients=[requester_id],
            case_id=case.id if case is not None else None,
            conversation_id=conversation_id,
            safety_flags=list(safety_flags),
            instructions=instructions,
            **extra,
        )

    async def case_accepted(self, case: Case, contractor_id: str) -> Notification:
        return await self.dispatch(
            NotificationEvent.CASE_ACCEPTED,
            case.org_id,
            recipients=[case.reporter_id, contractor_id],
            case_id=case.id,
            contractor_id=contractor_id,
            **_case_payload(case),
        )

    async def case_scheduled(self, case: Case, contractor_id: str, start: str, end: str) -> Notification:
        return await self.dispatch(
            NotificationEvent.CASE_SCHEDULED,
            case.org_id,
            recipients=[case.reporter_id, contractor_id],
            case_id=case.id,
            contractor_id=contractor_id,
            appointment_id=case.appointment_id,
            start=start,
            end=end,
            **_case_payload(case),
        )

    async def case_declined(self, case: Case, contractor_id: str, reason: str) -> Notification:
        """Critical declines escalate with the reason; others are informational."""
        event = (
            NotificationEvent.DECLINE_ESCALATION
            if case.priority == CasePriority.CRITICAL
            else NotificationEvent.CASE_DECLINED
        )
        return await self.dispatch(
            event,
            case.org_id,
            recipients=[contractor_id],
            case_id=case.id,
            contractor_id=contractor_id,
            reason=reason,
            **_case_payload(case),
        )

    async def dispatch(
        self,
        event: NotificationEvent,
        org_id: str,
        recipients: Optional[List[Optional[str]]] = None,
        case_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        **data: Any,
    ) -> Notification:
        channels = [org_channel(org_id)]
        if event in ALERT_EVENTS:
            channels.append(alerts_channel(org_id))
        for user_id in recipients or []:
            if user_id and user_channel(user_id) not in channels:
                channels.append(user_channel(user_id))

        payload = {"type": event.value, "org_id": org_id, **data}
        if case_id:
            payload["case_id"] = case_id
        if conversation_id:
            payload["conversation_id"] = conversation_id
        notification = Notification(
            event=event,
            org_id=org_id,
            channels=channels,
            payload=payload,
            case_id=case_id,
            conversation_id=conversation_id,
        )

        for channel in channels:
            try:
                notification.delivered += await self.manager.publish(channel, dict(payload))
            except Exception as e:
                notification.failed = True
                if not get_failure_policy().fails_open(Operation.NOTIFICATION_DELIVERY):
                    raise
                logger.error(f"Failed to deliver {event.value} on '{channel}': {e}")

        if event in ALERT_EVENTS:
            log_audit_event(
                event_type=event.value,
                actor_id="system",
                actor_type="system",
                details={
                    "org_id": org_id,
                    "case_id": case_id,
                    "conversation_id": conversation_id,
                    "channels": channels,
                },
            )

        self.sent.append(notification)
        logger.info(
            f"Notification {event.value} (case={case_id}): "
            f"{notification.delivered} deliveries over {len(channels)} channels"
        )
        return notification

    def events_for(self, case_id: str) -> List[NotificationEvent]:
        return [n.event for n in self.sent if n.case_id == case_id]


_notification_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get or create the notification dispatcher singleton."""
    global _notification_dispatcher
    if _notification_dispatcher is None:
        _notification_dispatcher = NotificationDispatcher()
    return _notification_dispatcher
