"""
Notification Engine - Transition Notifications

This module turns transition status changes into notifications:
1. Templates per transition outcome (approval needed, completed, ...)
2. Routes notifications to registered channels (webhook, ...)
3. Logs every notification to a daily JSONL file
4. Plugs into the engine as a listener via as_listener()

IMPORTANT:
- All notifications are logged for audit
- Rate limiting is applied per recipient
- No payment details in notifications
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import NOTIFICATION_LOG_DIR
from .phase_model import TransitionEvent, TransitionStatus, utcnow

logger = logging.getLogger("notification_engine")

RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX = 10  # max notifications per window


class NotificationType(str, Enum):
    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_GRANTED = "approval_granted"
    TRANSITION_COMPLETED = "transition_completed"
    TRANSITION_REJECTED = "transition_rejected"
    TRANSITION_FAILED = "transition_failed"


class NotificationPriority(str, Enum):
    """Notification priority levels."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class Notification:
    """Represents a notification to be sent."""
    notification_type: NotificationType
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    project_id: Optional[str] = None
    transition_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    delivery_channel: Optional[str] = None
    delivery_error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "type": self.notification_type.value,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "project_id": self.project_id,
            "transition_id": self.transition_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "delivery_channel": self.delivery_channel,
            "delivery_error": self.delivery_error
        }


def _phases(event: TransitionEvent) -> str:
    return f"{event.from_phase.value} → {event.to_phase.value}"


class NotificationTemplates:
    """Pre-defined notification templates."""

    @staticmethod
    def approval_required(event: TransitionEvent) -> Notification:
        return Notification(
            notification_type=NotificationType.APPROVAL_REQUIRED,
            title="Approval Required",
            message=(
                f"*Approval Required*\n\n"
                f"*Project:* {event.project_id}\n"
                f"*Transition:* {_phases(event)}\n"
                f"*Requested by:* {event.triggered_by}"
            ),
            priority=NotificationPriority.HIGH,
            project_id=event.project_id,
            transition_id=event.event_id,
            metadata={"trigger": event.trigger.value, "rule_id": event.rule_id}
        )

    @staticmethod
    def approval_granted(event: TransitionEvent) -> Notification:
        return Notification(
            notification_type=NotificationType.APPROVAL_GRANTED,
            title="Approval Granted",
            message=(
                f"*Approval Granted*\n\n"
                f"*Project:* {event.project_id}\n"
                f"*Transition:* {_phases(event)}"
            ),
            priority=NotificationPriority.LOW,
            project_id=event.project_id,
            transition_id=event.event_id,
        )

    @staticmethod
    def transition_completed(event: TransitionEvent) -> Notification:
        return Notification(
            notification_type=NotificationType.TRANSITION_COMPLETED,
            title="Phase Changed",
            message=(
                f"*Phase Changed*\n\n"
                f"*Project:* {event.project_id}\n"
                f"*Transition:* {_phases(event)}\n"
                f"*Trigger:* {event.trigger.value}"
            ),
            priority=NotificationPriority.NORMAL,
            project_id=event.project_id,
            transition_id=event.event_id,
            metadata={"trigger": event.trigger.value}
        )

    @staticmethod
    def transition_rejected(event: TransitionEvent) -> Notification:
        return Notification(
            notification_type=NotificationType.TRANSITION_REJECTED,
            title="Transition Rejected",
            message=(
                f"*Transition Rejected*\n\n"
                f"*Project:* {event.project_id}\n"
                f"*Transition:* {_phases(event)}"
            ),
            priority=NotificationPriority.NORMAL,
            project_id=event.project_id,
            transition_id=event.event_id,
        )

    @staticmethod
    def transition_failed(event: TransitionEvent) -> Notification:
        return Notification(
            notification_type=NotificationType.TRANSITION_FAILED,
            title="Transition Failed",
            message=(
                f"*Transition Failed*\n\n"
                f"*Project:* {event.project_id}\n"
                f"*Transition:* {_phases(event)}\n"
                f"*Error:* {(event.error or 'unknown')[:200]}"
            ),
            priority=NotificationPriority.URGENT,
            project_id=event.project_id,
            transition_id=event.event_id,
        )

    @classmethod
    def for_event(cls, event: TransitionEvent) -> Optional[Notification]:
        """Template for a status change, or None when nothing is announced."""
        builders = {
            TransitionStatus.APPROVAL_REQUIRED: cls.approval_required,
            TransitionStatus.APPROVED: cls.approval_granted,
            TransitionStatus.COMPLETED: cls.transition_completed,
            TransitionStatus.REJECTED: cls.transition_rejected,
            TransitionStatus.FAILED: cls.transition_failed,
        }
        builder = builders.get(event.status)
        return builder(event) if builder else None


class NotificationEngine:
    """
    Central notification engine for transition events.

    Features:
    - Multiple delivery channels
    - Rate limiting per recipient
    - Delivery tracking and logging
    - Template-based notifications
    """

    def __init__(self, log_dir: Path = NOTIFICATION_LOG_DIR):
        self._log_dir = Path(log_dir)
        self._channels: Dict[str, Callable[[Notification], Awaitable[bool]]] = {}
        self._rate_limits: Dict[str, List[datetime]] = {}

    def register_channel(
        self,
        name: str,
        handler: Callable[[Notification], Awaitable[bool]]
    ):
        """Register a notification delivery channel."""
        self._channels[name] = handler
        logger.info(f"Registered notification channel: {name}")

    def _check_rate_limit(self, recipient: str) -> bool:
        """Check if recipient is within rate limit."""
        now = utcnow()
        window_start = now - timedelta(seconds=RATE_LIMIT_WINDOW)

        # Clean old entries
        self._rate_limits[recipient] = [
            t for t in self._rate_limits.get(recipient, [])
            if t > window_start
        ]

        if len(self._rate_limits[recipient]) >= RATE_LIMIT_MAX:
            return False

        self._rate_limits[recipient].append(now)
        return True

    def _log_file(self) -> Path:
        return self._log_dir / f"{utcnow().strftime('%Y-%m-%d')}.jsonl"

    def _log_notification(self, notification: Notification):
        """Log notification for audit."""
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            with open(self._log_file(), "a") as f:
                f.write(json.dumps(notification.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Failed to log notification: {e}")

    async def send(
        self,
        notification: Notification,
        channel: Optional[str] = None,
        recipient: str = "default"
    ) -> bool:
        """
        Send a notification through specified channel.

        Args:
            notification: The notification to send
            channel: Channel name (None = first channel that succeeds)
            recipient: Recipient identifier for rate limiting

        Returns:
            True if delivered successfully
        """
        if not self._check_rate_limit(recipient):
            logger.warning(f"Rate limit exceeded for {recipient}")
            notification.delivery_error = "Rate limit exceeded"
            self._log_notification(notification)
            return False

        channels = [channel] if channel else list(self._channels.keys())

        delivered = False
        for ch_name in channels:
            if ch_name not in self._channels:
                continue

            try:
                success = await self._channels[ch_name](notification)
                if success:
                    notification.delivered_at = utcnow()
                    notification.delivery_channel = ch_name
                    delivered = True
                    break
            except Exception as e:
                logger.error(f"Channel {ch_name} delivery failed: {e}")
                notification.delivery_error = str(e)

        self._log_notification(notification)
        return delivered

    async def send_batch(
        self,
        notifications: List[Notification],
        channel: Optional[str] = None
    ) -> Dict[str, int]:
        """
        Send multiple notifications.

        Returns:
            Dict with 'delivered' and 'failed' counts
        """
        delivered = 0
        failed = 0

        for notification in notifications:
            if await self.send(notification, channel, recipient=notification.project_id or "default"):
                delivered += 1
            else:
                failed += 1

        return {"delivered": delivered, "failed": failed}

    async def notify_transition(self, event: TransitionEvent) -> bool:
        notification = NotificationTemplates.for_event(event)
        if notification is None:
            return False
        return await self.send(notification, recipient=event.project_id)

    def as_listener(self) -> Callable[[TransitionEvent], Awaitable[bool]]:
        """Engine listener that announces every status change."""
        return self.notify_transition

    def get_recent_notifications(
        self,
        project_id: Optional[str] = None,
        limit: int = 50
    ) -> List[Dict]:
        """Get today's notifications from the log."""
        notifications = []
        log_file = self._log_file()

        if log_file.exists():
            with open(log_file, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        n = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if project_id is None or n.get("project_id") == project_id:
                        notifications.append(n)

        return notifications[-limit:]


def webhook_channel(
    url: str,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Callable[[Notification], Awaitable[bool]]:
    """Channel that POSTs the notification JSON to a webhook."""

    async def send(notification: Notification) -> bool:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            try:
                response = await client.post(url, json=notification.to_dict())
            except httpx.HTTPError as e:
                logger.error(f"Webhook send error: {e}")
                return False
        return 200 <= response.status_code < 300

    return send


def create_notification_engine(
    log_dir: Path = NOTIFICATION_LOG_DIR,
    webhook_url: Optional[str] = None,
) -> NotificationEngine:
    """Build an engine with the webhook channel when a URL is configured."""
    engine = NotificationEngine(log_dir=log_dir)
    webhook_url = webhook_url or os.getenv("PHASEFLOW_WEBHOOK_URL")
    if webhook_url:
        engine.register_channel("webhook", webhook_channel(webhook_url))
    return engine
