"""
Tests for transition notifications.
"""

from datetime import datetime, timezone

import httpx
import pytest
from unittest.mock import AsyncMock

from phaseflow.notification_engine import (
    RATE_LIMIT_MAX,
    NotificationEngine,
    NotificationPriority,
    NotificationTemplates,
    NotificationType,
    create_notification_engine,
    webhook_channel,
)
from phaseflow.phase_model import (
    ProjectPhase,
    TransitionEvent,
    TransitionStatus,
    TransitionTrigger,
)
from phaseflow.transition_engine import PhaseTransitionEngine


def transition(status=TransitionStatus.COMPLETED, error=None):
    return TransitionEvent(
        event_id="trn-1",
        project_id="p1",
        from_phase=ProjectPhase.KICKOFF_READY,
        to_phase=ProjectPhase.PM_ASSIGNED,
        trigger=TransitionTrigger.MANUAL,
        triggered_by="u1",
        rule_id="pm-assigned",
        status=status,
        created_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
        error=error,
    )


@pytest.fixture
def notifier(tmp_path):
    return NotificationEngine(log_dir=tmp_path)


class TestTemplates:

    def test_template_per_status(self):
        assert NotificationTemplates.for_event(transition()).notification_type == NotificationType.TRANSITION_COMPLETED
        approval = NotificationTemplates.for_event(transition(TransitionStatus.APPROVAL_REQUIRED))
        assert approval.priority == NotificationPriority.HIGH
        assert "kickoff_ready → pm_assigned" in approval.message

    def test_pending_has_no_template(self):
        assert NotificationTemplates.for_event(transition(TransitionStatus.PENDING)) is None

    def test_failed_includes_error(self):
        failed = NotificationTemplates.for_event(transition(TransitionStatus.FAILED, error="db down"))
        assert failed.priority == NotificationPriority.URGENT
        assert "db down" in failed.message


class TestDelivery:

    @pytest.mark.asyncio
    async def test_send_through_channel_and_log(self, notifier):
        channel = AsyncMock(return_value=True)
        notifier.register_channel("test", channel)

        delivered = await notifier.notify_transition(transition())

        assert delivered is True
        channel.assert_awaited_once()
        recent = notifier.get_recent_notifications(project_id="p1")
        assert recent[0]["delivery_channel"] == "test"
        assert recent[0]["transition_id"] == "trn-1"

    @pytest.mark.asyncio
    async def test_failing_channel_falls_through(self, notifier):
        notifier.register_channel("broken", AsyncMock(side_effect=RuntimeError("boom")))
        notifier.register_channel("backup", AsyncMock(return_value=True))

        assert await notifier.notify_transition(transition()) is True
        assert notifier.get_recent_notifications()[0]["delivery_channel"] == "backup"

    @pytest.mark.asyncio
    async def test_rate_limit(self, notifier):
        notifier.register_channel("test", AsyncMock(return_value=True))
        results = [await notifier.notify_transition(transition()) for _ in range(RATE_LIMIT_MAX + 1)]
        assert results[-1] is False
        assert notifier.get_recent_notifications()[-1]["delivery_error"] == "Rate limit exceeded"

    @pytest.mark.asyncio
    async def test_send_batch(self, notifier):
        notifier.register_channel("test", AsyncMock(side_effect=[True, False]))
        result = await notifier.send_batch([
            NotificationTemplates.transition_completed(transition()),
            NotificationTemplates.transition_rejected(transition(TransitionStatus.REJECTED)),
        ])
        assert result == {"delivered": 1, "failed": 1}

    @pytest.mark.asyncio
    async def test_engine_listener(self, notifier, project_store, gated_pm_rules):
        channel = AsyncMock(return_value=True)
        notifier.register_channel("test", channel)
        engine = PhaseTransitionEngine(project_store, gated_pm_rules)
        engine.add_listener(notifier.as_listener())

        await engine.request_manual_transition(
            "p1", ProjectPhase.KICKOFF_READY, ProjectPhase.PM_ASSIGNED, "u1"
        )

        sent = channel.await_args.args[0]
        assert sent.notification_type == NotificationType.APPROVAL_REQUIRED


class TestWebhookChannel:

    @pytest.mark.asyncio
    async def test_posts_json(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        send = webhook_channel("https://hooks.example.com/phase", transport=httpx.MockTransport(handler))
        assert await send(NotificationTemplates.transition_completed(transition())) is True
        assert received[0].url == "https://hooks.example.com/phase"
        assert b"transition_completed" in received[0].content

    @pytest.mark.asyncio
    async def test_error_status(self):
        send = webhook_channel(
            "https://hooks.example.com/phase",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        assert await send(NotificationTemplates.transition_completed(transition())) is False

    def test_factory_registers_webhook(self, tmp_path):
        engine = create_notification_engine(tmp_path, webhook_url="https://hooks.example.com/phase")
        assert "webhook" in engine._channels
