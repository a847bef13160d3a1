"""
Tests for calendar/meeting integration and the engine bridge.

Covers:
- Registration, explicit and automatic linking
- Meeting completion and phase display on calendar events
- Project integration status and history
- End-to-end: calendar meeting -> coordinator -> engine -> calendar,
  with the calendar echo suppressed
"""

from datetime import datetime, timedelta, timezone

import pytest

from phaseflow.calendar_integration import (
    CalendarEvent,
    CalendarMeetingIntegration,
    PhaseCalendarBridge,
)
from phaseflow.config import ConflictStrategy, CoordinatorConfig
from phaseflow.event_coordinator import EventCoordinator
from phaseflow.phase_model import MeetingStatus, MeetingType, ProjectPhase, TransitionStatus
from phaseflow.transition_engine import PhaseTransitionEngine

from tests.conftest import make_meeting

MEETING_DATE = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def calendar_event(event_id="cal-1", project_id="p3", date=MEETING_DATE, **kwargs):
    return CalendarEvent(event_id=event_id, project_id=project_id, title="Kickoff", date=date, **kwargs)


@pytest.fixture
def integration():
    return CalendarMeetingIntegration()


# -----------------------------------------------------------------------------
# Linking
# -----------------------------------------------------------------------------
class TestLinking:

    def test_auto_link_within_a_day(self, integration):
        integration.register_calendar_event(calendar_event())
        integration.register_meeting_record(
            make_meeting(project_id="p3", date=MEETING_DATE + timedelta(hours=2))
        )

        record = integration.find_meeting_record_by_calendar_event("cal-1")
        assert record is not None
        assert record.record_id == "mtg-1"
        assert integration.find_calendar_event_by_meeting_record("mtg-1").event_id == "cal-1"
        assert integration.find_calendar_event("cal-1").meeting_type == MeetingType.KICKOFF

    def test_no_auto_link_for_other_project_or_far_date(self, integration):
        integration.register_calendar_event(calendar_event())
        integration.register_meeting_record(make_meeting(record_id="m-other", project_id="p1"))
        integration.register_meeting_record(
            make_meeting(record_id="m-late", project_id="p3", date=MEETING_DATE + timedelta(days=3))
        )
        assert integration.find_meeting_record_by_calendar_event("cal-1") is None

    def test_no_auto_link_when_ambiguous(self, integration):
        integration.register_calendar_event(calendar_event("cal-1"))
        integration.register_calendar_event(calendar_event("cal-2", date=MEETING_DATE + timedelta(hours=1)))
        integration.register_meeting_record(make_meeting(project_id="p3"))
        assert integration.find_calendar_event_by_meeting_record("mtg-1") is None

    def test_explicit_link_from_record(self, integration):
        integration.register_calendar_event(calendar_event("cal-1"))
        integration.register_calendar_event(calendar_event("cal-2"))
        integration.register_meeting_record(make_meeting(project_id="p3", calendar_event_id="cal-2"))
        assert integration.find_meeting_record_by_calendar_event("cal-2").record_id == "mtg-1"

    def test_link_rejects_project_mismatch(self, integration):
        integration.register_calendar_event(calendar_event(project_id="p3"))
        integration.register_meeting_record(make_meeting(project_id="p1", date=MEETING_DATE + timedelta(days=5)))
        assert integration.create_linkage("cal-1", "mtg-1") is False
        assert integration.create_linkage("cal-404", "mtg-1") is False


# -----------------------------------------------------------------------------
# Calendar-side Actions
# -----------------------------------------------------------------------------
class TestCalendarActions:

    @pytest.mark.asyncio
    async def test_complete_meeting_publishes(self, integration):
        integration.register_calendar_event(calendar_event())
        integration.register_meeting_record(make_meeting(project_id="p3"))
        messages = []
        integration.add_listener(messages.append)

        record = await integration.complete_meeting("cal-1", "pm-1", outcomes=["scope agreed"])

        assert record.status == MeetingStatus.COMPLETED
        assert record.outcomes == ["scope agreed"]
        event = integration.find_calendar_event("cal-1")
        assert event.status == MeetingStatus.COMPLETED
        assert event.metadata["phase_change_triggered"] is True
        assert messages[0]["type"] == "meeting_completed"
        assert messages[0]["payload"]["meeting_record_id"] == "mtg-1"

    @pytest.mark.asyncio
    async def test_complete_unlinked_meeting(self, integration):
        integration.register_calendar_event(calendar_event())
        assert await integration.complete_meeting("cal-1") is None

    @pytest.mark.asyncio
    async def test_apply_phase_change_tags_origin(self, integration):
        integration.register_calendar_event(calendar_event("cal-1"))
        integration.register_calendar_event(calendar_event("cal-2", status=MeetingStatus.CANCELLED))
        messages = []
        integration.add_listener(messages.append)

        updated = await integration.apply_phase_change(
            "p3",
            {"phase": "kickoff_completed", "updated_at": (datetime.now(timezone.utc) + timedelta(seconds=5)).isoformat()},
            origin_event_id="evt-origin",
        )

        assert [e.event_id for e in updated] == ["cal-1"]
        assert integration.find_calendar_event("cal-1").phase == ProjectPhase.KICKOFF_COMPLETED
        assert integration.find_calendar_event("cal-2").phase is None
        assert messages[0]["event_id"] == "evt-origin"

    @pytest.mark.asyncio
    async def test_calendar_wins_keeps_calendar_phase(self):
        integration = CalendarMeetingIntegration(ConflictStrategy.CALENDAR_WINS)
        integration.register_calendar_event(calendar_event(phase=ProjectPhase.KICKOFF_SCHEDULED))

        updated = await integration.apply_phase_change("p3", {"phase": "kickoff_completed"})

        assert updated == []
        assert integration.find_calendar_event("cal-1").phase == ProjectPhase.KICKOFF_SCHEDULED

    @pytest.mark.asyncio
    async def test_update_calendar_phase(self, integration):
        integration.register_calendar_event(calendar_event())
        assert await integration.update_calendar_phase("cal-1", ProjectPhase.IN_PROGRESS) is True
        assert integration.find_calendar_event("cal-1").phase == ProjectPhase.IN_PROGRESS
        assert await integration.update_calendar_phase("cal-404", ProjectPhase.IN_PROGRESS) is False


# -----------------------------------------------------------------------------
# Reporting
# -----------------------------------------------------------------------------
class TestReporting:

    def test_integration_status(self, integration):
        integration.register_calendar_event(calendar_event("cal-1"))
        integration.register_meeting_record(make_meeting(project_id="p3"))
        integration.register_calendar_event(calendar_event("cal-2", date=MEETING_DATE + timedelta(days=7)))

        status = integration.get_project_integration_status("p3")

        assert status["calendar_events"] == 2
        assert status["linked"] == 1
        assert status["integration_rate"] == 50.0

    def test_history_and_export(self, integration):
        integration.register_calendar_event(calendar_event())
        integration.register_meeting_record(make_meeting(project_id="p3"))

        history = integration.get_integration_history("p3")
        assert [h["event_type"] for h in history] == ["calendar_created", "meeting_linked"]
        state = integration.export_state()
        assert len(state["calendar_events"]) == 1
        assert len(state["meeting_records"]) == 1

        integration.reset()
        assert integration.get_integration_history() == []


# -----------------------------------------------------------------------------
# Bridge
# -----------------------------------------------------------------------------
class TestPhaseCalendarBridge:

    @pytest.mark.asyncio
    async def test_meeting_completion_round_trip(self, project_store, integration):
        """Calendar completion moves the project; the calendar echo is skipped."""
        engine = PhaseTransitionEngine(project_store)
        coordinator = EventCoordinator(CoordinatorConfig(debounce_delay_ms=10))
        PhaseCalendarBridge(engine, coordinator, integration).attach()

        integration.register_calendar_event(calendar_event())
        integration.register_meeting_record(make_meeting(project_id="p3"))

        await integration.complete_meeting("cal-1", "pm-1")
        await coordinator.drain()

        assert (await project_store.get_project("p3")).phase == ProjectPhase.KICKOFF_COMPLETED
        history = engine.get_transition_history("p3")
        assert len(history) == 1
        assert history[0].status == TransitionStatus.COMPLETED
        assert history[0].trigger_data["calendar_event_id"] == "cal-1"
        assert integration.find_calendar_event("cal-1").phase == ProjectPhase.KICKOFF_COMPLETED

        stats = coordinator.get_stats()
        assert stats["processed"] == 2
        assert stats["skipped"] == 1
        assert stats["errors"] == 0
        assert stats["queue_size"] == 0

        event_types = [h["event_type"] for h in integration.get_integration_history("p3")]
        assert "phase_transition_triggered" in event_types
        assert "phase_transition_applied" in event_types
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_one_way_sync_blocks_calendar_side(self, project_store, integration):
        engine = PhaseTransitionEngine(project_store)
        coordinator = EventCoordinator(
            CoordinatorConfig(debounce_delay_ms=10, direction="engine_to_calendar")
        )
        PhaseCalendarBridge(engine, coordinator, integration).attach()
        integration.register_calendar_event(calendar_event())
        integration.register_meeting_record(make_meeting(project_id="p3"))

        await integration.complete_meeting("cal-1", "pm-1")
        await coordinator.drain()

        assert (await project_store.get_project("p3")).phase == ProjectPhase.KICKOFF_SCHEDULED
        assert coordinator.get_stats()["filtered"] == 1
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_engine_transition_reaches_calendar(self, project_store, integration):
        engine = PhaseTransitionEngine(project_store)
        coordinator = EventCoordinator(CoordinatorConfig(debounce_delay_ms=10))
        bridge = PhaseCalendarBridge(engine, coordinator, integration)
        bridge.attach()
        integration.register_calendar_event(calendar_event(event_id="cal-p1", project_id="p1"))

        await engine.request_manual_transition(
            "p1", ProjectPhase.KICKOFF_READY, ProjectPhase.PM_ASSIGNED, "u1"
        )
        await coordinator.drain()

        assert integration.find_calendar_event("cal-p1").phase == ProjectPhase.PM_ASSIGNED

        bridge.detach()
        await engine.request_manual_transition(
            "p1", ProjectPhase.PM_ASSIGNED, ProjectPhase.KICKOFF_SCHEDULED, "u1"
        )
        await coordinator.drain()
        assert integration.find_calendar_event("cal-p1").phase == ProjectPhase.PM_ASSIGNED
        await coordinator.close()
