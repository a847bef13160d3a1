"""
Pytest configuration for phaseflow tests.

This module provides:
1. Project store / engine fixtures
2. Rule tables used by the scenario tests
3. A fake monotonic clock for window-based tests
"""

from datetime import datetime, timezone

import pytest

from phaseflow.phase_model import (
    GuideMeetingRecord,
    MeetingType,
    ProjectPhase,
    ProjectSnapshot,
    TransitionRule,
    TransitionTrigger,
)
from phaseflow.project_store import InMemoryProjectStore
from phaseflow.rule_registry import RuleRegistry
from phaseflow.transition_engine import PhaseTransitionEngine


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_meeting(record_id="mtg-1", project_id="p1", meeting_type=MeetingType.KICKOFF,
                 calendar_event_id=None, date=None) -> GuideMeetingRecord:
    return GuideMeetingRecord(
        record_id=record_id,
        project_id=project_id,
        meeting_type=meeting_type,
        date=date or datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
        calendar_event_id=calendar_event_id,
        attendees=["pm@example.com"],
    )


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def project_store():
    return InMemoryProjectStore([
        ProjectSnapshot(project_id="p1", phase=ProjectPhase.KICKOFF_READY, title="Website rebuild"),
        ProjectSnapshot(project_id="p2", phase=ProjectPhase.PAYMENT_PENDING, title="Brand refresh"),
        ProjectSnapshot(project_id="p3", phase=ProjectPhase.KICKOFF_SCHEDULED, title="Mobile app"),
    ])


@pytest.fixture
def auto_pm_rules():
    """Manual kickoff_ready -> pm_assigned applied immediately."""
    return RuleRegistry([
        TransitionRule(
            rule_id="assign-pm",
            from_phase=ProjectPhase.KICKOFF_READY,
            to_phase=ProjectPhase.PM_ASSIGNED,
            trigger=TransitionTrigger.MANUAL,
            auto_apply=True,
        ),
    ])


@pytest.fixture
def gated_pm_rules():
    """Manual kickoff_ready -> pm_assigned behind an approval."""
    return RuleRegistry([
        TransitionRule(
            rule_id="assign-pm",
            from_phase=ProjectPhase.KICKOFF_READY,
            to_phase=ProjectPhase.PM_ASSIGNED,
            trigger=TransitionTrigger.MANUAL,
            auto_apply=False,
            requires_approval=True,
        ),
    ])


@pytest.fixture
def engine(project_store):
    """Engine with the default rule table."""
    return PhaseTransitionEngine(project_store)
