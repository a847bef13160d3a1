"""
Calendar / Meeting Integration

Keeps calendar events and meeting records linked, and bridges them to the
phase transition engine through the event coordinator:

- Calendar events and GuideMeetingRecords are registered and linked
  (explicitly, or automatically when exactly one same-project candidate
  lies within a day)
- Completing a meeting on the calendar side feeds the engine's
  meeting-completed trigger
- Completed transitions update the phase shown on linked calendar events
- Calendar updates are re-emitted with the originating event id so the
  coordinator recognises them as echoes

Integration events are kept in an in-memory history for status reports.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import ConflictStrategy
from .event_coordinator import EventCoordinator, QueuedEvent, resolve_conflict
from .listener_bus import Listener, ListenerBus
from .phase_model import (
    GuideMeetingRecord,
    MeetingStatus,
    MeetingType,
    ProjectPhase,
    TransitionEvent,
    TransitionStatus,
    utcnow,
)
from .transition_engine import PhaseTransitionEngine

logger = logging.getLogger("calendar_integration")

AUTO_LINK_WINDOW_SECONDS = 24 * 60 * 60
MAX_HISTORY = 500


class IntegrationEventType(str, Enum):
    CALENDAR_CREATED = "calendar_created"
    MEETING_LINKED = "meeting_linked"
    MEETING_COMPLETED = "meeting_completed"
    PHASE_TRANSITION_TRIGGERED = "phase_transition_triggered"
    PHASE_TRANSITION_APPLIED = "phase_transition_applied"


@dataclass
class CalendarEvent:
    event_id: str
    project_id: str
    title: str
    date: datetime
    meeting_type: Optional[MeetingType] = None
    status: MeetingStatus = MeetingStatus.SCHEDULED
    meeting_record_id: Optional[str] = None
    phase: Optional[ProjectPhase] = None
    updated_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "project_id": self.project_id,
            "title": self.title,
            "date": self.date.isoformat(),
            "meeting_type": self.meeting_type.value if self.meeting_type else None,
            "status": self.status.value,
            "meeting_record_id": self.meeting_record_id,
            "phase": self.phase.value if self.phase else None,
            "updated_at": self.updated_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class IntegrationEvent:
    event_type: IntegrationEventType
    project_id: str
    calendar_event_id: Optional[str] = None
    meeting_record_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "project_id": self.project_id,
            "calendar_event_id": self.calendar_event_id,
            "meeting_record_id": self.meeting_record_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class CalendarMeetingIntegration:
    """
    Registry of calendar events, meeting records and their links.
    """

    def __init__(self, conflict_strategy: ConflictStrategy = ConflictStrategy.LATEST_WINS):
        self.conflict_strategy = conflict_strategy
        self._calendar_events: Dict[str, CalendarEvent] = {}
        self._meeting_records: Dict[str, GuideMeetingRecord] = {}
        self._history: List[IntegrationEvent] = []
        self._bus = ListenerBus("calendar_integration")

    def add_listener(self, listener: Listener) -> None:
        self._bus.add_listener(listener)

    def remove_listener(self, listener: Listener) -> bool:
        return self._bus.remove_listener(listener)

    def _record(self, event: IntegrationEvent) -> None:
        self._history.append(event)
        del self._history[:-MAX_HISTORY]

    # -------------------------------------------------------------------------
    # Registration & Linking
    # -------------------------------------------------------------------------

    def register_calendar_event(self, event: CalendarEvent) -> CalendarEvent:
        self._calendar_events[event.event_id] = event
        self._record(IntegrationEvent(
            event_type=IntegrationEventType.CALENDAR_CREATED,
            project_id=event.project_id,
            calendar_event_id=event.event_id,
            data={"title": event.title, "date": event.date.isoformat()},
        ))
        if event.meeting_record_id is None:
            record = self._auto_link_candidate(
                [r for r in self._meeting_records.values() if r.calendar_event_id is None],
                event.project_id, event.date, lambda r: r.date,
            )
            if record is not None:
                self.create_linkage(event.event_id, record.record_id)
        return event

    def register_meeting_record(self, record: GuideMeetingRecord) -> GuideMeetingRecord:
        self._meeting_records[record.record_id] = record
        if record.calendar_event_id and record.calendar_event_id in self._calendar_events:
            self.create_linkage(record.calendar_event_id, record.record_id)
        elif record.calendar_event_id is None:
            event = self._auto_link_candidate(
                [e for e in self._calendar_events.values() if e.meeting_record_id is None],
                record.project_id, record.date, lambda e: e.date,
            )
            if event is not None:
                self.create_linkage(event.event_id, record.record_id)
        return record

    @staticmethod
    def _auto_link_candidate(candidates, project_id: str, date: datetime, date_of):
        matches = [
            c for c in candidates
            if c.project_id == project_id
            and abs((date_of(c) - date).total_seconds()) <= AUTO_LINK_WINDOW_SECONDS
        ]
        return matches[0] if len(matches) == 1 else None

    def create_linkage(self, calendar_event_id: str, meeting_record_id: str) -> bool:
        event = self._calendar_events.get(calendar_event_id)
        record = self._meeting_records.get(meeting_record_id)
        if event is None or record is None:
            logger.warning(f"Cannot link {calendar_event_id} to {meeting_record_id}: unknown id")
            return False
        if event.project_id != record.project_id:
            logger.warning(f"Cannot link {calendar_event_id} to {meeting_record_id}: project mismatch")
            return False

        event.meeting_record_id = record.record_id
        record.calendar_event_id = event.event_id
        if event.meeting_type is None:
            event.meeting_type = record.meeting_type
        self._record(IntegrationEvent(
            event_type=IntegrationEventType.MEETING_LINKED,
            project_id=event.project_id,
            calendar_event_id=event.event_id,
            meeting_record_id=record.record_id,
        ))
        logger.info(f"Linked calendar event {event.event_id} to meeting record {record.record_id}")
        return True

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def find_calendar_event(self, calendar_event_id: str) -> Optional[CalendarEvent]:
        return self._calendar_events.get(calendar_event_id)

    def find_meeting_record(self, record_id: str) -> Optional[GuideMeetingRecord]:
        return self._meeting_records.get(record_id)

    def find_meeting_record_by_calendar_event(self, calendar_event_id: str) -> Optional[GuideMeetingRecord]:
        event = self._calendar_events.get(calendar_event_id)
        if event is None or event.meeting_record_id is None:
            return None
        return self._meeting_records.get(event.meeting_record_id)

    def find_calendar_event_by_meeting_record(self, record_id: str) -> Optional[CalendarEvent]:
        record = self._meeting_records.get(record_id)
        if record is None or record.calendar_event_id is None:
            return None
        return self._calendar_events.get(record.calendar_event_id)

    def calendar_events_for_project(self, project_id: str) -> List[CalendarEvent]:
        return [e for e in self._calendar_events.values() if e.project_id == project_id]

    # -------------------------------------------------------------------------
    # Calendar-side Actions
    # -------------------------------------------------------------------------

    async def complete_meeting(
        self,
        calendar_event_id: str,
        completed_by: str = "system",
        outcomes: Optional[List[str]] = None,
        next_steps: Optional[List[str]] = None,
    ) -> Optional[GuideMeetingRecord]:
        """
        Mark a linked meeting completed and announce it to listeners.

        Returns None when the calendar event has no linked meeting record.
        """
        event = self._calendar_events.get(calendar_event_id)
        record = self.find_meeting_record_by_calendar_event(calendar_event_id)
        if event is None or record is None:
            logger.warning(f"complete_meeting: no linked meeting for calendar event {calendar_event_id}")
            return None

        now = utcnow()
        event.status = MeetingStatus.COMPLETED
        event.updated_at = now
        event.metadata["phase_change_triggered"] = True
        record.status = MeetingStatus.COMPLETED
        if outcomes:
            record.outcomes.extend(outcomes)
        if next_steps:
            record.next_steps.extend(next_steps)

        self._record(IntegrationEvent(
            event_type=IntegrationEventType.MEETING_COMPLETED,
            project_id=record.project_id,
            calendar_event_id=calendar_event_id,
            meeting_record_id=record.record_id,
            data={"completed_by": completed_by},
        ))

        await self._bus.publish({
            "type": "meeting_completed",
            "payload": {
                "project_id": record.project_id,
                "calendar_event_id": calendar_event_id,
                "meeting_record_id": record.record_id,
                "meeting_type": record.meeting_type.value,
                "completed_by": completed_by,
                "completed_at": now.isoformat(),
            },
        })
        return record

    async def apply_phase_change(
        self,
        project_id: str,
        engine_view: Dict[str, Any],
        origin_event_id: Optional[str] = None,
    ) -> List[CalendarEvent]:
        """
        Show a project's new phase on its calendar events.

        engine_view carries at least "phase" and usually "updated_at"; the
        configured conflict strategy decides against each event's own view.
        """
        updated: List[CalendarEvent] = []
        for event in self.calendar_events_for_project(project_id):
            if event.status == MeetingStatus.CANCELLED:
                continue
            calendar_view = {
                "phase": event.phase.value if event.phase else None,
                "updated_at": event.updated_at.isoformat(),
            }
            resolved = resolve_conflict(engine_view, calendar_view, self.conflict_strategy)
            new_phase = ProjectPhase(resolved["phase"]) if resolved.get("phase") else None
            if new_phase is None or new_phase == event.phase:
                continue

            event.phase = new_phase
            event.updated_at = utcnow()
            updated.append(event)
            self._record(IntegrationEvent(
                event_type=IntegrationEventType.PHASE_TRANSITION_APPLIED,
                project_id=project_id,
                calendar_event_id=event.event_id,
                meeting_record_id=event.meeting_record_id,
                data={"phase": new_phase.value, "origin_event_id": origin_event_id},
            ))

        if updated:
            logger.info(f"Updated phase on {len(updated)} calendar event(s) for {project_id}")
            message: Dict[str, Any] = {
                "type": "calendar_event_updated",
                "payload": {
                    "project_id": project_id,
                    "calendar_event_ids": [e.event_id for e in updated],
                    "phase": updated[0].phase.value,
                },
            }
            if origin_event_id:
                message["event_id"] = origin_event_id
            await self._bus.publish(message)
        return updated

    async def update_calendar_phase(self, calendar_event_id: str, phase: ProjectPhase) -> bool:
        """Direct phase update for one calendar event."""
        event = self._calendar_events.get(calendar_event_id)
        if event is None:
            return False
        event.phase = phase
        event.updated_at = utcnow()
        self._record(IntegrationEvent(
            event_type=IntegrationEventType.PHASE_TRANSITION_APPLIED,
            project_id=event.project_id,
            calendar_event_id=calendar_event_id,
            meeting_record_id=event.meeting_record_id,
            data={"phase": phase.value},
        ))
        return True

    def record_transition_triggered(self, project_id: str, meeting_record_id: str, result: Optional[TransitionEvent]) -> None:
        self._record(IntegrationEvent(
            event_type=IntegrationEventType.PHASE_TRANSITION_TRIGGERED,
            project_id=project_id,
            meeting_record_id=meeting_record_id,
            data={
                "transition_id": result.event_id if result else None,
                "status": result.status.value if result else None,
            },
        ))

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_project_integration_status(self, project_id: str) -> Dict[str, Any]:
        events = self.calendar_events_for_project(project_id)
        records = [r for r in self._meeting_records.values() if r.project_id == project_id]
        linked = [e for e in events if e.meeting_record_id]
        return {
            "project_id": project_id,
            "calendar_events": len(events),
            "meeting_records": len(records),
            "linked": len(linked),
            "completed_meetings": sum(1 for r in records if r.status == MeetingStatus.COMPLETED),
            "integration_rate": round(len(linked) / len(events) * 100, 2) if events else 0.0,
        }

    def get_integration_history(self, project_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        events = [e for e in self._history if project_id is None or e.project_id == project_id]
        return [e.to_dict() for e in events[-limit:]]

    def export_state(self) -> Dict[str, Any]:
        return {
            "calendar_events": [e.to_dict() for e in self._calendar_events.values()],
            "meeting_records": [r.to_dict() for r in self._meeting_records.values()],
            "history": [e.to_dict() for e in self._history],
        }

    def reset(self) -> None:
        self._calendar_events.clear()
        self._meeting_records.clear()
        self._history.clear()


# -----------------------------------------------------------------------------
# Engine <-> Calendar Bridge
# -----------------------------------------------------------------------------

class PhaseCalendarBridge:
    """
    Wires the engine and the calendar integration through a coordinator.

    engine completed transition -> coordinator -> calendar phase update
    calendar meeting completed  -> coordinator -> engine meeting trigger
    """

    def __init__(
        self,
        engine: PhaseTransitionEngine,
        coordinator: EventCoordinator,
        integration: CalendarMeetingIntegration,
    ):
        self.engine = engine
        self.coordinator = coordinator
        self.integration = integration

    def attach(self) -> None:
        self.engine.add_listener(self._on_transition)
        self.integration.add_listener(self._on_calendar_message)
        self.coordinator.connect(
            engine_sink=self._deliver_to_engine,
            calendar_sink=self._deliver_to_calendar,
        )
        self.integration.conflict_strategy = self.coordinator.config.conflict_resolution

    def detach(self) -> None:
        self.engine.remove_listener(self._on_transition)
        self.integration.remove_listener(self._on_calendar_message)

    async def _on_transition(self, event: TransitionEvent) -> None:
        if event.status != TransitionStatus.COMPLETED:
            return
        await self.coordinator.handle_engine_event({
            "type": "phase_changed",
            "payload": {
                "project_id": event.project_id,
                "transition_id": event.event_id,
                "from_phase": event.from_phase.value,
                "phase": event.to_phase.value,
                "updated_at": event.completed_at.isoformat() if event.completed_at else None,
            },
        })

    async def _on_calendar_message(self, message: Dict[str, Any]) -> None:
        await self.coordinator.handle_calendar_event(message)

    async def _deliver_to_calendar(self, queued: QueuedEvent) -> None:
        if queued.event_type != "phase_changed":
            logger.debug(f"Calendar sink ignoring {queued.event_type}")
            return
        self.integration.conflict_strategy = self.coordinator.config.conflict_resolution
        await self.integration.apply_phase_change(
            queued.payload["project_id"],
            queued.payload,
            origin_event_id=queued.event_id,
        )

    async def _deliver_to_engine(self, queued: QueuedEvent) -> None:
        if queued.event_type != "meeting_completed":
            logger.debug(f"Engine sink ignoring {queued.event_type}")
            return
        record = self.integration.find_meeting_record(queued.payload["meeting_record_id"])
        if record is None:
            logger.warning(f"Meeting record {queued.payload['meeting_record_id']} no longer registered")
            return
        result = await self.engine.trigger_meeting_completed(
            record.project_id,
            record,
            queued.payload.get("completed_by", "system"),
        )
        self.integration.record_transition_triggered(record.project_id, record.record_id, result)
