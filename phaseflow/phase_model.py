"""
Phase Model - Project phases, triggers and transition records

Defines the vocabulary shared by the rule registry, the transition engine
and the calendar integration:

- ProjectPhase: totally ordered project lifecycle (forward-only)
- TransitionTrigger / MeetingType: what caused a transition
- TransitionRule: immutable rule table entry
- TransitionEvent / ApprovalRequest: engine-owned transition records
- GuideMeetingRecord / ProjectSnapshot: collaborator records

IMPORTANT:
- Phase order is LOCKED; the engine never moves a project backwards
- Records serialize with to_dict()/from_dict() for persistence
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class ProjectPhase(str, Enum):
    """
    Project lifecycle phases in declaration order.

    LOCKED: Do not reorder. Ordering drives forward-only validation.
    """
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETED = "payment_completed"
    PREPARATION = "preparation"
    KICKOFF_READY = "kickoff_ready"
    PM_ASSIGNED = "pm_assigned"
    KICKOFF_SCHEDULED = "kickoff_scheduled"
    KICKOFF_COMPLETED = "kickoff_completed"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    CLOSED = "closed"

    @property
    def order(self) -> int:
        return _PHASE_ORDER[self]

    @classmethod
    def is_forward(cls, from_phase: "ProjectPhase", to_phase: "ProjectPhase") -> bool:
        """True only when to_phase comes strictly after from_phase."""
        return to_phase.order > from_phase.order


_PHASE_ORDER: Dict[ProjectPhase, int] = {phase: idx for idx, phase in enumerate(ProjectPhase)}


class TransitionTrigger(str, Enum):
    """What caused a transition to be evaluated."""
    PAYMENT_COMPLETED = "payment_completed"
    MEETING_COMPLETED = "meeting_completed"
    MANUAL = "manual"
    SYSTEM = "system"


class MeetingType(str, Enum):
    """Meeting kinds that can filter meeting-completed rules."""
    PRE_MEETING = "pre_meeting"
    KICKOFF = "kickoff"
    GUIDE = "guide"
    REVIEW = "review"
    EXTERNAL = "external"


class TransitionStatus(str, Enum):
    """
    TransitionEvent status.

    pending -> completed | failed | approval_required
    approval_required -> approved -> completed | failed
    approval_required -> rejected
    """
    PENDING = "pending"
    APPROVAL_REQUIRED = "approval_required"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def terminal_statuses(cls) -> FrozenSet["TransitionStatus"]:
        return frozenset({cls.COMPLETED, cls.REJECTED, cls.FAILED})


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MeetingStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# -----------------------------------------------------------------------------
# Rules
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionRule:
    """
    Immutable rule table entry.

    A rule is approval-gated when it requires approval or does not auto-apply.
    """
    rule_id: str
    from_phase: ProjectPhase
    to_phase: ProjectPhase
    trigger: TransitionTrigger
    meeting_types: Optional[FrozenSet[MeetingType]] = None
    auto_apply: bool = True
    requires_approval: bool = False
    name: str = ""
    description: str = ""

    @property
    def approval_gated(self) -> bool:
        return self.requires_approval or not self.auto_apply

    def accepts_meeting_type(self, meeting_type: Optional[MeetingType]) -> bool:
        """A filtered rule only rejects a meeting type that is supplied and not listed."""
        if not self.meeting_types or meeting_type is None:
            return True
        return meeting_type in self.meeting_types

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "trigger": self.trigger.value,
            "meeting_types": sorted(m.value for m in self.meeting_types) if self.meeting_types else None,
            "auto_apply": self.auto_apply,
            "requires_approval": self.requires_approval,
            "name": self.name,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionRule":
        meeting_types = data.get("meeting_types")
        return cls(
            rule_id=data["rule_id"],
            from_phase=ProjectPhase(data["from_phase"]),
            to_phase=ProjectPhase(data["to_phase"]),
            trigger=TransitionTrigger(data["trigger"]),
            meeting_types=frozenset(MeetingType(m) for m in meeting_types) if meeting_types else None,
            auto_apply=bool(data.get("auto_apply", True)),
            requires_approval=bool(data.get("requires_approval", False)),
            name=data.get("name", ""),
            description=data.get("description", ""),
        )


# -----------------------------------------------------------------------------
# Transition Records
# -----------------------------------------------------------------------------

@dataclass
class TransitionEvent:
    """
    One evaluated transition for one project.

    Mutated only by the engine; listeners and accessors get copies.
    """
    event_id: str
    project_id: str
    from_phase: ProjectPhase
    to_phase: ProjectPhase
    trigger: TransitionTrigger
    triggered_by: str
    rule_id: str
    status: TransitionStatus = TransitionStatus.PENDING
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TransitionStatus.terminal_statuses()

    def snapshot(self) -> "TransitionEvent":
        return replace(self, trigger_data=dict(self.trigger_data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "project_id": self.project_id,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "trigger": self.trigger.value,
            "triggered_by": self.triggered_by,
            "rule_id": self.rule_id,
            "status": self.status.value,
            "trigger_data": self.trigger_data,
            "created_at": self.created_at.isoformat(),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionEvent":
        return cls(
            event_id=data["event_id"],
            project_id=data["project_id"],
            from_phase=ProjectPhase(data["from_phase"]),
            to_phase=ProjectPhase(data["to_phase"]),
            trigger=TransitionTrigger(data["trigger"]),
            triggered_by=data.get("triggered_by", "system"),
            rule_id=data.get("rule_id", ""),
            status=TransitionStatus(data.get("status", "pending")),
            trigger_data=data.get("trigger_data", {}),
            created_at=datetime.fromisoformat(data["created_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
            error=data.get("error"),
        )


@dataclass
class ApprovalRequest:
    """Human gate in front of one TransitionEvent."""
    approval_id: str
    transition_event: TransitionEvent
    requested_by: str
    requested_at: datetime
    reason: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    def snapshot(self) -> "ApprovalRequest":
        return replace(self, transition_event=self.transition_event.snapshot())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "transition_event": self.transition_event.to_dict(),
            "requested_by": self.requested_by,
            "requested_at": self.requested_at.isoformat(),
            "reason": self.reason,
            "status": self.status.value,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRequest":
        return cls(
            approval_id=data["approval_id"],
            transition_event=TransitionEvent.from_dict(data["transition_event"]),
            requested_by=data.get("requested_by", "system"),
            requested_at=datetime.fromisoformat(data["requested_at"]),
            reason=data.get("reason", ""),
            status=ApprovalStatus(data.get("status", "pending")),
            approved_by=data.get("approved_by"),
            approved_at=_parse_dt(data.get("approved_at")),
            rejected_by=data.get("rejected_by"),
            rejected_at=_parse_dt(data.get("rejected_at")),
            rejection_reason=data.get("rejection_reason"),
        )


# -----------------------------------------------------------------------------
# Collaborator Records
# -----------------------------------------------------------------------------

@dataclass
class GuideMeetingRecord:
    """A completed (or scheduled) meeting that can trigger a transition."""
    record_id: str
    project_id: str
    meeting_type: MeetingType
    date: datetime
    calendar_event_id: Optional[str] = None
    title: str = ""
    attendees: List[str] = field(default_factory=list)
    outcomes: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)
    status: MeetingStatus = MeetingStatus.SCHEDULED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "project_id": self.project_id,
            "meeting_type": self.meeting_type.value,
            "date": self.date.isoformat(),
            "calendar_event_id": self.calendar_event_id,
            "title": self.title,
            "attendees": list(self.attendees),
            "outcomes": list(self.outcomes),
            "next_steps": list(self.next_steps),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuideMeetingRecord":
        return cls(
            record_id=data["record_id"],
            project_id=data["project_id"],
            meeting_type=MeetingType(data["meeting_type"]),
            date=datetime.fromisoformat(data["date"]),
            calendar_event_id=data.get("calendar_event_id"),
            title=data.get("title", ""),
            attendees=data.get("attendees", []),
            outcomes=data.get("outcomes", []),
            next_steps=data.get("next_steps", []),
            status=MeetingStatus(data.get("status", "scheduled")),
        )


@dataclass
class ProjectSnapshot:
    """Read-only view of a project as seen by the engine."""
    project_id: str
    phase: ProjectPhase
    title: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "phase": self.phase.value,
            "title": self.title,
            "metadata": self.metadata,
        }
