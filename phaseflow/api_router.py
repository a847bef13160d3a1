"""
API Router for phase transitions

This module provides FastAPI routes for:
- Payment / meeting / manual transition triggers
- Approval workflow (list, approve, reject)
- Transition history and statistics
- Event coordinator stats and calendar meeting completion
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from .calendar_integration import CalendarMeetingIntegration
from .errors import NoApplicableRuleError, PhaseMismatchError, UnknownProjectError
from .event_coordinator import EventCoordinator
from .phase_model import GuideMeetingRecord, MeetingType, ProjectPhase, TransitionEvent
from .transition_engine import PhaseTransitionEngine

logger = logging.getLogger("api_router")


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------

class PaymentCompletedRequest(BaseModel):
    payment_id: Optional[str] = None
    amount: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MeetingCompletedRequest(BaseModel):
    record_id: str
    meeting_type: MeetingType
    date: datetime
    calendar_event_id: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    outcomes: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    actor_id: str = "system"


class ManualTransitionRequest(BaseModel):
    from_phase: ProjectPhase
    to_phase: ProjectPhase
    actor_id: str = Field(..., min_length=1)
    reason: str = ""


class ApproveRequest(BaseModel):
    approver_id: str = Field(..., min_length=1)


class RejectRequest(BaseModel):
    rejecter_id: str = Field(..., min_length=1)
    reason: str = ""


class CompleteMeetingRequest(BaseModel):
    completed_by: str = "system"
    outcomes: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)


def _event_response(event: Optional[TransitionEvent]) -> Dict[str, Any]:
    if event is None:
        return {"transition": None, "message": "No applicable transition"}
    return {"transition": event.to_dict()}


# -----------------------------------------------------------------------------
# Router Setup
# -----------------------------------------------------------------------------

def build_router(
    engine: PhaseTransitionEngine,
    coordinator: Optional[EventCoordinator] = None,
    integration: Optional[CalendarMeetingIntegration] = None,
) -> APIRouter:
    """Routes bound to explicit engine/coordinator instances."""
    router = APIRouter(prefix="/phase-transitions", tags=["Phase Transitions"])

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    @router.post("/projects/{project_id}/payment-completed")
    async def payment_completed(project_id: str, request: PaymentCompletedRequest):
        event = await engine.trigger_payment_completed(project_id, request.model_dump())
        return _event_response(event)

    @router.post("/projects/{project_id}/meeting-completed")
    async def meeting_completed(project_id: str, request: MeetingCompletedRequest):
        record = GuideMeetingRecord(
            record_id=request.record_id,
            project_id=project_id,
            meeting_type=request.meeting_type,
            date=request.date,
            calendar_event_id=request.calendar_event_id,
            attendees=request.attendees,
            outcomes=request.outcomes,
            next_steps=request.next_steps,
        )
        event = await engine.trigger_meeting_completed(project_id, record, request.actor_id)
        return _event_response(event)

    @router.post("/projects/{project_id}/transitions")
    async def manual_transition(project_id: str, request: ManualTransitionRequest):
        try:
            event = await engine.request_manual_transition(
                project_id,
                request.from_phase,
                request.to_phase,
                request.actor_id,
                request.reason,
            )
        except UnknownProjectError as e:
            raise HTTPException(status_code=404, detail=e.to_dict())
        except (NoApplicableRuleError, PhaseMismatchError) as e:
            raise HTTPException(status_code=409, detail=e.to_dict())
        return _event_response(event)

    @router.get("/projects/{project_id}/available")
    async def available_transitions(project_id: str):
        available = await engine.get_available_transitions(project_id)
        return {key: [r.to_dict() for r in rules] for key, rules in available.items()}

    # -------------------------------------------------------------------------
    # Approvals
    # -------------------------------------------------------------------------

    @router.get("/approvals/pending")
    async def pending_approvals():
        return {"approvals": [a.to_dict() for a in engine.get_pending_approval_requests()]}

    @router.post("/approvals/{approval_id}/approve")
    async def approve(approval_id: str, request: ApproveRequest):
        if not await engine.approve_transition(approval_id, request.approver_id):
            raise HTTPException(status_code=409, detail=f"Approval '{approval_id}' is not pending")
        approval = engine.get_approval_request(approval_id)
        return {"approval": approval.to_dict() if approval else None}

    @router.post("/approvals/{approval_id}/reject")
    async def reject(approval_id: str, request: RejectRequest):
        if not await engine.reject_transition(approval_id, request.rejecter_id, request.reason):
            raise HTTPException(status_code=409, detail=f"Approval '{approval_id}' is not pending")
        approval = engine.get_approval_request(approval_id)
        return {"approval": approval.to_dict() if approval else None}

    # -------------------------------------------------------------------------
    # History / Stats
    # -------------------------------------------------------------------------

    @router.get("/history")
    async def history(project_id: Optional[str] = Query(None), limit: int = Query(100, ge=1, le=1000)):
        events = engine.get_transition_history(project_id)
        return {"history": [e.to_dict() for e in events[-limit:]], "total": len(events)}

    @router.get("/statistics")
    async def statistics():
        return engine.get_statistics()

    if coordinator is not None:
        @router.get("/sync/stats")
        async def sync_stats():
            return coordinator.get_stats()

    if integration is not None:
        @router.post("/calendar/{calendar_event_id}/complete")
        async def complete_calendar_meeting(calendar_event_id: str, request: CompleteMeetingRequest):
            record = await integration.complete_meeting(
                calendar_event_id,
                completed_by=request.completed_by,
                outcomes=request.outcomes,
                next_steps=request.next_steps,
            )
            if record is None:
                raise HTTPException(
                    status_code=404,
                    detail=f"No linked meeting for calendar event '{calendar_event_id}'",
                )
            return {"meeting_record": record.to_dict()}

        @router.get("/calendar/projects/{project_id}/status")
        async def calendar_status(project_id: str):
            return integration.get_project_integration_status(project_id)

    return router
