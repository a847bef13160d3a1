"""
Phase Transition Engine - Rule-driven project phase state machine

This module moves projects through their ProjectPhase lifecycle:
1. Accepts triggers (payment completed, meeting completed, manual request)
2. Consults the RuleRegistry for exactly one applicable rule
3. Applies the transition immediately or opens an ApprovalRequest
4. Records terminal TransitionEvents in an append-only history
5. Publishes every status change on the listener bus

Failure policy:
- Automatic triggers return None for a missing project or rule
- The manual path raises UnknownProjectError / NoApplicableRuleError
- A failing phase update marks the event FAILED; it is never retried

IMPORTANT:
- Approve/reject are compare-and-swap under the engine lock
- At most one resolution per ApprovalRequest
- Phase updates are serialized; a project never moves backwards
"""

import asyncio
import logging
import uuid
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    NoApplicableRuleError,
    PhaseMismatchError,
    TransitionApplyError,
    UnknownProjectError,
)
from .listener_bus import Listener, ListenerBus
from .phase_model import (
    ApprovalRequest,
    ApprovalStatus,
    GuideMeetingRecord,
    ProjectPhase,
    ProjectSnapshot,
    TransitionEvent,
    TransitionRule,
    TransitionStatus,
    TransitionTrigger,
    utcnow,
)
from .project_store import ProjectStore
from .rule_registry import RuleRegistry
from .transition_store import InMemoryTransitionStore, TransitionStore

logger = logging.getLogger("transition_engine")

ENGINE_VERSION = "1.0.0"

def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class PhaseTransitionEngine:
    """
    Explicit engine instance; construct one per project store.

    Dependencies are injected so several engines can run side by side and
    tests stay in memory.
    """

    def __init__(
        self,
        project_store: ProjectStore,
        rule_registry: Optional[RuleRegistry] = None,
        store: Optional[TransitionStore] = None,
        clock: Callable[[], Any] = utcnow,
    ):
        self._projects = project_store
        self._rules = rule_registry or RuleRegistry()
        self._store = store or InMemoryTransitionStore()
        self._clock = clock

        self._lock = asyncio.Lock()
        self._apply_lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._bus = ListenerBus("transition_engine")

        self._pending: Dict[str, TransitionEvent] = {}
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._history: List[TransitionEvent] = []

    @property
    def rule_registry(self) -> RuleRegistry:
        return self._rules

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._bus.add_listener(listener)

    def remove_listener(self, listener: Listener) -> bool:
        return self._bus.remove_listener(listener)

    async def _emit(self, event: TransitionEvent) -> None:
        await self._bus.publish(event.snapshot())

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    async def trigger_payment_completed(
        self,
        project_id: str,
        payment_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[TransitionEvent]:
        """Payment confirmation from billing. None when nothing applies."""
        return await self._trigger_automatic(
            project_id=project_id,
            trigger=TransitionTrigger.PAYMENT_COMPLETED,
            actor_id="system",
            trigger_data=dict(payment_data or {}),
        )

    async def trigger_meeting_completed(
        self,
        project_id: str,
        meeting_record: GuideMeetingRecord,
        actor_id: str = "system",
    ) -> Optional[TransitionEvent]:
        """Meeting completion; the meeting type filters candidate rules."""
        trigger_data = {
            "meeting_record_id": meeting_record.record_id,
            "meeting_type": meeting_record.meeting_type.value,
            "meeting_date": meeting_record.date.isoformat(),
        }
        if meeting_record.calendar_event_id:
            trigger_data["calendar_event_id"] = meeting_record.calendar_event_id

        return await self._trigger_automatic(
            project_id=project_id,
            trigger=TransitionTrigger.MEETING_COMPLETED,
            actor_id=actor_id,
            trigger_data=trigger_data,
            meeting_type=meeting_record.meeting_type,
        )

    async def trigger_system_transition(
        self,
        project_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[TransitionEvent]:
        return await self._trigger_automatic(
            project_id=project_id,
            trigger=TransitionTrigger.SYSTEM,
            actor_id="system",
            trigger_data=dict(trigger_data or {}),
        )

    async def request_manual_transition(
        self,
        project_id: str,
        from_phase: ProjectPhase,
        to_phase: ProjectPhase,
        actor_id: str,
        reason: str = "",
    ) -> TransitionEvent:
        """
        Operator-initiated transition.

        Raises:
            UnknownProjectError: project lookup failed
            NoApplicableRuleError: no single manual rule for from -> to
            PhaseMismatchError: project is no longer in from_phase
        """
        project = await self._projects.get_project(project_id)
        if project is None:
            raise UnknownProjectError(project_id)

        rule = self._rules.find_rule(from_phase, to_phase, TransitionTrigger.MANUAL)
        if rule is None:
            raise NoApplicableRuleError(from_phase.value, to_phase.value, TransitionTrigger.MANUAL.value)

        if project.phase != from_phase:
            raise PhaseMismatchError(project_id, from_phase.value, project.phase.value)

        event = self._new_event(project, rule, TransitionTrigger.MANUAL, actor_id, {"reason": reason})
        return await self._process(event, rule, requested_by=actor_id, reason=reason)

    async def _trigger_automatic(
        self,
        project_id: str,
        trigger: TransitionTrigger,
        actor_id: str,
        trigger_data: Dict[str, Any],
        meeting_type=None,
    ) -> Optional[TransitionEvent]:
        project = await self._projects.get_project(project_id)
        if project is None:
            logger.warning(f"{trigger.value}: project {project_id} not found, ignoring")
            return None

        rule = self._rules.find_rule_for_trigger(project.phase, trigger, meeting_type)
        if rule is None:
            logger.info(
                f"{trigger.value}: no rule for project {project_id} in phase {project.phase.value}"
            )
            return None

        event = self._new_event(project, rule, trigger, actor_id, trigger_data)
        return await self._process(event, rule, requested_by=actor_id, reason=rule.name)

    def _new_event(
        self,
        project: ProjectSnapshot,
        rule: TransitionRule,
        trigger: TransitionTrigger,
        actor_id: str,
        trigger_data: Dict[str, Any],
    ) -> TransitionEvent:
        return TransitionEvent(
            event_id=_new_id("trn"),
            project_id=project.project_id,
            from_phase=project.phase,
            to_phase=rule.to_phase,
            trigger=trigger,
            triggered_by=actor_id,
            rule_id=rule.rule_id,
            trigger_data=trigger_data,
            created_at=self._clock(),
        )

    async def _process(
        self,
        event: TransitionEvent,
        rule: TransitionRule,
        requested_by: str,
        reason: str,
    ) -> TransitionEvent:
        if rule.approval_gated:
            return await self._request_approval(event, requested_by, reason)
        return await self._apply_transition(event)

    # -------------------------------------------------------------------------
    # Approval Workflow
    # -------------------------------------------------------------------------

    async def _request_approval(
        self,
        event: TransitionEvent,
        requested_by: str,
        reason: str,
    ) -> TransitionEvent:
        approval = ApprovalRequest(
            approval_id=_new_id("apr"),
            transition_event=event,
            requested_by=requested_by,
            requested_at=self._clock(),
            reason=reason,
        )

        async with self._lock:
            event.status = TransitionStatus.APPROVAL_REQUIRED
            self._pending[event.event_id] = event
            self._approvals[approval.approval_id] = approval
            result = event.snapshot()

        logger.info(
            f"Approval {approval.approval_id} required for {event.project_id}: "
            f"{event.from_phase.value} -> {event.to_phase.value}"
        )
        await self._persist()
        await self._emit(event)
        return result

    async def approve_transition(self, approval_id: str, approver_id: str) -> bool:
        """
        Approve a pending request and apply its transition.

        Returns False for unknown or already-resolved requests.
        """
        async with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None or approval.status != ApprovalStatus.PENDING:
                logger.warning(f"Approve ignored: {approval_id} is not pending")
                return False

            approval.status = ApprovalStatus.APPROVED
            approval.approved_by = approver_id
            approval.approved_at = self._clock()
            event = approval.transition_event
            event.status = TransitionStatus.APPROVED

        logger.info(f"Approval {approval_id} granted by {approver_id}")
        await self._emit(event)
        await self._apply_transition(event)
        return True

    async def reject_transition(self, approval_id: str, rejecter_id: str, reason: str = "") -> bool:
        """
        Reject a pending request.

        Returns False for unknown or already-resolved requests.
        """
        async with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None or approval.status != ApprovalStatus.PENDING:
                logger.warning(f"Reject ignored: {approval_id} is not pending")
                return False

            now = self._clock()
            approval.status = ApprovalStatus.REJECTED
            approval.rejected_by = rejecter_id
            approval.rejected_at = now
            approval.rejection_reason = reason

            event = approval.transition_event
            event.status = TransitionStatus.REJECTED
            event.completed_at = now
            self._pending.pop(event.event_id, None)
            self._history.append(event.snapshot())

        logger.info(f"Approval {approval_id} rejected by {rejecter_id}: {reason}")
        await self._persist()
        await self._emit(event)
        return True

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    async def _apply_transition(self, event: TransitionEvent) -> TransitionEvent:
        """Ask the project store to move the project; record the outcome."""
        try:
            async with self._apply_lock:
                project = await self._projects.get_project(event.project_id)
                if project is None:
                    raise TransitionApplyError(event.event_id, "project no longer exists")
                if project.phase != event.from_phase:
                    raise TransitionApplyError(
                        event.event_id, f"project is now in phase {project.phase.value}"
                    )
                await self._projects.update_phase(event.project_id, event.to_phase)
        except Exception as e:
            return await self._finish(event, TransitionStatus.FAILED, error=str(e))

        return await self._finish(event, TransitionStatus.COMPLETED)

    async def _finish(
        self,
        event: TransitionEvent,
        status: TransitionStatus,
        error: Optional[str] = None,
    ) -> TransitionEvent:
        async with self._lock:
            if event.is_terminal:
                logger.warning(
                    f"Transition {event.event_id} already {event.status.value}, ignoring {status.value}"
                )
                return event.snapshot()
            event.status = status
            event.completed_at = self._clock()
            event.error = error
            self._pending.pop(event.event_id, None)
            self._history.append(event.snapshot())
            result = event.snapshot()

        if status == TransitionStatus.FAILED:
            logger.error(f"Transition {event.event_id} for {event.project_id} failed: {error}")
        else:
            logger.info(
                f"Project {event.project_id}: {event.from_phase.value} -> {event.to_phase.value} "
                f"(trigger: {event.trigger.value}, by: {event.triggered_by})"
            )

        await self._persist()
        await self._emit(event)
        return result

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_available_transitions(self, project_id: str) -> Dict[str, List[TransitionRule]]:
        """Rules leaving the project's current phase, split by auto_apply."""
        available: Dict[str, List[TransitionRule]] = {"automatic": [], "manual": []}
        project = await self._projects.get_project(project_id)
        if project is None:
            return available

        for rule in self._rules.rules_from(project.phase):
            available["automatic" if rule.auto_apply else "manual"].append(rule)
        return available

    def get_pending_approval_requests(self) -> List[ApprovalRequest]:
        return [
            a.snapshot() for a in self._approvals.values()
            if a.status == ApprovalStatus.PENDING
        ]

    def get_approval_request(self, approval_id: str) -> Optional[ApprovalRequest]:
        approval = self._approvals.get(approval_id)
        return approval.snapshot() if approval else None

    def find_approval_for_event(self, event_id: str) -> Optional[ApprovalRequest]:
        for approval in self._approvals.values():
            if approval.transition_event.event_id == event_id:
                return approval.snapshot()
        return None

    def get_pending_transitions(self) -> List[TransitionEvent]:
        return [e.snapshot() for e in self._pending.values()]

    def get_transition_history(self, project_id: Optional[str] = None) -> List[TransitionEvent]:
        """Snapshot of the append-only history, oldest first."""
        return [
            e.snapshot() for e in self._history
            if project_id is None or e.project_id == project_id
        ]

    def get_statistics(self) -> Dict[str, Any]:
        total = len(self._history)
        by_status = Counter(e.status for e in self._history)
        completed = by_status[TransitionStatus.COMPLETED]
        return {
            "total": total,
            "completed": completed,
            "failed": by_status[TransitionStatus.FAILED],
            "rejected": by_status[TransitionStatus.REJECTED],
            "pending_approvals": len(self.get_pending_approval_requests()),
            "success_rate": round(completed / total * 100, 2) if total else 0.0,
            "by_trigger": dict(Counter(e.trigger.value for e in self._history)),
        }

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _export_state(self) -> Dict[str, Any]:
        return {
            "version": ENGINE_VERSION,
            "history": [e.to_dict() for e in self._history],
            "approvals": [a.to_dict() for a in self._approvals.values()],
            "saved_at": utcnow().isoformat(),
        }

    async def _persist(self) -> None:
        # snapshot and write under one lock so saves land in order
        async with self._save_lock:
            async with self._lock:
                state = self._export_state()
            await self._store.save(state)

    async def restore(self) -> Dict[str, Any]:
        """
        Reload history and approvals from the store.

        Approvals still pending are re-opened. An APPROVED event whose apply
        never finished is marked FAILED and added to the history; it is not
        re-applied, since the project may have moved in the meantime.

        Returns a summary of what was recovered.
        """
        state = await self._store.load()
        history: List[TransitionEvent] = []
        approvals: Dict[str, ApprovalRequest] = {}

        for data in state.get("history", []):
            try:
                history.append(TransitionEvent.from_dict(data))
            except (KeyError, ValueError) as e:
                logger.warning(f"Failed to deserialize transition event: {e}")

        for data in state.get("approvals", []):
            try:
                approval = ApprovalRequest.from_dict(data)
                approvals[approval.approval_id] = approval
            except (KeyError, ValueError) as e:
                logger.warning(f"Failed to deserialize approval request: {e}")

        interrupted: List[TransitionEvent] = []
        recorded = {e.event_id for e in history}
        for approval in approvals.values():
            event = approval.transition_event
            if event.status == TransitionStatus.APPROVED:
                event.status = TransitionStatus.FAILED
                event.completed_at = self._clock()
                event.error = "apply interrupted before state was saved"
                interrupted.append(event)
                if event.event_id not in recorded:
                    history.append(event.snapshot())

        async with self._lock:
            self._history = history
            self._approvals = approvals
            self._pending = {
                a.transition_event.event_id: a.transition_event
                for a in approvals.values()
                if not a.transition_event.is_terminal
            }

        for event in interrupted:
            logger.error(f"Transition {event.event_id} for {event.project_id} failed: {event.error}")
        if interrupted:
            await self._persist()

        summary = {
            "history": len(history),
            "approvals": len(approvals),
            "pending": len(self._pending),
            "interrupted": len(interrupted),
        }
        logger.info(f"Restored engine state: {summary}")
        return summary

    async def reset(self) -> None:
        """Clear in-memory state. Listeners stay registered."""
        async with self._lock:
            self._pending.clear()
            self._approvals.clear()
            self._history.clear()
        await self._persist()
