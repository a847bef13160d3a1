"""
Structured errors for the phase transition engine.

Every error carries a machine-readable code, a human message and a details
dict so API layers can return it unchanged.
"""

from typing import Any, Dict, List, Optional


class PhaseflowError(Exception):
    """Base error with structured details."""
    def __init__(self, code: str, message: str, details: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class UnknownProjectError(PhaseflowError):
    def __init__(self, project_id: str):
        super().__init__(
            code="UNKNOWN_PROJECT",
            message=f"Project '{project_id}' not found",
            details={"project_id": project_id}
        )


class NoApplicableRuleError(PhaseflowError):
    def __init__(self, from_phase: str, to_phase: str, trigger: str):
        super().__init__(
            code="NO_APPLICABLE_RULE",
            message=f"No transition rule from '{from_phase}' to '{to_phase}' for trigger '{trigger}'",
            details={"from_phase": from_phase, "to_phase": to_phase, "trigger": trigger}
        )


class PhaseMismatchError(PhaseflowError):
    def __init__(self, project_id: str, expected_phase: str, current_phase: str):
        super().__init__(
            code="PHASE_MISMATCH",
            message=(
                f"Project '{project_id}' is in phase '{current_phase}', "
                f"not '{expected_phase}'"
            ),
            details={
                "project_id": project_id,
                "expected_phase": expected_phase,
                "current_phase": current_phase,
            }
        )


class RuleConfigurationError(PhaseflowError):
    def __init__(self, problems: List[str]):
        super().__init__(
            code="RULE_CONFIGURATION",
            message=f"Invalid transition rule table: {len(problems)} problem(s)",
            details={"problems": list(problems)}
        )


class TransitionApplyError(PhaseflowError):
    """Raised inside the engine when a phase update cannot be applied."""
    def __init__(self, event_id: str, reason: str):
        super().__init__(
            code="TRANSITION_APPLY_FAILED",
            message=f"Transition {event_id} could not be applied: {reason}",
            details={"event_id": event_id, "reason": reason}
        )


class EventProcessingError(PhaseflowError):
    def __init__(self, event_id: str, reason: str, retry_count: Optional[int] = None):
        super().__init__(
            code="EVENT_PROCESSING_FAILED",
            message=f"Event {event_id} failed: {reason}",
            details={"event_id": event_id, "reason": reason, "retry_count": retry_count}
        )
