"""
Rule Registry - Static transition rule table

The registry is immutable after construction and validated up front:
- Every rule moves strictly forward in phase order
- Rule ids are unique
- auto_apply and requires_approval are never both set
- No two rules can match the same trigger situation

Lookups fail closed: zero or several matches both yield None.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import yaml

from .errors import RuleConfigurationError
from .phase_model import MeetingType, ProjectPhase, TransitionRule, TransitionTrigger

logger = logging.getLogger("rule_registry")


def _rule(rule_id, from_phase, to_phase, trigger, name, meeting_types=None,
          auto_apply=True, requires_approval=False) -> TransitionRule:
    return TransitionRule(
        rule_id=rule_id,
        from_phase=from_phase,
        to_phase=to_phase,
        trigger=trigger,
        meeting_types=frozenset(meeting_types) if meeting_types else None,
        auto_apply=auto_apply,
        requires_approval=requires_approval,
        name=name,
    )


P = ProjectPhase
T = TransitionTrigger

DEFAULT_TRANSITION_RULES: Tuple[TransitionRule, ...] = (
    _rule("payment-received", P.PAYMENT_PENDING, P.PAYMENT_COMPLETED, T.PAYMENT_COMPLETED,
          "Payment received"),
    _rule("preparation-start", P.PAYMENT_COMPLETED, P.PREPARATION, T.SYSTEM,
          "Start preparation"),
    _rule("preparation-start-manual", P.PAYMENT_COMPLETED, P.PREPARATION, T.MANUAL,
          "Start preparation manually"),
    _rule("pre-meeting-done", P.PREPARATION, P.KICKOFF_READY, T.MEETING_COMPLETED,
          "Pre-meeting completed", meeting_types=[MeetingType.PRE_MEETING]),
    _rule("kickoff-ready-manual", P.PREPARATION, P.KICKOFF_READY, T.MANUAL,
          "Mark ready for kickoff"),
    _rule("pm-assigned", P.KICKOFF_READY, P.PM_ASSIGNED, T.MANUAL,
          "Assign project manager"),
    _rule("kickoff-scheduled", P.PM_ASSIGNED, P.KICKOFF_SCHEDULED, T.MANUAL,
          "Schedule kickoff"),
    _rule("kickoff-done", P.KICKOFF_SCHEDULED, P.KICKOFF_COMPLETED, T.MEETING_COMPLETED,
          "Kickoff meeting completed", meeting_types=[MeetingType.KICKOFF]),
    _rule("start-work", P.KICKOFF_COMPLETED, P.IN_PROGRESS, T.MANUAL,
          "Start execution", auto_apply=False, requires_approval=False),
    _rule("review-meeting", P.IN_PROGRESS, P.REVIEW, T.MEETING_COMPLETED,
          "Review meeting completed", meeting_types=[MeetingType.REVIEW],
          auto_apply=False, requires_approval=True),
    _rule("review-manual", P.IN_PROGRESS, P.REVIEW, T.MANUAL,
          "Move to review", auto_apply=False, requires_approval=True),
    _rule("complete", P.REVIEW, P.COMPLETED, T.MANUAL,
          "Complete project", auto_apply=False, requires_approval=True),
    _rule("close", P.COMPLETED, P.CLOSED, T.MANUAL,
          "Close project"),
)

del P, T


class RuleRegistry:
    """
    Validated, read-only set of transition rules.
    """

    def __init__(self, rules: Iterable[TransitionRule] = DEFAULT_TRANSITION_RULES):
        self._rules: Tuple[TransitionRule, ...] = tuple(rules)
        problems = self.validate()
        if problems:
            raise RuleConfigurationError(problems)
        logger.info(f"Rule registry loaded with {len(self._rules)} rules")

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "RuleRegistry":
        return cls(load_rules_from_yaml(path))

    @property
    def rules(self) -> Tuple[TransitionRule, ...]:
        return self._rules

    def __len__(self) -> int:
        return len(self._rules)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> List[str]:
        """Return every configuration problem in the rule table."""
        problems: List[str] = []
        seen_ids: Dict[str, TransitionRule] = {}

        for rule in self._rules:
            if rule.rule_id in seen_ids:
                problems.append(f"duplicate rule id '{rule.rule_id}'")
            seen_ids[rule.rule_id] = rule

            if not ProjectPhase.is_forward(rule.from_phase, rule.to_phase):
                problems.append(
                    f"rule '{rule.rule_id}' moves backwards or stays put: "
                    f"{rule.from_phase.value} -> {rule.to_phase.value}"
                )

            if rule.auto_apply and rule.requires_approval:
                problems.append(
                    f"rule '{rule.rule_id}' sets both auto_apply and requires_approval"
                )

        for idx, first in enumerate(self._rules):
            for second in self._rules[idx + 1:]:
                if self._overlaps(first, second):
                    problems.append(
                        f"rules '{first.rule_id}' and '{second.rule_id}' are ambiguous"
                    )

        return problems

    @staticmethod
    def _overlaps(first: TransitionRule, second: TransitionRule) -> bool:
        if first.from_phase != second.from_phase or first.trigger != second.trigger:
            return False
        # Manual requests name their target, so only same-target manual rules collide
        if first.trigger == TransitionTrigger.MANUAL and first.to_phase != second.to_phase:
            return False
        if not first.meeting_types or not second.meeting_types:
            return True
        return bool(first.meeting_types & second.meeting_types)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def find_rule(
        self,
        from_phase: ProjectPhase,
        to_phase: ProjectPhase,
        trigger: TransitionTrigger,
        meeting_type: Optional[MeetingType] = None,
    ) -> Optional[TransitionRule]:
        """Exact (from, to, trigger) match; None unless exactly one rule matches."""
        matches = [
            r for r in self._rules
            if r.from_phase == from_phase
            and r.to_phase == to_phase
            and r.trigger == trigger
            and r.accepts_meeting_type(meeting_type)
        ]
        return self._single(matches, from_phase, trigger)

    def find_rule_for_trigger(
        self,
        from_phase: ProjectPhase,
        trigger: TransitionTrigger,
        meeting_type: Optional[MeetingType] = None,
    ) -> Optional[TransitionRule]:
        """Rule for an automatic trigger, where the rule decides the target phase."""
        matches = [
            r for r in self._rules
            if r.from_phase == from_phase
            and r.trigger == trigger
            and r.accepts_meeting_type(meeting_type)
        ]
        return self._single(matches, from_phase, trigger)

    def rules_from(self, phase: ProjectPhase) -> List[TransitionRule]:
        return [r for r in self._rules if r.from_phase == phase]

    @staticmethod
    def _single(
        matches: List[TransitionRule],
        from_phase: ProjectPhase,
        trigger: TransitionTrigger,
    ) -> Optional[TransitionRule]:
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            logger.warning(
                f"Ambiguous rules for {from_phase.value}/{trigger.value}: "
                f"{[r.rule_id for r in matches]}"
            )
        return None


def load_rules_from_yaml(path: Union[str, Path]) -> List[TransitionRule]:
    """
    Read a rule table from YAML.

    Expected layout:

        rules:
          - rule_id: payment-received
            from_phase: payment_pending
            to_phase: payment_completed
            trigger: payment_completed
            auto_apply: true
    """
    data = yaml.safe_load(Path(path).read_text()) or {}
    entries = data.get("rules", []) if isinstance(data, dict) else data
    problems: List[str] = []
    rules: List[TransitionRule] = []

    for idx, entry in enumerate(entries):
        try:
            rules.append(TransitionRule.from_dict(entry))
        except (KeyError, ValueError, TypeError) as e:
            problems.append(f"entry {idx}: {e}")

    if problems:
        raise RuleConfigurationError(problems)
    return rules
