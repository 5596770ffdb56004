"""Fix router: deterministic mapping from issues to repair actions.

No model call. Every (category, criterion, severity) combination maps to a
FixAction through a table built over the full product of the three closed
enums, so classification is a total function.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from lessonrefine.schemas.content import LessonDocument
from lessonrefine.schemas.judge import (
    Criterion,
    FailureCategory,
    FixAction,
    Severity,
    TargetedIssue,
)

logger = logging.getLogger(__name__)

# Criteria whose serious failures need new text rather than an edit
_REWRITE_CRITERIA = frozenset({Criterion.FACTUAL_ACCURACY, Criterion.COMPLETENESS})
_EDIT_CRITERIA = frozenset({Criterion.CLARITY_READABILITY, Criterion.ENGAGEMENT_EXAMPLES})


def _route(category: FailureCategory, criterion: Criterion, severity: Severity) -> FixAction:
    if category is FailureCategory.STRUCTURAL:
        # Broken fences, diagrams and scripts are mechanically repairable
        return FixAction.SURGICAL_EDIT
    if severity is Severity.MINOR or criterion in _EDIT_CRITERIA:
        return FixAction.SURGICAL_EDIT
    if criterion in _REWRITE_CRITERIA:
        return FixAction.REGENERATE_SECTION
    # learning objective alignment / pedagogical structure
    if severity is Severity.CRITICAL:
        return FixAction.REGENERATE_SECTION
    return FixAction.SURGICAL_EDIT


ROUTING_TABLE: dict[tuple[FailureCategory, Criterion, Severity], FixAction] = {
    key: _route(*key)
    for key in itertools.product(FailureCategory, Criterion, Severity)
}


@dataclass
class RoutingDecision:
    """Router output for one iteration."""

    full_regenerate: bool
    reason: str = ""
    actions: dict[str, FixAction] = field(default_factory=dict)
    coherence_checks: list[str] = field(default_factory=list)
    skipped_locked: list[str] = field(default_factory=list)


class FixRouter:
    """Classify issues and decide the repair action per section."""

    def __init__(self, structural_floor: float = 0.6, critical_section_ratio: float = 0.4) -> None:
        self._structural_floor = structural_floor
        self._critical_ratio = critical_section_ratio

    def classify(self, issue: TargetedIssue) -> FixAction:
        """Repair action for a single issue."""
        return ROUTING_TABLE[(issue.category, issue.criterion, issue.severity)]

    def section_action(self, issues: Iterable[TargetedIssue]) -> FixAction:
        """A section is regenerated if any of its issues needs regeneration."""
        actions = {self.classify(i) for i in issues}
        if FixAction.REGENERATE_SECTION in actions:
            return FixAction.REGENERATE_SECTION
        return FixAction.SURGICAL_EDIT

    def global_check(
        self,
        issues: Iterable[TargetedIssue],
        document: LessonDocument,
        structural_score: float,
    ) -> str | None:
        """Reason the whole lesson must be regenerated, or None."""
        if structural_score < self._structural_floor:
            return (
                f"structural score {structural_score:.2f} below "
                f"{self._structural_floor:.2f}"
            )

        sections = document.section_ids
        if not sections:
            return None
        critical = {
            i.section_id for i in issues
            if i.severity is Severity.CRITICAL and not i.is_document_scope
        }
        ratio = len(critical) / len(sections)
        if ratio > self._critical_ratio:
            return f"{ratio:.0%} of sections carry a critical issue"
        return None

    def route(
        self,
        issues: list[TargetedIssue],
        document: LessonDocument,
        structural_score: float,
        locked_sections: Iterable[str] = (),
    ) -> RoutingDecision:
        """Route every section-scoped issue.

        Locked sections are excluded regardless of their issues. Neighbours
        of a regenerated section are flagged for a transition check.
        """
        reason = self.global_check(issues, document, structural_score)
        if reason is not None:
            logger.info("Router escalated to full regeneration: %s", reason)
            return RoutingDecision(full_regenerate=True, reason=reason)

        locked = set(locked_sections)
        by_section: dict[str, list[TargetedIssue]] = {}
        for issue in issues:
            if not issue.is_document_scope:
                by_section.setdefault(issue.section_id, []).append(issue)

        decision = RoutingDecision(full_regenerate=False)
        for section_id in document.section_ids:
            section_issues = by_section.get(section_id)
            if not section_issues:
                continue
            if section_id in locked:
                decision.skipped_locked.append(section_id)
                continue
            decision.actions[section_id] = self.section_action(section_issues)

        flagged: list[str] = []
        for section_id, action in decision.actions.items():
            if action is not FixAction.REGENERATE_SECTION:
                continue
            prev, nxt = document.neighbors(section_id)
            for neighbor in (prev, nxt):
                if neighbor is not None and neighbor.id not in flagged:
                    flagged.append(neighbor.id)
        decision.coherence_checks = [
            sid for sid in document.section_ids if sid in flagged
        ]
        if decision.skipped_locked:
            logger.info("Skipping locked sections: %s", ", ".join(decision.skipped_locked))
        return decision
