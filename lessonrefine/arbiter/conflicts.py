"""Contradictory-instruction detection and per-section instruction synthesis.

Two fixes for the same section contradict when one asks for more material
and the other for less. The fix of the higher-priority criterion is kept
verbatim; the other is dropped from the instruction list and replaced by
a constraint protecting its criterion.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from lessonrefine.schemas.judge import CRITERION_PRIORITY, Criterion, TargetedIssue
from lessonrefine.schemas.refinement import ConflictResolution


class Direction(StrEnum):
    """Which way an instruction moves the amount of material."""

    EXPAND = "expand"
    REDUCE = "reduce"
    NEUTRAL = "neutral"


_EXPAND_RE = re.compile(
    r"\b(add|adding|expand|elaborate|extend|lengthen|deepen|include|"
    r"more (?:detail|depth|examples?|context|explanation)|additional|"
    r"explain (?:further|in more detail)|flesh out)\b",
    re.IGNORECASE,
)
_REDUCE_RE = re.compile(
    r"\b(simplify|simpler|shorten|condense|reduce|remove|trim|cut|"
    r"concise|streamline|fewer|less (?:detail|text|jargon)|too (?:long|dense|detailed))\b",
    re.IGNORECASE,
)


def direction_of(text: str) -> Direction:
    """Classify an instruction by its first expand or reduce cue."""
    expand = _EXPAND_RE.search(text)
    reduce_ = _REDUCE_RE.search(text)
    if expand and reduce_:
        return Direction.EXPAND if expand.start() < reduce_.start() else Direction.REDUCE
    if expand:
        return Direction.EXPAND
    if reduce_:
        return Direction.REDUCE
    return Direction.NEUTRAL


def priority_of(criterion: Criterion) -> int:
    """Position in the conflict priority order, 0 is the highest."""
    return CRITERION_PRIORITY.index(criterion)


def issue_sort_key(issue: TargetedIssue) -> tuple[int, int, str, str]:
    return (issue.severity.rank, priority_of(issue.criterion), issue.source, issue.description)


def constraint_for(criterion: Criterion, direction: Direction) -> str:
    if direction is Direction.EXPAND:
        return f"Do not reduce {criterion.label}."
    return f"Do not degrade {criterion.label}."


@dataclass
class SectionInstructions:
    """Conflict-resolved instructions for one section."""

    section_id: str
    active: list[TargetedIssue] = field(default_factory=list)
    demoted: list[TargetedIssue] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    resolutions: list[ConflictResolution] = field(default_factory=list)

    @property
    def issues(self) -> list[TargetedIssue]:
        """Active issues first, then demoted ones."""
        return self.active + self.demoted

    def render(self) -> str:
        """Numbered fix list followed by the protecting constraints."""
        lines: list[str] = []
        seen: set[str] = set()
        for issue in self.active:
            text = issue.instruction.strip()
            if text and text not in seen:
                seen.add(text)
                lines.append(f"{len(lines) + 1}. [{issue.criterion.label}] {text}")
        if self.constraints:
            lines.append("")
            lines.append("Constraints:")
            lines.extend(f"- {c}" for c in self.constraints)
        return "\n".join(lines)


def resolve_section(section_id: str, issues: Sequence[TargetedIssue]) -> SectionInstructions:
    """Resolve contradictory fixes among one section's issues.

    The kept direction is the direction of the highest-priority criterion
    that has one. Every issue pulling the other way is demoted.
    """
    ordered = sorted(issues, key=issue_sort_key)
    directed = sorted(
        (i for i in ordered if direction_of(i.instruction) is not Direction.NEUTRAL),
        key=lambda i: (priority_of(i.criterion), i.severity.rank, i.source, i.description),
    )
    result = SectionInstructions(section_id=section_id)
    if not directed:
        result.active = ordered
        return result

    winner = directed[0]
    kept = direction_of(winner.instruction)
    for issue in ordered:
        direction = direction_of(issue.instruction)
        if direction is Direction.NEUTRAL or direction is kept:
            result.active.append(issue)
            continue
        result.demoted.append(issue)
        constraint = constraint_for(issue.criterion, direction)
        if constraint not in result.constraints:
            result.constraints.append(constraint)
        result.resolutions.append(ConflictResolution(
            section_id=section_id,
            kept_criterion=winner.criterion,
            demoted_criterion=issue.criterion,
            constraint=constraint,
        ))
    return result
