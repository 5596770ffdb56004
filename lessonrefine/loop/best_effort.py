"""Best-effort selection for unattended runs that never met a threshold."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from lessonrefine.schemas.judge import TargetedIssue
from lessonrefine.schemas.session import BestEffortResult, IterationSnapshot, QualityStatus

logger = logging.getLogger(__name__)

GOOD_SCORE = 0.85
ACCEPTABLE_SCORE = 0.75
MAX_HINTS = 5


def select_best(snapshots: Sequence[IterationSnapshot]) -> IterationSnapshot:
    """Snapshot with the strictly highest score; ties go to the earliest.

    Raises:
        ValueError: If there are no snapshots.
    """
    if not snapshots:
        raise ValueError("No iteration snapshots to select from")
    best = snapshots[0]
    for snapshot in snapshots[1:]:
        if snapshot.score > best.score:
            best = snapshot
    return best


def quality_status(score: float) -> QualityStatus:
    if score >= GOOD_SCORE:
        return QualityStatus.GOOD
    if score >= ACCEPTABLE_SCORE:
        return QualityStatus.ACCEPTABLE
    return QualityStatus.BELOW_STANDARD


def improvement_hints(issues: Sequence[TargetedIssue], limit: int = MAX_HINTS) -> list[str]:
    """Human-readable hints, most severe first."""
    hints: list[str] = []
    for issue in sorted(issues, key=lambda i: i.severity.rank):
        hint = f"Improve {issue.criterion.label}: {issue.instruction}"
        if hint not in hints:
            hints.append(hint)
        if len(hints) >= limit:
            break
    return hints


def build_best_effort(snapshots: Sequence[IterationSnapshot]) -> BestEffortResult:
    best = select_best(snapshots)
    result = BestEffortResult(
        selected_iteration=best.iteration,
        score=best.score,
        quality_status=quality_status(best.score),
        content=best.content,
        unresolved_issues=list(best.unresolved_issues),
        improvement_hints=improvement_hints(best.unresolved_issues),
    )
    logger.info(
        "Best effort: iteration %d (%.3f, %s) of %d",
        result.selected_iteration, result.score, result.quality_status, len(snapshots),
    )
    return result
