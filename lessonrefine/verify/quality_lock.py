"""Quality locks: per-(section, criterion) regression guards.

A lock is taken after a successful patch for every criterion the section
was passing. Locked scores can only rise; a later score below
``locked_score - tolerance`` is a regression.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from lessonrefine.errors import RegressionDetectedError
from lessonrefine.schemas.judge import Criterion, Severity, TargetedIssue
from lessonrefine.schemas.refinement import QualityLock

logger = logging.getLogger(__name__)

# Score deducted from the document-level criterion score per located issue
ISSUE_PENALTIES: dict[Severity, float] = {
    Severity.CRITICAL: 0.30,
    Severity.MAJOR: 0.15,
    Severity.MINOR: 0.05,
}


def section_criterion_scores(
    criteria_scores: Mapping[Criterion, float],
    issues: Iterable[TargetedIssue],
    section_id: str,
) -> dict[Criterion, float]:
    """Estimate one section's criterion scores.

    Judges score the whole lesson, so a section inherits the document score
    of each criterion minus a penalty for every issue located in it.
    """
    scores = dict(criteria_scores)
    for issue in issues:
        if issue.section_id != section_id or issue.criterion not in scores:
            continue
        scores[issue.criterion] -= ISSUE_PENALTIES[issue.severity]
    return {c: max(0.0, min(1.0, s)) for c, s in scores.items()}


class QualityLockRegistry:
    """Session-wide set of quality locks."""

    def __init__(self, tolerance: float = 0.05, passing_threshold: float = 0.75) -> None:
        self._tolerance = tolerance
        self._passing = passing_threshold
        self._locks: dict[tuple[str, Criterion], QualityLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @property
    def locks(self) -> list[QualityLock]:
        return list(self._locks.values())

    def locks_for(self, section_id: str) -> list[QualityLock]:
        return [lock for (sid, _), lock in self._locks.items() if sid == section_id]

    def get(self, section_id: str, criterion: Criterion) -> QualityLock | None:
        return self._locks.get((section_id, criterion))

    def lock(
        self, section_id: str, scores: Mapping[Criterion, float], iteration: int
    ) -> list[QualityLock]:
        """Lock every passing criterion of a section.

        An existing lock is raised when the new score is higher and left
        alone otherwise. Returns the locks created or raised.
        """
        changed: list[QualityLock] = []
        for criterion, score in scores.items():
            if score < self._passing:
                continue
            key = (section_id, criterion)
            existing = self._locks.get(key)
            if existing is not None and existing.locked_score >= score:
                continue
            lock = QualityLock(
                section_id=section_id,
                criterion=criterion,
                locked_score=score,
                tolerance=self._tolerance,
                locked_at_iteration=iteration,
            )
            self._locks[key] = lock
            changed.append(lock)
        if changed:
            logger.debug(
                "Locked %s: %s", section_id,
                ", ".join(f"{c.criterion}={c.locked_score:.2f}" for c in changed),
            )
        return changed

    def violations(
        self, section_id: str, scores: Mapping[Criterion, float]
    ) -> list[RegressionDetectedError]:
        """Regressions of ``section_id`` against its locks, most severe drop first."""
        found: list[RegressionDetectedError] = []
        for lock in self.locks_for(section_id):
            observed = scores.get(lock.criterion)
            if observed is None or not lock.is_violated_by(observed):
                continue
            found.append(RegressionDetectedError(
                section_id, lock.criterion.value, lock.locked_score, observed
            ))
        found.sort(key=lambda e: e.observed_score - e.locked_score)
        return found

    def enforce(self, section_id: str, scores: Mapping[Criterion, float]) -> None:
        """Raise the worst regression of ``section_id``, if any.

        Raises:
            RegressionDetectedError: If a locked criterion fell below its floor.
        """
        found = self.violations(section_id, scores)
        if found:
            raise found[0]
