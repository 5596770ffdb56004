"""Two-tier patch verification with an in-loop quality-lock check.

Tier 1 re-runs the section-scoped heuristic rules for free. Tier 2 asks the
delta judge whether the primary issue was addressed. When the delta judge
also returns post-fix criterion scores, they are held against the section's
quality locks. Full re-evaluation happens only at iteration boundaries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from lessonrefine.capabilities.base import FixVerifier
from lessonrefine.errors import RegressionDetectedError
from lessonrefine.heuristics.filter import HeuristicFilter
from lessonrefine.providers.retry import call_with_retry
from lessonrefine.schemas.judge import HeuristicFailure
from lessonrefine.schemas.pipeline import ExecutionConfig
from lessonrefine.schemas.refinement import FixVerification, SectionRefinementTask
from lessonrefine.verify.quality_lock import QualityLockRegistry

logger = logging.getLogger(__name__)


@dataclass
class VerificationReport:
    passed: bool
    tier: str
    reason: str = ""
    failures: list[HeuristicFailure] = field(default_factory=list)
    verification: FixVerification | None = None
    regression: RegressionDetectedError | None = None

    @property
    def tokens_used(self) -> int:
        return self.verification.tokens_used if self.verification else 0


class Verifier:
    """Checks a candidate section text before it replaces the original."""

    def __init__(
        self,
        heuristic_filter: HeuristicFilter,
        fix_verifier: FixVerifier,
        locks: QualityLockRegistry,
        *,
        retry: ExecutionConfig | None = None,
        language: str = "en",
        verify_timeout: float = 30.0,
    ) -> None:
        self._filter = heuristic_filter
        self._delta = fix_verifier
        self._locks = locks
        self._retry = retry or ExecutionConfig()
        self._language = language
        self._timeout = verify_timeout

    def tier1(self, section_id: str, before: str, after: str) -> list[HeuristicFailure]:
        return self._filter.compare_section(section_id, before, after, self._language)

    async def verify(
        self, task: SectionRefinementTask, before: str, after: str
    ) -> VerificationReport:
        """Run both tiers and the lock check for one candidate text.

        Raises:
            TransportError: If the delta judge failed after its retries.
            MalformedResponseError: If the delta judge never answered validly.
        """
        failures = self.tier1(task.section_id, before, after)
        if failures:
            reason = "; ".join(f.message for f in failures)
            logger.warning("Tier 1 rejected patch for %s: %s", task.section_id, reason)
            return VerificationReport(passed=False, tier="tier1", reason=reason, failures=failures)

        issue = task.primary_issue
        verification = await call_with_retry(
            lambda: self._delta.verify_fix(issue, before, after),
            label=f"verify:{task.section_id}",
            timeout=self._timeout,
            max_retries=self._retry.max_retries,
            base_backoff=self._retry.base_backoff,
        )
        if not verification.addressed:
            return VerificationReport(
                passed=False,
                tier="tier2",
                reason=verification.rationale or "Issue not addressed",
                verification=verification,
            )

        if verification.criteria_scores:
            found = self._locks.violations(task.section_id, verification.criteria_scores)
            if found:
                logger.warning("Quality lock tripped in-loop: %s", found[0])
                return VerificationReport(
                    passed=False,
                    tier="quality_lock",
                    reason=str(found[0]),
                    verification=verification,
                    regression=found[0],
                )

        return VerificationReport(
            passed=True, tier="tier2", reason=verification.rationale, verification=verification
        )

    def transition_failures(
        self, section_id: str, text: str, neighbor_id: str, neighbor_text: str
    ) -> list[HeuristicFailure]:
        return self._filter.transition_failures(section_id, text, neighbor_id, neighbor_text)
