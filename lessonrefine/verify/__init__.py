"""Patch verification and quality locks."""

from lessonrefine.verify.quality_lock import (
    ISSUE_PENALTIES,
    QualityLockRegistry,
    section_criterion_scores,
)
from lessonrefine.verify.verifier import VerificationReport, Verifier

__all__ = [
    "ISSUE_PENALTIES",
    "QualityLockRegistry",
    "VerificationReport",
    "Verifier",
    "section_criterion_scores",
]
