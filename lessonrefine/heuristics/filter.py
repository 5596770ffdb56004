"""Heuristic pre-filter: free, deterministic checks run before any judge.

Checks word count, readability band, required sections, example and
exercise counts, script consistency, code-fence and diagram integrity,
learning-objective and keyword coverage and prohibited terms. A critical
or major failure is a hard failure: the cascade stops and recommends
regeneration without spending a single model token.

The same rule family is reused section by section by the Verifier to make
sure a patch did not break what was intact before it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from lessonrefine.heuristics import readability, structure
from lessonrefine.schemas.content import ContentSpec, LessonDocument
from lessonrefine.schemas.judge import (
    Criterion,
    FailureCategory,
    HeuristicFailure,
    HeuristicResult,
    Severity,
)
from lessonrefine.schemas.pipeline import HeuristicConfig

logger = logging.getLogger(__name__)

# Weights of each check in the overall heuristic score (sum to 1.0)
_CHECK_WEIGHTS: dict[str, float] = {
    "word_count": 0.15,
    "readability": 0.15,
    "required_sections": 0.15,
    "examples": 0.10,
    "exercises": 0.10,
    "script_consistency": 0.10,
    "structure": 0.15,
    "objective_coverage": 0.05,
    "keyword_coverage": 0.03,
    "prohibited_terms": 0.02,
}

_STRUCTURAL_PENALTY = {Severity.CRITICAL: 0.4, Severity.MAJOR: 0.15, Severity.MINOR: 0.05}

_EXAMPLE_RE = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:\*\*)?(?:example|for example|e\.g\.|worked example|пример)\b",
    re.IGNORECASE | re.MULTILINE,
)
_EXERCISE_RE = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:\*\*)?(?:exercise|practice|try it|quiz|challenge|"
    r"упражнение|задание|практика)",
    re.IGNORECASE | re.MULTILINE,
)

_STOPWORDS = frozenset(
    "about after also been before being between both could does each from have "
    "into more most only other over same should such than that their them then "
    "there these they this those through under using what when where which while "
    "will with would your able understand learn learners student students explain "
    "describe identify".split()
)


@dataclass
class _Check:
    """Outcome of one check: its 0..1 contribution and any failures."""

    score: float
    failures: list[HeuristicFailure] = field(default_factory=list)
    metrics: dict = field(default_factory=dict)


class HeuristicFilter:
    """Runs the deterministic rule family over a lesson or a single section."""

    def __init__(self, config: HeuristicConfig | None = None) -> None:
        self._config = config or HeuristicConfig()

    @property
    def config(self) -> HeuristicConfig:
        return self._config

    # ── Whole lesson ──────────────────────────────────────────────

    def check(self, document: LessonDocument, spec: ContentSpec) -> HeuristicResult:
        """Run every check over the lesson."""
        text = document.to_markdown()
        checks = {
            "word_count": self._check_word_count(text),
            "readability": self._check_readability(text, spec),
            "required_sections": self._check_required_sections(document, spec),
            "examples": self._check_examples(text, spec),
            "exercises": self._check_exercises(text, spec),
            "script_consistency": self._check_scripts(document, spec),
            "structure": self._check_structure(document),
            "objective_coverage": self._check_objectives(text, spec),
            "keyword_coverage": self._check_keywords(text, spec),
            "prohibited_terms": self._check_prohibited(document, spec),
        }

        failures: list[HeuristicFailure] = []
        metrics: dict = {}
        score = 0.0
        for name, outcome in checks.items():
            score += _CHECK_WEIGHTS[name] * outcome.score
            failures.extend(outcome.failures)
            metrics.update(outcome.metrics)
        metrics["section_count"] = len(document.sections)

        structural = [f for f in failures if f.category is FailureCategory.STRUCTURAL]
        structural_score = 1.0 - sum(_STRUCTURAL_PENALTY[f.severity] for f in structural)

        passed = not any(f.severity is not Severity.MINOR for f in failures)
        result = HeuristicResult(
            passed=passed,
            score=max(0.0, min(1.0, score)),
            structural_score=max(0.0, min(1.0, structural_score)),
            metrics=metrics,
            failures=failures,
        )
        logger.info(
            "Heuristic filter: passed=%s score=%.3f failures=%d (hard=%d)",
            result.passed, result.score, len(failures), len(result.hard_failures),
        )
        return result

    # ── Section scope (used by the Verifier) ─────────────────────

    def check_section(
        self, section_id: str, text: str, language: str = "en"
    ) -> list[HeuristicFailure]:
        """Section-scoped structural and script checks."""
        failures: list[HeuristicFailure] = []
        open_fences = structure.unbalanced_fences(text)
        if open_fences:
            failures.append(HeuristicFailure(
                check="code_fences",
                severity=Severity.CRITICAL,
                category=FailureCategory.STRUCTURAL,
                criterion=Criterion.PEDAGOGICAL_STRUCTURE,
                section_id=section_id,
                expected="balanced code fences",
                actual=f"{open_fences} unclosed",
                message=f"Close the unterminated code fence in section '{section_id}'.",
            ))
        for error in structure.diagram_errors(text):
            failures.append(HeuristicFailure(
                check="diagram_syntax",
                severity=Severity.CRITICAL,
                category=FailureCategory.STRUCTURAL,
                criterion=Criterion.PEDAGOGICAL_STRUCTURE,
                section_id=section_id,
                expected="valid Mermaid diagram",
                actual=error,
                message=f"Fix the Mermaid diagram syntax in section '{section_id}' ({error}).",
            ))
        skips = structure.heading_skips(text)
        if skips:
            failures.append(HeuristicFailure(
                check="heading_hierarchy",
                severity=Severity.MINOR,
                category=FailureCategory.STRUCTURAL,
                criterion=Criterion.PEDAGOGICAL_STRUCTURE,
                section_id=section_id,
                expected="heading levels increase by one",
                actual=f"{skips} skipped levels",
                message=f"Do not skip heading levels in section '{section_id}'.",
            ))
        failures.extend(self._script_failures(section_id, text, language))
        return failures

    def compare_section(
        self, section_id: str, before: str, after: str, language: str = "en"
    ) -> list[HeuristicFailure]:
        """Failures introduced by replacing ``before`` with ``after``.

        Flags catastrophic length changes, new script mixing and broken
        structure. Problems already present in ``before`` are not reported.
        """
        failures: list[HeuristicFailure] = []
        cfg = self._config

        words_before = readability.count_words(before)
        words_after = readability.count_words(after)
        if not after.strip():
            ratio = 0.0
        else:
            ratio = words_after / words_before if words_before else 1.0
        if ratio < cfg.min_length_ratio or ratio > cfg.max_length_ratio:
            failures.append(HeuristicFailure(
                check="length_change",
                severity=Severity.CRITICAL,
                criterion=Criterion.COMPLETENESS,
                section_id=section_id,
                expected=f"{cfg.min_length_ratio:g}x..{cfg.max_length_ratio:g}x",
                actual=f"{ratio:.2f}x ({words_before} -> {words_after} words)",
                message=f"Section '{section_id}' length changed catastrophically.",
            ))

        old = {(f.check, f.actual) for f in self.check_section(section_id, before, language)}
        old_checks = {check for check, _ in old}
        for failure in self.check_section(section_id, after, language):
            if failure.severity is Severity.MINOR:
                continue
            if (failure.check, failure.actual) in old or (
                failure.check == "script_consistency" and failure.check in old_checks
            ):
                continue
            failures.append(failure)

        mixed_before = len(structure.script_profile(before).mixed_words)
        mixed_after = structure.script_profile(after).mixed_words
        if len(mixed_after) > mixed_before:
            failures.append(HeuristicFailure(
                check="mixed_script_words",
                severity=Severity.MAJOR,
                category=FailureCategory.STRUCTURAL,
                criterion=Criterion.CLARITY_READABILITY,
                section_id=section_id,
                expected=f"<= {mixed_before} mixed-script words",
                actual=", ".join(mixed_after[:5]),
                message=f"Patch introduced words mixing writing systems in '{section_id}'.",
            ))
        return failures

    def transition_failures(
        self, section_id: str, text: str, neighbor_id: str, neighbor_text: str
    ) -> list[HeuristicFailure]:
        """Check that a section and its neighbour are written in the same script."""
        own = structure.script_profile(readability.strip_markdown(text))
        other = structure.script_profile(readability.strip_markdown(neighbor_text))
        if own.total < 20 or other.total < 20 or own.dominant == other.dominant:
            return []
        return [HeuristicFailure(
            check="transition_script",
            severity=Severity.MAJOR,
            category=FailureCategory.STRUCTURAL,
            criterion=Criterion.CLARITY_READABILITY,
            section_id=section_id,
            expected=f"same script as '{neighbor_id}' ({other.dominant})",
            actual=str(own.dominant),
            message=f"Section '{section_id}' switches writing system at its boundary "
                    f"with '{neighbor_id}'.",
        )]

    # ── Individual checks ─────────────────────────────────────────

    def _check_word_count(self, text: str) -> _Check:
        cfg = self._config
        count = readability.count_words(text)
        outcome = _Check(score=1.0, metrics={"word_count": count})
        if cfg.min_words <= count <= cfg.max_words:
            return outcome

        if count < cfg.min_words:
            outcome.score = count / cfg.min_words if cfg.min_words else 1.0
            severity = Severity.CRITICAL if count < cfg.min_words * 0.5 else Severity.MAJOR
            message = (
                f"Content is too short ({count} words). Expand explanations and "
                f"examples to reach at least {cfg.min_words} words."
            )
        else:
            outcome.score = max(0.0, 1.0 - (count - cfg.max_words) / cfg.max_words)
            severity = Severity.CRITICAL if count > cfg.max_words * 1.5 else Severity.MAJOR
            message = (
                f"Content is too long ({count} words). Condense to at most "
                f"{cfg.max_words} words."
            )
        outcome.failures.append(HeuristicFailure(
            check="word_count",
            severity=severity,
            criterion=Criterion.COMPLETENESS,
            expected=f"{cfg.min_words}..{cfg.max_words}",
            actual=str(count),
            message=message,
        ))
        return outcome

    def _check_readability(self, text: str, spec: ContentSpec) -> _Check:
        cfg = self._config
        metrics = readability.language_metrics(text)
        if not spec.language.lower().startswith("en"):
            # Flesch-Kincaid is calibrated for English only
            return _Check(score=1.0, metrics=metrics | {"fk_grade": None})

        grade = readability.flesch_kincaid_grade(text)
        metrics |= {
            "fk_grade": round(grade, 2),
            "reading_ease": round(readability.flesch_reading_ease(text), 2),
        }
        outcome = _Check(score=1.0, metrics=metrics)
        if cfg.fk_min <= grade <= cfg.fk_max:
            deviation = abs(grade - cfg.fk_target)
            span = max(cfg.fk_target - cfg.fk_min, cfg.fk_max - cfg.fk_target) or 1.0
            outcome.score = 1.0 - 0.3 * deviation / span
            return outcome

        far = grade < cfg.fk_min - 2 or grade > cfg.fk_max + 2
        outcome.score = 0.3 if far else 0.6
        direction = "Simplify sentences and vocabulary" if grade > cfg.fk_max else (
            "Use richer sentence structure"
        )
        outcome.failures.append(HeuristicFailure(
            check="readability",
            severity=Severity.MAJOR if far else Severity.MINOR,
            criterion=Criterion.CLARITY_READABILITY,
            expected=f"grade {cfg.fk_min:g}..{cfg.fk_max:g}",
            actual=f"{grade:.1f}",
            message=f"Reading grade {grade:.1f} is outside the target band. {direction}.",
        ))
        return outcome

    def _check_required_sections(self, document: LessonDocument, spec: ContentSpec) -> _Check:
        required = [r.lower() for r in spec.required_sections]
        if not required:
            return _Check(score=1.0)
        names = [f"{s.id} {s.title}".lower() for s in document.sections]
        missing = [r for r in required if not any(r in name for name in names)]
        outcome = _Check(
            score=1.0 - len(missing) / len(required),
            metrics={"missing_sections": missing},
        )
        if missing:
            outcome.failures.append(HeuristicFailure(
                check="required_sections",
                severity=Severity.CRITICAL if len(missing) == len(required) else Severity.MAJOR,
                criterion=Criterion.PEDAGOGICAL_STRUCTURE,
                expected=", ".join(required),
                actual=f"missing: {', '.join(missing)}",
                message=f"Add the missing section(s): {', '.join(missing)}.",
            ))
        return outcome

    def _check_examples(self, text: str, spec: ContentSpec) -> _Check:
        code_examples = sum(
            1 for b in structure.find_code_blocks(text) if b.language != "mermaid"
        )
        count = len(_EXAMPLE_RE.findall(text)) + code_examples
        return self._count_check(
            "examples", count, spec.min_examples, Criterion.ENGAGEMENT_EXAMPLES,
            "Add concrete worked examples.",
        )

    def _check_exercises(self, text: str, spec: ContentSpec) -> _Check:
        count = len(_EXERCISE_RE.findall(text))
        return self._count_check(
            "exercises", count, spec.min_exercises, Criterion.PEDAGOGICAL_STRUCTURE,
            "Add practice exercises for learners.",
        )

    def _count_check(
        self, name: str, count: int, minimum: int, criterion: Criterion, hint: str
    ) -> _Check:
        outcome = _Check(score=1.0, metrics={f"{name}_count": count})
        if count >= minimum:
            return outcome
        outcome.score = count / minimum
        outcome.failures.append(HeuristicFailure(
            check=name,
            severity=Severity.MAJOR if count == 0 else Severity.MINOR,
            criterion=criterion,
            expected=f">= {minimum}",
            actual=str(count),
            message=f"Found {count} {name}, expected at least {minimum}. {hint}",
        ))
        return outcome

    def _check_scripts(self, document: LessonDocument, spec: ContentSpec) -> _Check:
        failures: list[HeuristicFailure] = []
        for section in document.sections:
            failures.extend(self._script_failures(section.id, section.body, spec.language))
        penalty = sum(_STRUCTURAL_PENALTY[f.severity] for f in failures)
        return _Check(score=max(0.0, 1.0 - penalty), failures=failures)

    def _script_failures(
        self, section_id: str, text: str, language: str
    ) -> list[HeuristicFailure]:
        cfg = self._config
        profile = structure.script_profile(readability.strip_markdown(text))
        if not profile.total:
            return []
        expected = structure.expected_scripts(language, profile)
        share = profile.foreign_share(expected)
        if share <= cfg.foreign_script_minor:
            return []
        severity = Severity.MAJOR if share > cfg.foreign_script_major else Severity.MINOR
        return [HeuristicFailure(
            check="script_consistency",
            severity=severity,
            category=FailureCategory.STRUCTURAL,
            criterion=Criterion.CLARITY_READABILITY,
            section_id=section_id,
            expected=f"<= {cfg.foreign_script_minor:.0%} letters outside {sorted(expected)}",
            actual=f"{share:.0%}",
            message=f"Section '{section_id}' mixes writing systems; keep it in "
                    f"the lesson language ({language}).",
        )]

    def _check_structure(self, document: LessonDocument) -> _Check:
        failures: list[HeuristicFailure] = []
        for section in document.sections:
            failures.extend(
                f for f in self.check_section(section.id, section.body)
                if f.check != "script_consistency"
            )
        penalty = sum(_STRUCTURAL_PENALTY[f.severity] for f in failures)
        return _Check(
            score=max(0.0, 1.0 - penalty),
            failures=failures,
            metrics={"structural_issues": len(failures)},
        )

    def _check_objectives(self, text: str, spec: ContentSpec) -> _Check:
        if not spec.objectives:
            return _Check(score=1.0, metrics={"objective_coverage": 1.0})
        lowered = readability.strip_markdown(text).lower()
        covered = 0
        for objective in spec.objectives:
            terms = _key_terms(objective)
            if not terms:
                covered += 1
                continue
            hits = sum(1 for t in terms if t in lowered)
            if hits / len(terms) >= 0.5:
                covered += 1
        coverage = covered / len(spec.objectives)
        outcome = _Check(score=coverage, metrics={"objective_coverage": round(coverage, 3)})
        if coverage < 0.7:
            outcome.failures.append(HeuristicFailure(
                check="objective_coverage",
                severity=Severity.MAJOR if coverage < 0.5 else Severity.MINOR,
                criterion=Criterion.LEARNING_OBJECTIVE_ALIGNMENT,
                expected=">= 70% of objectives addressed",
                actual=f"{coverage:.0%}",
                message=f"Only {covered} of {len(spec.objectives)} learning objectives "
                        f"are addressed. Cover every objective explicitly.",
            ))
        return outcome

    def _check_keywords(self, text: str, spec: ContentSpec) -> _Check:
        if not spec.keywords:
            return _Check(score=1.0)
        lowered = text.lower()
        found = [k for k in spec.keywords if k.lower() in lowered]
        coverage = len(found) / len(spec.keywords)
        outcome = _Check(score=coverage, metrics={"keyword_coverage": round(coverage, 3)})
        if coverage < self._config.keyword_coverage:
            missing = [k for k in spec.keywords if k not in found]
            outcome.failures.append(HeuristicFailure(
                check="keyword_coverage",
                severity=Severity.MINOR,
                criterion=Criterion.COMPLETENESS,
                expected=f">= {self._config.keyword_coverage:.0%}",
                actual=f"{coverage:.0%}",
                message=f"Introduce the key terms: {', '.join(missing[:8])}.",
            ))
        return outcome

    def _check_prohibited(self, document: LessonDocument, spec: ContentSpec) -> _Check:
        failures: list[HeuristicFailure] = []
        for section in document.sections:
            lowered = section.body.lower()
            hits = [t for t in spec.prohibited_terms if t.lower() in lowered]
            if hits:
                failures.append(HeuristicFailure(
                    check="prohibited_terms",
                    severity=Severity.MINOR,
                    criterion=Criterion.CLARITY_READABILITY,
                    section_id=section.id,
                    expected="none",
                    actual=", ".join(hits),
                    message=f"Remove prohibited term(s) {', '.join(hits)} "
                            f"from section '{section.id}'.",
                ))
        return _Check(score=0.0 if failures else 1.0, failures=failures)


def _key_terms(objective: str) -> list[str]:
    tokens = re.findall(r"[^\W\d_]{4,}", objective.lower())
    return [t for t in dict.fromkeys(tokens) if t not in _STOPWORDS]
