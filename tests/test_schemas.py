"""Tests for lessonrefine.schemas — documents, thresholds and enum helpers."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from lessonrefine.schemas.content import ContentSpec, LessonDocument, LessonSection
from lessonrefine.schemas.judge import (
    Criterion,
    JudgeVerdict,
    Recommendation,
    Severity,
    TargetedIssue,
)
from lessonrefine.schemas.pipeline import ModeThresholds, OperationMode, RefinementConfig
from lessonrefine.schemas.session import RefinementStatus

_LESSON_MD = """\
# Photosynthesis

How plants eat light.

## Introduction

Plants need light.

## Light Reactions

```python
## not a heading inside code
print("atp")
```

ATP is made.

## Light Reactions

Second pass.

## Document

Reserved name.
"""


def _make_document() -> LessonDocument:
    return LessonDocument(sections=[
        LessonSection(id="intro", title="Intro", body="Plants need light."),
        LessonSection(id="body", title="Body", body="ATP is made."),
        LessonSection(id="outro", title="Outro", body="Plants make sugar."),
    ])


class TestLessonDocument:
    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate section id"):
            LessonDocument(sections=[LessonSection(id="a"), LessonSection(id="a")])

    def test_document_id_reserved(self):
        with pytest.raises(ValidationError, match="reserved"):
            LessonDocument(sections=[LessonSection(id="document")])

    def test_lookup(self):
        doc = _make_document()
        assert doc.section_ids == ["intro", "body", "outro"]
        assert doc.index_of("outro") == 2
        assert doc.get("body").body == "ATP is made."
        with pytest.raises(KeyError):
            doc.index_of("missing")

    def test_neighbors(self):
        doc = _make_document()
        prev, nxt = doc.neighbors("body")
        assert (prev.id, nxt.id) == ("intro", "outro")
        assert doc.neighbors("intro")[0] is None
        assert doc.neighbors("outro")[1] is None

    def test_with_section_body_returns_copy(self):
        doc = _make_document()
        updated = doc.with_section_body("body", "ATP, the energy carrier, is made.")
        assert updated.get("body").body == "ATP, the energy carrier, is made."
        assert doc.get("body").body == "ATP is made."
        assert updated.get("intro") == doc.get("intro")

    def test_to_markdown(self):
        doc = LessonDocument(sections=[
            LessonSection(id="preamble", body="Welcome."),
            LessonSection(id="intro", title="Intro", body="Plants need light.\n"),
        ])
        assert doc.to_markdown() == "Welcome.\n\n## Intro\n\nPlants need light.\n"


class TestFromMarkdown:
    def test_sections_split_on_level_two_headings(self):
        doc = LessonDocument.from_markdown(_LESSON_MD)
        assert doc.section_ids == [
            "preamble", "introduction", "light-reactions", "light-reactions-2",
            "document-section",
        ]
        assert doc.get("preamble").body.startswith("# Photosynthesis")
        assert doc.get("introduction").title == "Introduction"

    def test_headings_inside_fences_ignored(self):
        doc = LessonDocument.from_markdown(_LESSON_MD)
        body = doc.get("light-reactions").body
        assert "## not a heading inside code" in body
        assert body.endswith("ATP is made.")

    def test_empty_text(self):
        assert LessonDocument.from_markdown("").sections == []

    def test_non_latin_titles(self):
        doc = LessonDocument.from_markdown("## Введение\n\nТекст.\n\n## ???\n\nText.")
        assert doc.section_ids == ["введение", "section"]

    def test_markdown_round_trip_keeps_ids(self):
        doc = LessonDocument.from_markdown(_LESSON_MD)
        again = LessonDocument.from_markdown(doc.to_markdown())
        assert again.section_ids == doc.section_ids


class TestContentSpec:
    def test_defaults(self):
        spec = ContentSpec()
        assert spec.required_sections == ["introduction", "conclusion"]
        assert spec.min_examples == 1
        assert spec.min_exercises == 1
        assert spec.language == "en"

    def test_negative_counts_rejected(self):
        with pytest.raises(ValidationError):
            ContentSpec(min_examples=-1)


class TestThresholds:
    def test_good_enough_above_accept_rejected(self):
        with pytest.raises(ValidationError, match="must not exceed"):
            ModeThresholds(accept=0.8, good_enough=0.9)

    def test_active_mode_thresholds(self):
        config = RefinementConfig(mode=OperationMode.FULL_AUTO)
        assert config.thresholds.accept == 0.85
        assert config.thresholds.good_enough == 0.75


class TestEnums:
    def test_criterion_label(self):
        assert Criterion.CLARITY_READABILITY.label == "clarity readability"

    def test_severity_rank(self):
        ranked = sorted([Severity.MINOR, Severity.CRITICAL, Severity.MAJOR], key=lambda s: s.rank)
        assert ranked == [Severity.CRITICAL, Severity.MAJOR, Severity.MINOR]

    def test_terminal_statuses(self):
        assert not RefinementStatus.RUNNING.is_terminal
        assert all(
            s.is_terminal for s in RefinementStatus if s is not RefinementStatus.RUNNING
        )

    def test_recommendation_groups(self):
        assert Recommendation.ACCEPT_WITH_MINOR_REVISION.is_accept
        assert Recommendation.REGENERATE.is_reject
        assert not Recommendation.ESCALATE_TO_HUMAN.is_accept


class TestJudgeRecords:
    def test_criterion_score_range(self):
        with pytest.raises(ValidationError, match="out of range"):
            JudgeVerdict(
                model_id="judge-a",
                overall_score=0.8,
                criteria_scores={Criterion.COMPLETENESS: 1.2},
                recommendation=Recommendation.ACCEPT,
            )

    def test_issue_instruction_falls_back_to_description(self):
        issue = TargetedIssue(
            criterion=Criterion.COMPLETENESS,
            severity=Severity.MAJOR,
            section_id="document",
            description="No summary",
            source="heuristic",
        )
        assert issue.is_document_scope
        assert issue.instruction == "No summary"
