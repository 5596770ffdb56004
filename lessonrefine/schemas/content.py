"""Lesson document and content specification schemas.

A lesson arrives from the upstream generation stage as an ordered list of
sections. The content specification describes what the lesson is supposed
to teach and is used by the heuristic filter and the judges.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

# Section id used for findings that cannot be attributed to one section
DOCUMENT_SCOPE = "document"


class LessonSection(BaseModel):
    """One addressable section of a lesson."""

    id: str = Field(description="Stable section identifier")
    title: str = Field(default="", description="Section heading text")
    body: str = Field(default="", description="Markdown body without the heading")

    def to_markdown(self) -> str:
        """Render the section as a level-2 Markdown block."""
        if self.title:
            return f"## {self.title}\n\n{self.body.strip()}\n"
        return f"{self.body.strip()}\n"


class LessonDocument(BaseModel):
    """An ordered, immutable collection of lesson sections.

    Mutations return new documents so earlier snapshots kept in the
    iteration history are never changed behind the controller's back.
    """

    sections: list[LessonSection] = Field(
        default_factory=list, description="Sections in reading order"
    )

    @model_validator(mode="after")
    def _unique_ids(self) -> LessonDocument:
        seen: set[str] = set()
        for section in self.sections:
            if section.id in seen:
                raise ValueError(f"Duplicate section id: {section.id}")
            if section.id == DOCUMENT_SCOPE:
                raise ValueError(f"Section id '{DOCUMENT_SCOPE}' is reserved")
            seen.add(section.id)
        return self

    @property
    def section_ids(self) -> list[str]:
        return [s.id for s in self.sections]

    def index_of(self, section_id: str) -> int:
        """Return the position of a section, raising KeyError if absent."""
        for i, section in enumerate(self.sections):
            if section.id == section_id:
                return i
        raise KeyError(section_id)

    def get(self, section_id: str) -> LessonSection:
        return self.sections[self.index_of(section_id)]

    def neighbors(self, section_id: str) -> tuple[LessonSection | None, LessonSection | None]:
        """Return the sections immediately before and after ``section_id``."""
        i = self.index_of(section_id)
        prev = self.sections[i - 1] if i > 0 else None
        nxt = self.sections[i + 1] if i + 1 < len(self.sections) else None
        return prev, nxt

    def with_section_body(self, section_id: str, body: str) -> LessonDocument:
        """Return a copy of the document with one section body replaced."""
        i = self.index_of(section_id)
        sections = list(self.sections)
        sections[i] = sections[i].model_copy(update={"body": body})
        return LessonDocument(sections=sections)

    def to_markdown(self) -> str:
        return "\n".join(s.to_markdown() for s in self.sections)

    @classmethod
    def from_markdown(cls, text: str) -> LessonDocument:
        """Split Markdown on level-2 headings into sections.

        Text before the first heading becomes a section with id ``preamble``.
        Section ids are slugified titles, suffixed on collision.
        """
        sections: list[LessonSection] = []
        title = ""
        lines: list[str] = []
        in_fence = False

        def flush() -> None:
            body = "\n".join(lines).strip()
            if not title and not body:
                return
            base = _slugify(title) if title else "preamble"
            if base == DOCUMENT_SCOPE:
                base = f"{DOCUMENT_SCOPE}-section"
            sid = base
            n = 2
            while any(s.id == sid for s in sections):
                sid = f"{base}-{n}"
                n += 1
            sections.append(LessonSection(id=sid, title=title, body=body))

        for line in text.splitlines():
            if line.lstrip().startswith("```"):
                in_fence = not in_fence
            if not in_fence and line.startswith("## "):
                flush()
                title = line[3:].strip()
                lines = []
                continue
            lines.append(line)
        flush()
        return cls(sections=sections)


class ContentSpec(BaseModel):
    """What the lesson is supposed to deliver."""

    title: str = Field(default="", description="Lesson title")
    objectives: list[str] = Field(
        default_factory=list, description="Learning objectives the lesson must cover"
    )
    audience: str = Field(default="", description="Target audience description")
    required_sections: list[str] = Field(
        default_factory=lambda: ["introduction", "conclusion"],
        description="Section names that must be present (matched against ids and titles)",
    )
    language: str = Field(default="en", description="ISO 639-1 language code of the lesson")
    min_examples: int = Field(default=1, ge=0, description="Minimum number of worked examples")
    min_exercises: int = Field(default=1, ge=0, description="Minimum number of exercises")
    keywords: list[str] = Field(
        default_factory=list, description="Key terms expected to appear in the lesson"
    )
    prohibited_terms: list[str] = Field(
        default_factory=list, description="Terms that must not appear in the lesson"
    )


def _slugify(text: str) -> str:
    out = []
    for ch in text.lower():
        if ch.isalnum():
            out.append(ch)
        elif out and out[-1] != "-":
            out.append("-")
    slug = "".join(out).strip("-")
    return slug or "section"
