"""Structural integrity checks: code fences, diagrams, headings and scripts."""

from __future__ import annotations

import re
import unicodedata
from collections import Counter
from dataclasses import dataclass, field

_FENCE_RE = re.compile(r"^\s{0,3}(`{3,}|~{3,})\s*([\w+-]*)")
_HEADING_RE = re.compile(r"^(#{1,6})\s+\S")

MERMAID_DIAGRAM_TYPES = (
    "graph",
    "flowchart",
    "sequenceDiagram",
    "classDiagram",
    "stateDiagram",
    "stateDiagram-v2",
    "erDiagram",
    "journey",
    "gantt",
    "pie",
    "quadrantChart",
    "requirementDiagram",
    "gitGraph",
    "mindmap",
    "timeline",
    "sankey-beta",
    "xychart-beta",
    "block-beta",
)

# Expected writing systems per ISO 639-1 language code
LANGUAGE_SCRIPTS: dict[str, frozenset[str]] = {
    "ru": frozenset({"CYRILLIC"}),
    "uk": frozenset({"CYRILLIC"}),
    "bg": frozenset({"CYRILLIC"}),
    "sr": frozenset({"CYRILLIC"}),
    "kk": frozenset({"CYRILLIC"}),
    "el": frozenset({"GREEK"}),
    "ar": frozenset({"ARABIC"}),
    "fa": frozenset({"ARABIC"}),
    "he": frozenset({"HEBREW"}),
    "hi": frozenset({"DEVANAGARI"}),
    "th": frozenset({"THAI"}),
    "zh": frozenset({"CJK"}),
    "ja": frozenset({"CJK", "HIRAGANA", "KATAKANA"}),
    "ko": frozenset({"HANGUL", "CJK"}),
}
_LATIN = frozenset({"LATIN"})


@dataclass
class CodeBlock:
    """A fenced block located in a Markdown body."""

    language: str
    content: str
    start_line: int
    closed: bool = True


@dataclass
class ScriptProfile:
    """Letter counts per writing system."""

    counts: Counter = field(default_factory=Counter)
    mixed_words: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def dominant(self) -> str | None:
        if not self.counts:
            return None
        return self.counts.most_common(1)[0][0]

    def foreign_share(self, expected: frozenset[str]) -> float:
        if not self.total:
            return 0.0
        foreign = sum(c for s, c in self.counts.items() if s not in expected)
        return foreign / self.total


def find_code_blocks(text: str) -> list[CodeBlock]:
    """Locate fenced code blocks. A block left open runs to the end of text."""
    blocks: list[CodeBlock] = []
    opener: str | None = None
    language = ""
    start = 0
    lines: list[str] = []

    for lineno, line in enumerate(text.splitlines(), start=1):
        match = _FENCE_RE.match(line)
        if opener is None:
            if match:
                opener = match.group(1)
                language = match.group(2).lower()
                start = lineno
                lines = []
            continue
        stripped = line.strip()
        if match and stripped.startswith(opener[0] * len(opener)) and not match.group(2):
            blocks.append(CodeBlock(language, "\n".join(lines), start))
            opener = None
            continue
        lines.append(line)

    if opener is not None:
        blocks.append(CodeBlock(language, "\n".join(lines), start, closed=False))
    return blocks


def unbalanced_fences(text: str) -> int:
    """Number of code fences that are opened but never closed."""
    return sum(1 for b in find_code_blocks(text) if not b.closed)


def validate_mermaid(source: str) -> str | None:
    """Return an error message for invalid Mermaid source, or None if it looks valid."""
    lines = [
        ln.strip()
        for ln in source.splitlines()
        if ln.strip() and not ln.strip().startswith("%%")
    ]
    if not lines:
        return "empty diagram"

    header = lines[0].split()[0]
    if header not in MERMAID_DIAGRAM_TYPES:
        return f"unknown diagram type '{header}'"

    body = re.sub(r'"[^"\n]*"', "", "\n".join(lines))
    pairs = {")": "(", "]": "[", "}": "{"}
    stack: list[str] = []
    for ch in body:
        if ch in "([{":
            stack.append(ch)
        elif ch in pairs:
            if not stack or stack[-1] != pairs[ch]:
                return f"unbalanced '{ch}'"
            stack.pop()
    if stack:
        return f"unclosed '{stack[-1]}'"
    return None


def diagram_errors(text: str) -> list[str]:
    """Validation errors for every Mermaid block in ``text``."""
    errors: list[str] = []
    for block in find_code_blocks(text):
        if block.language != "mermaid" or not block.closed:
            continue
        error = validate_mermaid(block.content)
        if error:
            errors.append(f"line {block.start_line}: {error}")
    return errors


def heading_skips(text: str) -> int:
    """Count headings that jump more than one level deeper than the previous one."""
    skips = 0
    previous = 0
    in_fence = False
    for line in text.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _HEADING_RE.match(line)
        if match:
            level = len(match.group(1))
            if previous and level > previous + 1:
                skips += 1
            previous = level
    return skips


def _script_of(ch: str) -> str | None:
    if not ch.isalpha():
        return None
    try:
        name = unicodedata.name(ch)
    except ValueError:
        return None
    # First word of the Unicode name is the script: "LATIN SMALL LETTER A"
    return name.split()[0]


def script_profile(text: str) -> ScriptProfile:
    """Count letters per script and collect words mixing several scripts."""
    profile = ScriptProfile()
    for word in re.findall(r"\w+", text):
        scripts = set()
        for ch in word:
            script = _script_of(ch)
            if script:
                profile.counts[script] += 1
                scripts.add(script)
        if len(scripts) > 1 and not scripts <= {"CJK", "HIRAGANA", "KATAKANA", "HANGUL"}:
            profile.mixed_words.append(word)
    return profile


def expected_scripts(language: str, profile: ScriptProfile | None = None) -> frozenset[str]:
    """Writing systems a lesson in ``language`` is expected to use.

    Unknown languages fall back to Latin, or to the dominant script of
    ``profile`` when given.
    """
    code = language.lower().split("-")[0]
    if code in LANGUAGE_SCRIPTS:
        return LANGUAGE_SCRIPTS[code]
    if code in ("", "und") and profile is not None and profile.dominant:
        return frozenset({profile.dominant})
    return _LATIN
