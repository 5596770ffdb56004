"""Text statistics: word counting, syllables and Flesch-Kincaid grade."""

from __future__ import annotations

import re

_FENCED_BLOCK_RE = re.compile(r"```.*?(?:```|\Z)", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`[^`\n]*`")
_LINK_RE = re.compile(r"!?\[([^\]]*)\]\([^)]*\)")
_MARKUP_RE = re.compile(r"^\s{0,3}(?:#{1,6}\s+|>\s?|[-*+]\s+|\d+[.)]\s+)", re.MULTILINE)
_EMPHASIS_RE = re.compile(r"[*_~]{1,3}")
_WORD_RE = re.compile(r"[^\W\d_]+(?:['’-][^\W\d_]+)*")
_ENGLISH_WORD_RE = re.compile(r"\b[a-zA-Z]+\b")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_VOWEL_GROUP_RE = re.compile(r"[aeiouy]+")


def strip_markdown(text: str) -> str:
    """Remove code blocks, inline code and Markdown syntax, keeping prose."""
    text = _FENCED_BLOCK_RE.sub(" ", text)
    text = _INLINE_CODE_RE.sub(" ", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _MARKUP_RE.sub("", text)
    return _EMPHASIS_RE.sub("", text)


def words(text: str) -> list[str]:
    """Prose words of ``text`` in any script, Markdown stripped."""
    return _WORD_RE.findall(strip_markdown(text))


def count_words(text: str) -> int:
    return len(words(text))


def count_syllables(word: str) -> int:
    """Estimate English syllables by counting vowel groups.

    Silent trailing 'e' (except '-le') and non-syllabic '-es'/'-ed' are
    discounted. Every word has at least one syllable.
    """
    clean = re.sub(r"[^a-z]", "", word.lower())
    if not clean:
        return 0
    if len(clean) <= 3:
        return 1

    count = len(_VOWEL_GROUP_RE.findall(clean))
    if clean.endswith("e") and not clean.endswith("le"):
        count = max(1, count - 1)
    if clean.endswith(("es", "ed")) and not re.search(r"[aeiouy]$", clean[:-2]):
        count = max(1, count - 1)
    return max(1, count)


def _sentences(text: str) -> list[str]:
    return [s for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


def flesch_kincaid_grade(text: str) -> float:
    """Flesch-Kincaid grade level of English prose, clamped to [1, 20]."""
    prose = strip_markdown(text)
    sentence_count = max(1, len(_sentences(prose)))
    english = _ENGLISH_WORD_RE.findall(prose)
    word_count = max(1, len(english))
    syllables = sum(count_syllables(w) for w in english)

    grade = 0.39 * (word_count / sentence_count) + 11.8 * (syllables / word_count) - 15.59
    return max(1.0, min(20.0, grade))


def flesch_reading_ease(text: str) -> float:
    """Flesch reading ease of English prose, clamped to [0, 100]."""
    prose = strip_markdown(text)
    sentence_count = max(1, len(_sentences(prose)))
    english = _ENGLISH_WORD_RE.findall(prose)
    word_count = max(1, len(english))
    syllables = sum(count_syllables(w) for w in english)

    ease = 206.835 - 1.015 * (word_count / sentence_count) - 84.6 * (syllables / word_count)
    return max(0.0, min(100.0, ease))


def language_metrics(text: str) -> dict[str, float]:
    """Script-agnostic readability metrics usable for any language."""
    prose = strip_markdown(text)
    tokens = _WORD_RE.findall(prose)
    sentences = _sentences(prose)
    paragraphs = [p for p in re.split(r"\n\s*\n", text) if p.strip()]
    word_count = len(tokens)
    return {
        "avg_sentence_length": word_count / len(sentences) if sentences else 0.0,
        "avg_word_length": (
            sum(len(t) for t in tokens) / word_count if word_count else 0.0
        ),
        "paragraph_break_ratio": len(paragraphs) / max(1, len(sentences)),
    }
