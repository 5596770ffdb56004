"""Capability interfaces and their LLM-backed implementations."""

from lessonrefine.capabilities.base import FixVerifier, Judge, Patcher, SectionRegenerator
from lessonrefine.capabilities.llm import (
    LLMFixVerifier,
    LLMJudge,
    LLMPatcher,
    LLMSectionRegenerator,
    parse_verdict,
)

__all__ = [
    "FixVerifier",
    "Judge",
    "LLMFixVerifier",
    "LLMJudge",
    "LLMPatcher",
    "LLMSectionRegenerator",
    "Patcher",
    "SectionRegenerator",
    "parse_verdict",
]
