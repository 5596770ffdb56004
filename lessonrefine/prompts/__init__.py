"""Prompt templates for the judge, patcher, regenerator and delta judge.

Templates are Markdown files next to this module, rendered with Jinja2.
Optional variables may be omitted: undefined names render empty and
``{% if %}`` blocks around them are skipped.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, TemplateNotFound

_PROMPTS_DIR = Path(__file__).parent


def _percent(value: float) -> str:
    return f"{value * 100:.0f}%"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(_PROMPTS_DIR, encoding="utf-8"),
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.filters["percent"] = _percent
    return env


def available_prompts() -> list[str]:
    """Names of the shipped templates, without the .md extension."""
    return sorted(p.stem for p in _PROMPTS_DIR.glob("*.md"))


def render_prompt(template_name: str, **variables: object) -> str:
    """Render the template ``<template_name>.md`` with ``variables``.

    Raises:
        FileNotFoundError: If no such template ships with the package.
    """
    try:
        template = _environment().get_template(f"{template_name}.md")
    except TemplateNotFound:
        raise FileNotFoundError(
            f"Prompt template not found: {template_name} "
            f"(available: {', '.join(available_prompts())})"
        ) from None
    return template.render(**variables)
