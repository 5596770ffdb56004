"""Execution batcher: parallel-safe, order-preserving grouping of tasks."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from lessonrefine.schemas.judge import FixAction
from lessonrefine.schemas.refinement import SectionRefinementTask

logger = logging.getLogger(__name__)

# Surgical edits closer than this share a transition and must not run together
MIN_SECTION_GAP = 2


class ExecutionBatcher:
    """Groups section tasks into batches that are safe to run concurrently.

    Surgical edits are sorted by section index and packed greedily; an edit
    adjacent to the previous task of the open batch starts a new batch.
    Regenerations always run alone. Surgical batches come first, then the
    regenerations in section order.
    """

    def __init__(self, min_gap: int = MIN_SECTION_GAP) -> None:
        self._min_gap = min_gap

    def build(self, tasks: Sequence[SectionRefinementTask]) -> list[list[str]]:
        surgical = sorted(
            (t for t in tasks if t.action is FixAction.SURGICAL_EDIT),
            key=lambda t: t.section_index,
        )
        regenerate = sorted(
            (t for t in tasks if t.action is FixAction.REGENERATE_SECTION),
            key=lambda t: t.section_index,
        )

        batches: list[list[str]] = []
        current: list[SectionRefinementTask] = []
        for task in surgical:
            if current and task.section_index - current[-1].section_index < self._min_gap:
                batches.append([t.task_id for t in current])
                current = []
            current.append(task)
        if current:
            batches.append([t.task_id for t in current])

        batches.extend([t.task_id] for t in regenerate)

        logger.debug(
            "Batched %d surgical and %d regeneration task(s) into %d batch(es)",
            len(surgical), len(regenerate), len(batches),
        )
        return batches
