"""Refinement event emitter for progress observers.

Emits structured events at every refinement milestone: session start,
batch and task dispatch, patch application, verification, iteration
boundaries, convergence and termination. Emission is fire-and-forget so a
slow observer never stalls the refinement loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class RefinementEventType(StrEnum):
    """Types of refinement events emitted to observers."""

    REFINEMENT_START = "refinement_start"
    ARBITER_COMPLETE = "arbiter_complete"
    BATCH_STARTED = "batch_started"
    TASK_STARTED = "task_started"
    PATCH_APPLIED = "patch_applied"
    VERIFICATION_RESULT = "verification_result"
    BATCH_COMPLETE = "batch_complete"
    SECTION_LOCKED = "section_locked"
    REGRESSION_DETECTED = "regression_detected"
    BUDGET_WARNING = "budget_warning"
    ITERATION_COMPLETE = "iteration_complete"
    CONVERGENCE_DETECTED = "convergence_detected"
    BEST_EFFORT_SELECTED = "best_effort_selected"
    ESCALATION_TRIGGERED = "escalation_triggered"
    REFINEMENT_COMPLETE = "refinement_complete"


class RefinementEvent(BaseModel):
    """A single refinement event."""

    type: RefinementEventType = Field(description="Event type")
    iteration: int = Field(default=0, description="Iteration number the event belongs to")
    section_id: str | None = Field(default=None, description="Affected section, if any")
    score_delta: float | None = Field(default=None, description="Score change, if any")
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix timestamp when the event occurred",
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event payload, varies by event type",
    )


# Type alias for event listener callbacks
EventListener = Callable[[RefinementEvent], Any]


class RefinementEventEmitter:
    """Broadcasts refinement events to registered listeners.

    Listeners can be sync or async callables. Sync listeners run inline;
    coroutines returned by async listeners are scheduled as tasks and never
    awaited by ``emit``. Call ``drain()`` to wait for them.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._history: list[RefinementEvent] = []
        self._pending: set[asyncio.Task] = set()

    @property
    def history(self) -> list[RefinementEvent]:
        """All events emitted so far."""
        return list(self._history)

    def of_type(self, event_type: RefinementEventType) -> list[RefinementEvent]:
        return [e for e in self._history if e.type == event_type]

    def add_listener(self, listener: EventListener) -> None:
        """Register a listener to receive refinement events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        """Remove a previously registered listener."""
        self._listeners = [ln for ln in self._listeners if ln is not listener]

    def emit(
        self,
        event_type: RefinementEventType,
        *,
        iteration: int = 0,
        section_id: str | None = None,
        score_delta: float | None = None,
        **data: Any,
    ) -> RefinementEvent:
        """Emit a refinement event to all registered listeners.

        Listener exceptions are logged but never propagate.
        """
        event = RefinementEvent(
            type=event_type,
            iteration=iteration,
            section_id=section_id,
            score_delta=score_delta,
            data=data,
        )
        self._history.append(event)

        for listener in self._listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    self._schedule(result, event_type)
            except Exception:
                logger.exception("Event listener error for %s", event_type)
        return event

    def _schedule(self, coro: Any, event_type: RefinementEventType) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running loop, dropped async listener for %s", event_type)
            return
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Async event listener failed: %s", task.exception(),
            )

    async def drain(self) -> None:
        """Wait for every scheduled async listener to finish."""
        while self._pending:
            batch = list(self._pending)
            await asyncio.gather(*batch, return_exceptions=True)
            self._pending.difference_update(batch)
