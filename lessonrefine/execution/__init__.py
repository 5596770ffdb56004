"""Batched, concurrency-bounded execution of refinement plans."""

from lessonrefine.execution.executor import ExecutionReport, TaskExecutor

__all__ = ["ExecutionReport", "TaskExecutor"]
