"""Deterministic fix routing and execution batching."""

from lessonrefine.routing.batcher import ExecutionBatcher
from lessonrefine.routing.router import ROUTING_TABLE, FixRouter, RoutingDecision

__all__ = [
    "ExecutionBatcher",
    "FixRouter",
    "ROUTING_TABLE",
    "RoutingDecision",
]
