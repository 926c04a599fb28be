"""Core modules for the plantree orchestrator."""

from plantree.core.claims import ClaimConflict, ClaimStore
from plantree.core.graph import DependencyGraph, GraphError
from plantree.core.models import Claim, Plan, Task
from plantree.core.plans import PlanParseError, PlanStore
from plantree.core.selector import TaskSelector, TaskState

__all__ = [
    "Claim",
    "ClaimConflict",
    "ClaimStore",
    "DependencyGraph",
    "GraphError",
    "Plan",
    "PlanParseError",
    "PlanStore",
    "Task",
    "TaskSelector",
    "TaskState",
]
