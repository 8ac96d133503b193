"""Lightweight task orchestrator for static-site builds.

Provides Task registration, Series/Parallel composition, async execution with
per-task results, content-hash caching, file watching, and a Typer CLI.
"""

from .core import (  # re-export for convenience
    Orchestrator,
    Parallel,
    RunResult,
    Series,
    Task,
    TaskSpec,
    TaskStatus,
    discover_tasks,
    parallel,
    series,
    task,
)
from .errors import (
    CompletionError,
    CompositionFailure,
    CycleError,
    DuplicateNameError,
    TaskFailure,
    UnknownTaskError,
)
from .watch import WatchRule

__all__ = [
    "Orchestrator",
    "Parallel",
    "RunResult",
    "Series",
    "Task",
    "TaskSpec",
    "TaskStatus",
    "WatchRule",
    "discover_tasks",
    "parallel",
    "series",
    "task",
    "CompletionError",
    "CompositionFailure",
    "CycleError",
    "DuplicateNameError",
    "TaskFailure",
    "UnknownTaskError",
]
