"""Provide the public `taskplain` package exports."""

from __future__ import annotations

from .dispatch.pickup import PickupService
from .dispatch.scheduler import NextOptions, Scheduler
from .task_engine.engine import TaskService
from .task_engine.store import TaskStore
from .task_engine.validation import ValidationService

__version__ = "0.1.0"

__all__ = [
    "NextOptions",
    "PickupService",
    "Scheduler",
    "TaskService",
    "TaskStore",
    "ValidationService",
    "__version__",
]
