"""Exception taxonomy raised by the task engine.

Every error derives from :class:`TaskplainError`, itself a ``ValueError`` so
callers that only guard against invalid input keep working.  Validation
findings are never raised; they are collected by
:mod:`taskplain.task_engine.validation`.
"""

from __future__ import annotations

from typing import Any, Optional


class TaskplainError(ValueError):
    """Base class for all engine errors."""


class TaskNotFoundError(TaskplainError, LookupError):
    """A referenced task id is not present in the snapshot."""

    def __init__(self, task_id: str, message: Optional[str] = None) -> None:
        self.task_id = task_id
        super().__init__(message or f"Task with id {task_id} not found")


class StructuralViolation(TaskplainError):
    """Cycle, depth, or kind-nesting rule broken by a requested change."""


class ReferentialViolation(TaskplainError):
    """Missing, duplicate, or self-referencing task reference."""


class TransitionViolation(TaskplainError):
    """Illegal state change, blocked-task guard, or incomplete descendants."""


class IntegrityGuard(TaskplainError):
    """Deletion refused because of live descendants or external references."""


class CascadeAborted(TaskplainError):
    """A write failed part-way through a cascade.

    Earlier descendant writes are not rolled back; ``summary`` holds what was
    applied before the failure.
    """

    def __init__(self, message: str, summary: Any = None) -> None:
        self.summary = summary
        super().__init__(message)


class LockTimeout(TaskplainError):
    """The named normalization lock could not be acquired."""
