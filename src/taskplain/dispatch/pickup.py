"""Begin work on a task: activate its lineage and suggest child work."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..constants import DEFAULT_CHILD_SUGGESTION_LIMIT
from ..errors import TaskNotFoundError, TransitionViolation
from ..task_engine.engine import MoveResult, TaskService
from ..task_engine.model import Kind, State, TaskDoc
from ..task_engine.query import TaskQueryService
from ..task_engine.ranking import build_ranking_context, is_task_ready
from .scheduler import NextOptions, RankedCandidate, Scheduler


@dataclass
class PickupMove:
    id: str
    from_state: State
    to_state: State
    changed: bool
    from_path: Path
    to_path: Path
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "changed": self.changed,
            "from_path": str(self.from_path),
            "to_path": str(self.to_path),
        }
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class ChildNotReady:
    doc: TaskDoc
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.doc.meta.id, "state": self.doc.meta.state.value, "reason": self.reason}


@dataclass
class PickupChildren:
    candidates: list[RankedCandidate] = field(default_factory=list)
    selected: list[RankedCandidate] = field(default_factory=list)
    not_ready: list[ChildNotReady] = field(default_factory=list)
    include_blocked: bool = False
    total_direct_children: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "selected": [c.to_dict() for c in self.selected],
            "not_ready": [n.to_dict() for n in self.not_ready],
            "include_blocked": self.include_blocked,
            "total_direct_children": self.total_direct_children,
        }


@dataclass
class PickupResult:
    dry_run: bool
    target: TaskDoc
    ancestors: list[TaskDoc]
    moves: list[PickupMove]
    children: PickupChildren

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "target": {
                "id": self.target.meta.id,
                "kind": self.target.meta.kind.value,
                "state": self.target.meta.state.value,
                "path": str(self.target.path),
            },
            "ancestors": [
                {"id": doc.meta.id, "kind": doc.meta.kind.value, "state": doc.meta.state.value}
                for doc in self.ancestors
            ],
            "moves": [move.to_dict() for move in self.moves],
            "children": self.children.to_dict(),
        }


class PickupService:
    """Sequence "start working on X".

    Ancestors are promoted ``idea -> ready`` top-down, the target moves to
    ``in-progress``, and the resulting snapshot (simulated under dry-run) is
    used to propose ready child work.
    """

    def __init__(self, task_service: TaskService) -> None:
        self.task_service = task_service

    def execute(
        self,
        task_id: str,
        dry_run: bool = False,
        include_blocked_children: bool = False,
        child_suggestion_limit: int = DEFAULT_CHILD_SUGGESTION_LIMIT,
    ) -> PickupResult:
        child_limit = max(child_suggestion_limit, 0)
        tasks = self.task_service.store.list_all_tasks()
        query = TaskQueryService(tasks)
        target = query.get_task(task_id)
        if target is None:
            raise TaskNotFoundError(task_id, f"Task with id '{task_id}' not found")
        if target.meta.state.is_terminal:
            raise TransitionViolation(
                f"Cannot pick up task '{task_id}' because it is {target.meta.state.value}"
            )

        updated: dict[str, TaskDoc] = {doc.meta.id: doc.copy() for doc in tasks}
        moves: list[PickupMove] = []

        def record_move(result: MoveResult) -> None:
            task = result.meta.id
            moves.append(PickupMove(
                task, result.from_state, result.to_state, result.changed, result.from_path, result.to_path,
            ))
            updated[task] = TaskDoc(meta=result.meta.copy(), body=updated[task].body, path=result.to_path)

        def record_noop(doc: TaskDoc, reason: str) -> None:
            moves.append(PickupMove(
                doc.meta.id, doc.meta.state, doc.meta.state, False, doc.path, doc.path, reason,
            ))

        for ancestor in query.get_ancestors(task_id):
            if ancestor.meta.state.is_terminal:
                record_noop(ancestor, "terminal_state")
            elif ancestor.meta.state != State.IDEA:
                record_noop(ancestor, "already_active")
            else:
                record_move(self.task_service.move(ancestor.meta.id, State.READY, dry_run=dry_run))

        if target.meta.state in (State.IDEA, State.READY):
            record_move(self.task_service.move(task_id, State.IN_PROGRESS, dry_run=dry_run))
        else:
            record_noop(target, "already_active")

        final_docs = list(updated.values())
        final_query = TaskQueryService(final_docs)
        final_target = final_query.get_task(task_id)
        if final_target is None:
            raise TaskNotFoundError(task_id, f"Failed to load task '{task_id}' after pickup operations")
        direct_children = final_query.get_children(task_id)

        children = self._child_context(final_docs, direct_children, task_id, child_limit, include_blocked_children)
        logger.info(
            "Picked up {} ({} moves, {} child suggestions)",
            task_id, sum(1 for m in moves if m.changed), len(children.selected),
        )
        return PickupResult(
            dry_run=dry_run,
            target=final_target,
            ancestors=final_query.get_ancestors(task_id),
            moves=moves,
            children=children,
        )

    @staticmethod
    def _child_context(
        tasks: list[TaskDoc],
        direct_children: list[TaskDoc],
        parent_id: str,
        child_limit: int,
        include_blocked: bool,
    ) -> PickupChildren:
        context = PickupChildren(include_blocked=include_blocked, total_direct_children=len(direct_children))
        if not direct_children:
            return context

        ctx = build_ranking_context(tasks)
        for child in direct_children:
            readiness = is_task_ready(child, ctx, allow_blocked=include_blocked)
            if not readiness.ready:
                context.not_ready.append(ChildNotReady(child, readiness.reason or "not_ready"))

        if child_limit == 0:
            return context

        evaluation = Scheduler(tasks, ctx).evaluate(NextOptions(
            count=max(child_limit, 1),
            kinds={Kind.TASK, Kind.STORY},
            parent=parent_id,
            include_blocked=include_blocked,
        ))
        child_ids = {doc.meta.id for doc in direct_children}
        limit = max(child_limit, len(evaluation.selected))
        context.candidates = [c for c in evaluation.candidates if c.id in child_ids][:limit]
        kept = {c.id for c in context.candidates}
        context.selected = [c for c in evaluation.selected if c.id in kept]
        return context
