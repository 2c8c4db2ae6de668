"""Task service: state transitions, cascades, blocking, hierarchy edits.

This is the entry point for every mutation.  Each call reads a fresh
snapshot from :class:`TaskStore`, validates the request against it and
raises on the first violation before anything is written.  ``dry_run``
runs the same checks and returns the would-be result with zero writes.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from ..errors import (
    CascadeAborted,
    IntegrityGuard,
    ReferentialViolation,
    StructuralViolation,
    TaskNotFoundError,
    TaskplainError,
    TransitionViolation,
)
from ..utils import _now_iso, _slugify
from .hierarchy import build_hierarchy_index
from .model import (
    PARENT_KIND,
    Ambiguity,
    Executor,
    Isolation,
    Kind,
    Priority,
    Size,
    State,
    TaskDoc,
    TaskMeta,
    validate_meta_dict,
)
from .normalization import TaskWarning
from .sections import DEFAULT_BODY, insights_look_empty, resolve_section_heading, set_section
from .store import TaskStore
from .taskfile import path_for_state

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[State, set[State]] = {
    State.IDEA: {State.READY, State.IN_PROGRESS, State.DONE, State.CANCELED},
    State.READY: {State.IN_PROGRESS, State.DONE, State.CANCELED},
    State.IN_PROGRESS: {State.READY, State.DONE, State.CANCELED},
    State.DONE: {State.READY},  # reopen
    State.CANCELED: {State.READY},  # restore
}


def can_transition(current: State, target: State) -> bool:
    return current == target or target in _VALID_TRANSITIONS[current]


class CascadeMode(str, Enum):
    NONE = "none"
    READY = "ready"
    CANCEL = "cancel"


UPDATE_META_FIELDS = (
    "title",
    "priority",
    "assignees",
    "labels",
    "state",
    "blocked",
    "commit_message",
    "links",
    "size",
    "ambiguity",
    "executor",
    "isolation",
    "touches",
    "depends_on",
    "blocks",
)

UNSETTABLE_FIELDS = (
    "assignees",
    "labels",
    "links",
    "blocked",
    "commit_message",
    "touches",
    "depends_on",
    "blocks",
)

_ENUM_FIELDS: dict[str, type[Enum]] = {
    "priority": Priority,
    "state": State,
    "size": Size,
    "ambiguity": Ambiguity,
    "executor": Executor,
    "isolation": Isolation,
}

_LIST_FIELDS = ("assignees", "labels", "touches", "depends_on", "blocks")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class CascadeChild:
    id: str
    reason: str
    from_state: Optional[State] = None
    to_state: Optional[State] = None
    changed: Optional[bool] = None
    skipped: Optional[bool] = None
    errored: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "from": self.from_state.value if self.from_state else None,
            "to": self.to_state.value if self.to_state else None,
            "changed": self.changed,
            "skipped": self.skipped,
            "errored": self.errored,
            "reason": self.reason,
        })


@dataclass
class CascadeSummary:
    mode: CascadeMode = CascadeMode.NONE
    children: list[CascadeChild] = field(default_factory=list)
    changed_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "children": [child.to_dict() for child in self.children],
            "changed_count": self.changed_count,
        }


@dataclass
class MoveResult:
    dry_run: bool
    changed: bool
    from_path: Path
    to_path: Path
    from_state: State
    to_state: State
    meta: TaskMeta
    cascade: CascadeSummary = field(default_factory=CascadeSummary)
    warnings: list[TaskWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "changed": self.changed,
            "from_path": str(self.from_path),
            "to_path": str(self.to_path),
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "meta": self.meta.to_dict(),
            "cascade": self.cascade.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class BlockResult:
    dry_run: bool
    changed: bool
    meta: TaskMeta
    path: Path
    blocked: Optional[str]
    previous_blocked: Optional[str]
    warnings: list[TaskWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "changed": self.changed,
            "meta": self.meta.to_dict(),
            "path": str(self.path),
            "blocked": self.blocked,
            "previous_blocked": self.previous_blocked,
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class TaskRef:
    id: str
    kind: Kind
    path: Path
    state: Optional[State] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "kind": self.kind.value,
            "state": self.state.value if self.state else None,
            "path": str(self.path),
        })


@dataclass
class ParentChildrenUpdate:
    id: str
    path: Path
    previous: list[str]
    next: list[str]
    role: str  # "target" | "former"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": str(self.path),
            "previous": list(self.previous),
            "next": list(self.next),
            "role": self.role,
        }


@dataclass
class DeleteResult:
    dry_run: bool
    deleted: bool
    task: TaskRef
    descendants: list[TaskRef]
    parent_updates: list[ParentChildrenUpdate]

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "deleted": self.deleted,
            "task": self.task.to_dict(),
            "descendants": [d.to_dict() for d in self.descendants],
            "parent_updates": [u.to_dict() for u in self.parent_updates],
        }


@dataclass
class AdoptResult:
    dry_run: bool
    changed: bool
    parent: TaskRef
    child: TaskRef
    updates: list[ParentChildrenUpdate]

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "changed": self.changed,
            "parent": self.parent.to_dict(),
            "child": self.child.to_dict(),
            "updates": [u.to_dict() for u in self.updates],
        }


@dataclass
class SectionChange:
    id: str
    changed: bool
    added: bool

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "changed": self.changed, "added": self.added}


@dataclass
class UpdateResult:
    dry_run: bool
    changed: bool
    meta: TaskMeta
    from_path: Path
    to_path: Path
    meta_changes: list[str]
    section_changes: list[SectionChange]

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "changed": self.changed,
            "meta": self.meta.to_dict(),
            "from_path": str(self.from_path),
            "to_path": str(self.to_path),
            "meta_changes": list(self.meta_changes),
            "section_changes": [s.to_dict() for s in self.section_changes],
        }


@dataclass
class _SingleMove:
    changed: bool
    from_path: Path
    to_path: Path
    from_state: State
    to_state: State
    doc: TaskDoc


def _coerce_state(value: Union[State, str]) -> State:
    try:
        return State(value)
    except ValueError:
        raise TaskplainError(f"Unknown state '{value}'. Expected one of: {', '.join(State.values())}") from None


def _coerce_kind(value: Union[Kind, str]) -> Kind:
    try:
        return Kind(value)
    except ValueError:
        raise TaskplainError(f"Unknown kind '{value}'. Expected one of: {', '.join(Kind.values())}") from None


def _children_update(doc: TaskDoc, children: list[str], timestamp: str) -> TaskDoc:
    updated = doc.copy()
    updated.meta.children = list(children)
    updated.meta.updated_at = timestamp
    updated.meta.last_activity_at = timestamp
    return updated


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class TaskService:
    """Apply validated changes to tasks on disk.

    Parameters
    ----------
    repo_root:
        Repository root containing ``tasks/``.
    store:
        Optional pre-built store (used by tests and the fix service).
    """

    def __init__(self, repo_root: Optional[Path] = None, store: Optional[TaskStore] = None) -> None:
        if store is None:
            if repo_root is None:
                raise TaskplainError("TaskService needs a repo_root or a store")
            store = TaskStore(repo_root)
        self.store = store
        self.repo_root = store.repo_root

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _snapshot(self) -> list[TaskDoc]:
        return self.store.list_all_tasks()

    @staticmethod
    def _find(tasks: list[TaskDoc], task_id: str) -> TaskDoc:
        for doc in tasks:
            if doc.meta.id == task_id:
                return doc
        raise TaskNotFoundError(task_id)

    @staticmethod
    def collect_descendants(task_id: str, tasks: list[TaskDoc]) -> list[TaskDoc]:
        """Descendants of *task_id* in breadth-first hierarchy order."""
        index, _issues = build_hierarchy_index(tasks)
        return index.descendants_of(task_id)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def new_task(
        self,
        title: str,
        kind: Union[Kind, str] = Kind.TASK,
        parent: Optional[str] = None,
        state: Union[State, str] = State.IDEA,
        priority: Union[Priority, str] = Priority.NORMAL,
        assignees: Optional[list[str]] = None,
        labels: Optional[list[str]] = None,
        commit_message: Optional[str] = None,
    ) -> TaskDoc:
        """Create a task file with the default body and link it under *parent*."""
        kind = _coerce_kind(kind)
        state = _coerce_state(state)
        try:
            priority = Priority(priority)
        except ValueError:
            raise TaskplainError(f"Unknown priority '{priority}'") from None
        if not title or not title.strip():
            raise TaskplainError("Title must be non-empty")

        task_id = _slugify(title)
        parent_id = parent.strip() if parent else None
        timestamp = _now_iso()

        tasks = self._snapshot()
        if any(doc.meta.id == task_id for doc in tasks):
            raise TaskplainError(f"Task with id {task_id} already exists")

        if parent_id and kind == Kind.EPIC:
            raise StructuralViolation("Epics cannot declare a parent")

        parent_doc: Optional[TaskDoc] = None
        if parent_id:
            parent_doc = self._find(tasks, parent_id)
            expected = PARENT_KIND[kind]
            if parent_doc.meta.kind != expected:
                raise StructuralViolation(
                    f"{kind.value} '{task_id}' must have a {expected.value} parent "
                    f"but '{parent_doc.meta.kind.value}' was provided"
                )

        meta = TaskMeta(
            id=task_id,
            title=title.strip(),
            kind=kind,
            state=state,
            priority=priority,
            assignees=list(assignees or []),
            labels=list(labels or []),
            created_at=timestamp,
            updated_at=timestamp,
            completed_at=timestamp if state == State.DONE else None,
            last_activity_at=timestamp,
            links=[],
            commit_message=commit_message.strip() if commit_message and commit_message.strip() else None,
        )
        problems = validate_meta_dict(meta.to_dict())
        if problems:
            raise TaskplainError("; ".join(problems))

        doc = TaskDoc(meta=meta, body=DEFAULT_BODY, path=path_for_state(self.repo_root, meta, state, timestamp))
        self.store.create(doc)
        logger.info("Created %s %s at %s", kind.value, task_id, doc.path)

        if parent_doc is not None and task_id not in parent_doc.meta.children:
            updated = _children_update(parent_doc, parent_doc.meta.children + [task_id], timestamp)
            self.store.persist(updated)
        return doc

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    def move(
        self,
        task_id: str,
        next_state: Union[State, str],
        cascade: Union[CascadeMode, str] = CascadeMode.NONE,
        include_blocked: bool = False,
        force: bool = False,
        dry_run: bool = False,
        timestamp: Optional[str] = None,
    ) -> MoveResult:
        """Move a task to *next_state*, optionally cascading to its descendants.

        Raises:
            TaskNotFoundError: Unknown id.
            TransitionViolation: Illegal transition, blocked task without
                *force*, or destination file already present.
            CascadeAborted: A descendant write failed; earlier writes stay.
        """
        try:
            mode = CascadeMode(cascade)
        except ValueError:
            raise TaskplainError(
                f"Invalid cascade mode '{cascade}'. Expected one of: "
                f"{', '.join(m.value for m in CascadeMode)}"
            ) from None
        target = _coerce_state(next_state)
        timestamp = timestamp or _now_iso()

        tasks = self._snapshot()
        current = self._find(tasks, task_id)
        return self._move_loaded(tasks, current, target, mode, include_blocked, force, dry_run, timestamp)

    def _move_loaded(
        self,
        tasks: list[TaskDoc],
        current: TaskDoc,
        target: State,
        mode: CascadeMode,
        include_blocked: bool,
        force: bool,
        dry_run: bool,
        timestamp: str,
        meta_changes: Optional[dict[str, Any]] = None,
    ) -> MoveResult:
        task_id = current.meta.id
        if not can_transition(current.meta.state, target):
            raise TransitionViolation(f"Invalid transition from {current.meta.state.value} to {target.value}")

        blocked = current.meta.blocked
        if blocked is not None and current.meta.state != target and target != State.CANCELED and not force:
            detail = f": {blocked}" if blocked.strip() else ""
            raise TransitionViolation(
                f"Task '{task_id}' is blocked{detail}. Unblock, move to canceled, or pass --force to override."
            )

        descendants = [] if mode == CascadeMode.NONE else self.collect_descendants(task_id, tasks)
        outcome = self._apply_single_move(current, target, timestamp, dry_run, meta_changes)
        if outcome.changed:
            logger.info("Moved %s: %s -> %s", task_id, outcome.from_state.value, outcome.to_state.value)

        summary = CascadeSummary(mode=mode)
        if mode != CascadeMode.NONE:
            self._apply_cascade(descendants, mode, include_blocked, dry_run, timestamp, summary)

        return MoveResult(
            dry_run=dry_run,
            changed=outcome.changed,
            from_path=outcome.from_path,
            to_path=outcome.to_path,
            from_state=outcome.from_state,
            to_state=outcome.to_state,
            meta=outcome.doc.meta,
            cascade=summary,
        )

    def _apply_single_move(
        self,
        current: TaskDoc,
        target: State,
        timestamp: str,
        dry_run: bool,
        meta_changes: Optional[dict[str, Any]] = None,
    ) -> _SingleMove:
        if current.meta.state == target:
            return _SingleMove(False, current.path, current.path, target, target, current)

        destination = path_for_state(self.repo_root, current.meta, target, timestamp)
        if destination != current.path and destination.exists():
            raise TransitionViolation(f"Destination path already exists: {destination}")

        updated = current.copy(path=destination)
        meta = updated.meta
        for key, value in (meta_changes or {}).items():
            setattr(meta, key, value)
        meta.state = target
        meta.updated_at = timestamp
        meta.last_activity_at = timestamp
        meta.completed_at = (current.meta.completed_at or timestamp) if target == State.DONE else None

        problems = validate_meta_dict(meta.to_dict())
        if problems:
            raise TransitionViolation(f"Cannot move {meta.id} to {target.value}: {'; '.join(problems)}")

        if not dry_run:
            self.store.persist(updated, previous_path=current.path)
        return _SingleMove(True, current.path, destination, current.meta.state, target, updated)

    def _apply_cascade(
        self,
        descendants: list[TaskDoc],
        mode: CascadeMode,
        include_blocked: bool,
        dry_run: bool,
        timestamp: str,
        summary: CascadeSummary,
    ) -> None:
        for descendant in descendants:
            desc_id = descendant.meta.id
            state = descendant.meta.state

            if not include_blocked and descendant.meta.blocked is not None:
                summary.children.append(CascadeChild(desc_id, "blocked", skipped=True))
                continue

            if state.is_terminal:
                summary.children.append(CascadeChild(desc_id, "terminal_state", skipped=True))
                continue
            if mode == CascadeMode.READY:
                if state == State.READY:
                    summary.children.append(
                        CascadeChild(desc_id, "already_target_state", state, state, skipped=True)
                    )
                    continue
                if state != State.IDEA:
                    summary.children.append(CascadeChild(desc_id, "state_excluded", skipped=True))
                    continue
                target = State.READY
            else:
                target = State.CANCELED

            if not can_transition(state, target):
                summary.children.append(CascadeChild(
                    desc_id, "invalid_transition", state, target, skipped=True,
                    errored=f"Invalid transition from {state.value} to {target.value}",
                ))
                continue

            try:
                outcome = self._apply_single_move(descendant, target, timestamp, dry_run)
            except TransitionViolation as exc:
                summary.children.append(
                    CascadeChild(desc_id, f"cascade:{mode.value}", state, target, changed=False, errored=str(exc))
                )
                continue
            except OSError as exc:
                logger.error("Cascade %s aborted at %s: %s", mode.value, desc_id, exc)
                raise CascadeAborted(
                    f"Cascade {mode.value} aborted while moving {desc_id}: {exc}", summary=summary
                ) from exc

            summary.children.append(
                CascadeChild(desc_id, f"cascade:{mode.value}", state, target, changed=outcome.changed)
            )
            if outcome.changed:
                summary.changed_count += 1

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete(
        self,
        task_id: str,
        dry_run: bool = False,
        commit_message: Optional[str] = None,
    ) -> MoveResult:
        """Move a task to ``done``.

        Epics and stories complete only once every descendant is done or
        canceled.  Completing an already-done task is a no-op.
        """
        timestamp = _now_iso()
        tasks = self._snapshot()
        current = self._find(tasks, task_id)

        if current.meta.state == State.DONE:
            return MoveResult(
                dry_run=dry_run,
                changed=False,
                from_path=current.path,
                to_path=current.path,
                from_state=current.meta.state,
                to_state=current.meta.state,
                meta=current.meta,
            )

        if current.meta.kind != Kind.TASK:
            blocking = [
                doc.meta.id for doc in self.collect_descendants(task_id, tasks)
                if not doc.meta.state.is_terminal
            ]
            if blocking:
                raise TransitionViolation(
                    f"Cannot complete {task_id}. Blocking descendants: {', '.join(blocking)}"
                )

        warnings: list[TaskWarning] = []
        insights = insights_look_empty(current.body)
        if insights:
            warnings.append(TaskWarning("insights_incomplete", insights, "body", str(current.path)))

        changes: dict[str, Any] = {}
        if commit_message and commit_message.strip():
            changes["commit_message"] = commit_message.strip()

        result = self._move_loaded(
            tasks, current, State.DONE, CascadeMode.NONE, False, False, dry_run, timestamp, changes,
        )
        result.warnings.extend(warnings)
        return result

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    def block(self, task_id: str, reason: str, dry_run: bool = False) -> BlockResult:
        current = self._find(self._snapshot(), task_id)
        trimmed = (reason or "").strip()
        previous = current.meta.blocked

        warnings: list[TaskWarning] = []
        if current.meta.state.is_terminal:
            warnings.append(TaskWarning(
                "blocked_terminal_state", "blocked present while task is done/canceled", "blocked",
                str(current.path),
            ))

        if previous == trimmed:
            return BlockResult(dry_run, False, current.meta, current.path, trimmed, previous, warnings)

        timestamp = _now_iso()
        updated = current.copy()
        updated.meta.blocked = trimmed
        updated.meta.updated_at = timestamp
        updated.meta.last_activity_at = timestamp
        if not dry_run:
            self.store.persist(updated)
            logger.info("Blocked %s: %s", task_id, trimmed or "(no reason)")
        return BlockResult(dry_run, True, updated.meta, current.path, trimmed, previous, warnings)

    def unblock(self, task_id: str, dry_run: bool = False) -> BlockResult:
        current = self._find(self._snapshot(), task_id)
        previous = current.meta.blocked
        if previous is None:
            return BlockResult(dry_run, False, current.meta, current.path, None, None)

        timestamp = _now_iso()
        updated = current.copy()
        updated.meta.blocked = None
        updated.meta.updated_at = timestamp
        updated.meta.last_activity_at = timestamp
        if not dry_run:
            self.store.persist(updated)
            logger.info("Unblocked %s", task_id)
        return BlockResult(dry_run, True, updated.meta, current.path, None, previous)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete(self, task_id: str, cascade: bool = False, dry_run: bool = False) -> DeleteResult:
        """Delete a task (and with *cascade*, its descendants).

        Raises:
            IntegrityGuard: Descendants exist without *cascade*, or tasks
                outside the deletion set still reference it.
        """
        tasks = self._snapshot()
        target = self._find(tasks, task_id)
        descendants = self.collect_descendants(task_id, tasks)
        if descendants and not cascade:
            raise IntegrityGuard(
                f"Cannot delete '{task_id}' because it has descendant tasks. "
                f"Delete or reassign them first: {', '.join(d.meta.id for d in descendants)}"
            )

        delete_docs = [target] + descendants if cascade else [target]
        delete_ids = {doc.meta.id for doc in delete_docs}

        references: list[str] = []
        for doc in tasks:
            if doc.meta.id in delete_ids:
                continue
            fields = [
                name for name, values in (("depends_on", doc.meta.depends_on), ("blocks", doc.meta.blocks))
                if any(value in delete_ids for value in values)
            ]
            if fields:
                references.append(f"{doc.meta.id} ({' & '.join(fields)})")
        if references:
            raise IntegrityGuard(
                f"Cannot delete '{task_id}' because other tasks reference it or its descendants: "
                f"{', '.join(references)}"
            )

        timestamp = _now_iso()
        parent_updates: list[ParentChildrenUpdate] = []
        rewritten: list[TaskDoc] = []
        for doc in tasks:
            if doc.meta.id in delete_ids or not doc.meta.children:
                continue
            previous = list(doc.meta.children)
            remaining = [child for child in previous if child not in delete_ids]
            if remaining == previous:
                continue
            parent_updates.append(ParentChildrenUpdate(doc.meta.id, doc.path, previous, remaining, "former"))
            rewritten.append(_children_update(doc, remaining, timestamp))

        if not dry_run:
            for doc in rewritten:
                self.store.persist(doc)
            for doc in delete_docs:
                self.store.remove(doc.path)
            logger.info("Deleted %s (%d descendants)", task_id, len(delete_docs) - 1)

        parent_updates.sort(key=lambda update: update.id)
        return DeleteResult(
            dry_run=dry_run,
            deleted=not dry_run,
            task=TaskRef(target.meta.id, target.meta.kind, target.path, target.meta.state),
            descendants=[
                TaskRef(doc.meta.id, doc.meta.kind, doc.path, doc.meta.state)
                for doc in delete_docs if doc.meta.id != task_id
            ],
            parent_updates=parent_updates,
        )

    # ------------------------------------------------------------------
    # Adoption
    # ------------------------------------------------------------------

    def adopt(
        self,
        parent_id: str,
        child_id: str,
        before: Optional[str] = None,
        after: Optional[str] = None,
        dry_run: bool = False,
    ) -> AdoptResult:
        """Move *child_id* under *parent_id*, optionally positioned before/after a sibling."""
        before = before.strip() if before else None
        after = after.strip() if after else None
        if before and after:
            raise TaskplainError("--before and --after cannot be used together")
        if parent_id == child_id:
            raise StructuralViolation("Parent and child ids must differ")

        tasks = self._snapshot()
        by_id = {doc.meta.id: doc for doc in tasks}
        parent = by_id.get(parent_id)
        if parent is None:
            raise TaskNotFoundError(parent_id, f"Parent task '{parent_id}' not found")
        child = by_id.get(child_id)
        if child is None:
            raise TaskNotFoundError(child_id, f"Child task '{child_id}' not found")

        if parent.meta.kind == Kind.TASK:
            raise StructuralViolation(f"Task '{parent_id}' cannot adopt children")
        if child.meta.kind == Kind.EPIC:
            raise StructuralViolation(f"Epic '{child_id}' cannot be adopted as a child")
        expected = PARENT_KIND[child.meta.kind]
        if parent.meta.kind != expected:
            raise StructuralViolation(
                f"Child '{child_id}' ({child.meta.kind.value}) requires a {expected.value} parent, "
                f"but '{parent.meta.kind.value}' was provided"
            )
        if any(doc.meta.id == parent_id for doc in self.collect_descendants(child_id, tasks)):
            raise StructuralViolation(f"Cannot adopt '{child_id}' under '{parent_id}' because it would create a cycle")
        if child_id in (before, after):
            raise TaskplainError("--before/--after cannot reference the child being adopted")

        updates: list[ParentChildrenUpdate] = []
        docs_by_update: dict[str, TaskDoc] = {}
        for doc in tasks:
            if doc.meta.id == parent_id or child_id not in doc.meta.children:
                continue
            previous = list(doc.meta.children)
            updates.append(ParentChildrenUpdate(
                doc.meta.id, doc.path, previous, [c for c in previous if c != child_id], "former",
            ))
            docs_by_update[doc.meta.id] = doc

        raw = list(parent.meta.children)
        without_child = [c for c in dict.fromkeys(raw) if c != child_id]
        insert_at = len(without_child)
        anchor = before or after
        if anchor:
            if anchor not in without_child:
                raise ReferentialViolation(f"Parent '{parent_id}' does not list child '{anchor}'")
            insert_at = without_child.index(anchor) + (1 if after else 0)
        target_children = without_child[:insert_at] + [child_id] + without_child[insert_at:]
        updates.append(ParentChildrenUpdate(parent_id, parent.path, raw, target_children, "target"))
        docs_by_update[parent_id] = parent

        updates.sort(key=lambda u: (u.role != "target", u.id))
        changed = any(u.previous != u.next for u in updates)

        if not dry_run and changed:
            timestamp = _now_iso()
            for update in updates:
                if update.previous == update.next:
                    continue
                self.store.persist(_children_update(docs_by_update[update.id], update.next, timestamp))
            logger.info("Adopted %s under %s", child_id, parent_id)

        return AdoptResult(
            dry_run=dry_run,
            changed=changed,
            parent=TaskRef(parent.meta.id, parent.meta.kind, parent.path),
            child=TaskRef(child.meta.id, child.meta.kind, child.path),
            updates=updates,
        )

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_patch_value(key: str, value: Any) -> Any:
        if key in _ENUM_FIELDS:
            enum_cls = _ENUM_FIELDS[key]
            try:
                return enum_cls(value)
            except ValueError:
                allowed = ", ".join(m.value for m in enum_cls)
                raise TaskplainError(f"Invalid {key} '{value}'. Expected one of: {allowed}") from None
        if key in _LIST_FIELDS:
            if isinstance(value, str):
                value = [part.strip() for part in value.split(",")]
            if not isinstance(value, list):
                raise TaskplainError(f"Field '{key}' expects a list")
            items = [str(item).strip() for item in value if str(item).strip()]
            if key in ("depends_on", "blocks"):
                items = [item.lower() for item in items]
            return list(dict.fromkeys(items))
        if key == "links":
            if not isinstance(value, list):
                raise TaskplainError("Field 'links' expects a list")
            return [dict(link) if isinstance(link, dict) else link for link in value]
        if key == "blocked":
            return str(value).strip()
        if key in ("title", "commit_message"):
            text = str(value).strip()
            if not text:
                raise TaskplainError(f"Field '{key}' must be non-empty")
            return text
        return value

    def update(
        self,
        task_id: str,
        meta_patch: Optional[dict[str, Any]] = None,
        unset: Optional[list[str]] = None,
        sections: Optional[dict[str, str]] = None,
        raw_body: Optional[str] = None,
        dry_run: bool = False,
    ) -> UpdateResult:
        """Patch allow-listed metadata, unset optional fields and rewrite body sections."""
        meta_patch = dict(meta_patch or {})
        unset_keys = list(dict.fromkeys(unset or []))
        sections = dict(sections or {})

        if not meta_patch and not unset_keys and not sections and raw_body is None:
            raise TaskplainError("Provide at least one --meta, --field, or --unset option")
        for key in meta_patch:
            if key not in UPDATE_META_FIELDS:
                raise TaskplainError(f"Field '{key}' cannot be updated via taskplain update")
        for key in unset_keys:
            if key not in UNSETTABLE_FIELDS:
                raise TaskplainError(f"Field '{key}' cannot be unset via taskplain update")
        if raw_body is not None and sections:
            raise TaskplainError("Cannot combine --field updates with raw body replacement")

        current = self._find(self._snapshot(), task_id)
        next_doc = current.copy()
        meta = next_doc.meta
        meta_changes: list[str] = []

        for key in unset_keys:
            empty: Any = [] if key in _LIST_FIELDS else None
            if getattr(meta, key) != empty and getattr(meta, key) is not None:
                setattr(meta, key, empty)
                meta_changes.append(key)

        for key, value in meta_patch.items():
            coerced = self._coerce_patch_value(key, value)
            if getattr(meta, key) != coerced:
                setattr(meta, key, coerced)
                if key not in meta_changes:
                    meta_changes.append(key)

        state_changed = meta.state != current.meta.state
        if state_changed and not can_transition(current.meta.state, meta.state):
            raise TransitionViolation(f"Invalid transition from {current.meta.state.value} to {meta.state.value}")

        body = current.body
        section_changes: list[SectionChange] = []
        body_changed = False
        if raw_body is not None:
            normalized = raw_body.replace("\r\n", "\n")
            if normalized != body:
                body = normalized
                body_changed = True
        else:
            for section_id, content in sections.items():
                heading = resolve_section_heading(section_id)
                body, changed, added = set_section(body, heading, content)
                section_changes.append(SectionChange(section_id, changed, added))
                body_changed = body_changed or changed
        next_doc.body = body

        has_changes = bool(meta_changes) or body_changed or state_changed
        timestamp = _now_iso()
        if has_changes:
            meta.updated_at = timestamp
            meta.last_activity_at = timestamp
        if state_changed:
            if meta.state == State.DONE and not meta.completed_at:
                meta.completed_at = timestamp
                meta_changes.append("completed_at")
            elif meta.state != State.DONE and meta.completed_at is not None:
                meta.completed_at = None
                meta_changes.append("completed_at")

        problems = validate_meta_dict(meta.to_dict())
        if problems:
            raise TaskplainError("; ".join(problems))

        destination = current.path
        if state_changed:
            destination = path_for_state(self.repo_root, meta, meta.state, timestamp)
            if destination != current.path and destination.exists():
                raise TransitionViolation(f"Destination path already exists: {destination}")
        next_doc.path = destination

        if not has_changes:
            return UpdateResult(dry_run, False, current.meta, current.path, current.path, [], section_changes)
        if not dry_run:
            self.store.persist(next_doc, previous_path=current.path)
            logger.info("Updated %s: %s", task_id, ", ".join(meta_changes) or "body")
        return UpdateResult(dry_run, True, meta, current.path, destination, meta_changes, section_changes)
