"""Read-only views over a task snapshot: filtered listing, lineage and trees."""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, Optional

from ..errors import TaskNotFoundError
from .hierarchy import build_hierarchy_index
from .model import Ambiguity, Executor, Isolation, Priority, Size, State, TaskDoc
from .ranking import build_ranking_context, compare_tasks, task_sort_key

OPEN_STATES = (State.IDEA, State.READY, State.IN_PROGRESS)


@dataclass
class TaskListFilters:
    state: Optional[State] = None
    priority: Optional[Priority] = None
    parent: Optional[str] = None
    search: Optional[str] = None
    label: Optional[str] = None
    size: Optional[list[Size]] = None
    ambiguity: Optional[list[Ambiguity]] = None
    executor: Optional[list[Executor]] = None
    isolation: Optional[list[Isolation]] = None
    blocked: Optional[bool] = None
    open_states_only: bool = False


@dataclass
class TaskTreeNode:
    id: str
    title: str
    kind: str
    state: str
    priority: str
    blocked: Optional[str] = None
    children: list["TaskTreeNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "kind": self.kind,
            "state": self.state,
            "priority": self.priority,
        }
        if self.blocked is not None:
            data["blocked"] = self.blocked
        data["children"] = [child.to_dict() for child in self.children]
        return data


class TaskQueryService:
    """Index a task list once and answer listing and lineage queries on it."""

    def __init__(self, tasks: list[TaskDoc]) -> None:
        self.tasks = list(tasks)
        index, _issues = build_hierarchy_index(self.tasks)
        self.ctx = build_ranking_context(self.tasks)
        self.by_id = {doc.meta.id: doc for doc in self.tasks}
        self.parent_by_id = dict(index.parent_by_id)
        self.children: dict[str, list[TaskDoc]] = {
            parent_id: list(docs) for parent_id, docs in index.children_by_id.items()
        }
        # Legacy-only parents have no declared order; rank their children instead.
        key = task_sort_key(self.ctx)
        for parent_id, docs in self.children.items():
            if parent_id not in index.order_index:
                docs.sort(key=key)

    def get_task(self, task_id: str) -> Optional[TaskDoc]:
        return self.by_id.get(task_id)

    def get_ancestors(self, task_id: str, include_self: bool = False) -> list[TaskDoc]:
        """Ancestors from the root down; with *include_self* the task is appended last."""
        current = self.by_id.get(task_id)
        if current is None:
            return []
        chain: list[TaskDoc] = []
        visited: set[str] = set()
        cursor = self.parent_by_id.get(task_id)
        while cursor and cursor not in visited:
            visited.add(cursor)
            parent = self.by_id.get(cursor)
            if parent is None:
                break
            chain.append(parent)
            cursor = self.parent_by_id.get(cursor)
        chain.reverse()
        if include_self:
            chain.append(current)
        return chain

    def get_children(self, task_id: str) -> list[TaskDoc]:
        return list(self.children.get(task_id, []))

    def _matches(self, doc: TaskDoc, filters: TaskListFilters) -> bool:
        meta = doc.meta
        if filters.open_states_only and meta.state not in OPEN_STATES:
            return False
        if filters.state is not None and meta.state != filters.state:
            return False
        if filters.priority is not None and meta.priority != filters.priority:
            return False
        if filters.parent and self.parent_by_id.get(meta.id) != filters.parent:
            return False
        if filters.blocked is True and meta.blocked is None:
            return False
        if filters.blocked is False and meta.blocked is not None:
            return False
        for wanted, value in (
            (filters.size, meta.size),
            (filters.ambiguity, meta.ambiguity),
            (filters.executor, meta.executor),
            (filters.isolation, meta.isolation),
        ):
            if wanted and value not in wanted:
                return False
        if filters.label and filters.label.lower() not in [label.lower() for label in meta.labels]:
            return False
        if filters.search:
            needle = filters.search.lower()
            if not any(needle in text.lower() for text in (meta.id, meta.title, doc.body)):
                return False
        return True

    def list_tasks(self, filters: Optional[TaskListFilters] = None) -> list[dict[str, Any]]:
        """Matching tasks ordered by state, then ranking."""
        filters = filters or TaskListFilters()
        docs = [doc for doc in self.tasks if self._matches(doc, filters)]

        def compare(a: TaskDoc, b: TaskDoc) -> int:
            if a.meta.state != b.meta.state:
                return a.meta.state.index - b.meta.state.index
            return compare_tasks(a, b, self.ctx)

        docs.sort(key=functools.cmp_to_key(compare))
        return [self._list_item(doc) for doc in docs]

    def _list_item(self, doc: TaskDoc) -> dict[str, Any]:
        meta = doc.meta
        item: dict[str, Any] = {
            "id": meta.id,
            "title": meta.title,
            "kind": meta.kind.value,
            "state": meta.state.value,
            "priority": meta.priority.value,
            "size": meta.size.value,
            "ambiguity": meta.ambiguity.value,
            "executor": meta.executor.value,
            "isolation": meta.isolation.value,
        }
        parent = self.parent_by_id.get(meta.id)
        if parent:
            item["parent"] = parent
        if meta.assignees:
            item["assignees"] = list(meta.assignees)
        if meta.labels:
            item["labels"] = list(meta.labels)
        item["updated_at"] = meta.updated_at
        if meta.last_activity_at:
            item["last_activity_at"] = meta.last_activity_at
        item["path"] = str(doc.path)
        if meta.blocked is not None:
            item["blocked"] = meta.blocked
        return item

    def build_tree(self, root_id: Optional[str] = None) -> list[TaskTreeNode]:
        """Nested nodes under *root_id*, or every parentless task sorted by title."""
        if root_id:
            root = self.by_id.get(root_id)
            if root is None:
                raise TaskNotFoundError(root_id, f"Task with id '{root_id}' not found")
            return [self._node(root, set())]
        roots = [doc for doc in self.tasks if not self.parent_by_id.get(doc.meta.id)]
        roots.sort(key=lambda doc: doc.meta.title.lower())
        return [self._node(doc, set()) for doc in roots]

    def _node(self, doc: TaskDoc, visiting: set[str]) -> TaskTreeNode:
        visiting = visiting | {doc.meta.id}
        return TaskTreeNode(
            id=doc.meta.id,
            title=doc.meta.title,
            kind=doc.meta.kind.value,
            state=doc.meta.state.value,
            priority=doc.meta.priority.value,
            blocked=doc.meta.blocked,
            children=[
                self._node(child, visiting)
                for child in self.get_children(doc.meta.id)
                if child.meta.id not in visiting
            ],
        )
