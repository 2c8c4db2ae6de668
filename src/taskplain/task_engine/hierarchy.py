"""Build parent/child lookups from a flat task list.

The ``children`` list on a parent is authoritative.  The per-task
``parent`` field is legacy: it is still honoured when nothing else claims
the task, and every disagreement is reported rather than guessed at.
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

from .model import TaskDoc


@dataclass
class ChildRef:
    parent_id: str
    child_id: str


@dataclass
class ParentConflict:
    child_id: str
    declared_parent_id: str
    legacy_parent_id: str


@dataclass
class MultipleParents:
    child_id: str
    parent_id: str  # the declaration that was ignored
    kept_parent_id: str


@dataclass
class HierarchyIssues:
    missing_children: list[ChildRef] = field(default_factory=list)
    duplicate_children: list[ChildRef] = field(default_factory=list)
    legacy_only_children: list[ChildRef] = field(default_factory=list)
    conflicting_parents: list[ParentConflict] = field(default_factory=list)
    multiple_parents: list[MultipleParents] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HierarchyIndex:
    parent_by_id: dict[str, str] = field(default_factory=dict)
    children_by_id: dict[str, list[TaskDoc]] = field(default_factory=dict)
    order_index: dict[str, dict[str, int]] = field(default_factory=dict)

    def children_of(self, task_id: str) -> list[TaskDoc]:
        return self.children_by_id.get(task_id, [])

    def descendants_of(self, task_id: str) -> list[TaskDoc]:
        """Breadth-first descendants of *task_id* (not including itself)."""
        result: list[TaskDoc] = []
        seen = {task_id}
        queue = deque(self.children_of(task_id))
        while queue:
            doc = queue.popleft()
            if doc.meta.id in seen:
                continue
            seen.add(doc.meta.id)
            result.append(doc)
            queue.extend(self.children_of(doc.meta.id))
        return result

    def ancestors_of(self, task_id: str) -> list[str]:
        """Ancestor ids from the direct parent upward."""
        chain: list[str] = []
        seen = {task_id}
        current = self.parent_by_id.get(task_id)
        while current is not None and current not in seen:
            chain.append(current)
            seen.add(current)
            current = self.parent_by_id.get(current)
        return chain


def reconcile_legacy_parents(
    tasks: Iterable[TaskDoc],
    by_id: dict[str, TaskDoc],
    legacy_parents: dict[str, str],
    parents_with_children: set[str],
    index: HierarchyIndex,
    issues: HierarchyIssues,
) -> None:
    """Fold legacy ``parent`` fields into *index* (migrate-on-read).

    An unclaimed task inherits its legacy parent.  A task already claimed by
    a ``children`` list keeps that claim and disagreements are recorded.
    """
    for doc in tasks:
        task_id = doc.meta.id
        legacy_parent = legacy_parents.get(task_id)
        if not legacy_parent:
            continue

        declared = index.parent_by_id.get(task_id)
        if declared is None:
            if legacy_parent in parents_with_children:
                issues.legacy_only_children.append(ChildRef(legacy_parent, task_id))
            index.parent_by_id[task_id] = legacy_parent
            siblings = index.children_by_id.get(legacy_parent, [])
            if legacy_parent in by_id and all(c.meta.id != task_id for c in siblings):
                siblings.append(doc)
                index.children_by_id[legacy_parent] = siblings
        elif declared != legacy_parent:
            issues.conflicting_parents.append(ParentConflict(task_id, declared, legacy_parent))


def build_hierarchy_index(tasks: list[TaskDoc]) -> tuple[HierarchyIndex, HierarchyIssues]:
    """Index *tasks* by parent and child.

    Returns the index and the anomalies found while building it.  The
    function is pure; it never touches the store.
    """
    by_id = {doc.meta.id: doc for doc in tasks}
    index = HierarchyIndex()
    issues = HierarchyIssues()

    # Pass 1: legacy parent references
    legacy_parents = {doc.meta.id: doc.meta.parent for doc in tasks if doc.meta.parent}

    # Pass 2: explicit children lists
    parents_with_children: set[str] = set()
    for doc in tasks:
        children = doc.meta.children
        if not children:
            continue
        parent_id = doc.meta.id
        parents_with_children.add(parent_id)

        seen: set[str] = set()
        ordered: list[TaskDoc] = []
        order_map: dict[str, int] = {}
        for child_id in children:
            if child_id in seen:
                issues.duplicate_children.append(ChildRef(parent_id, child_id))
                continue
            seen.add(child_id)

            child = by_id.get(child_id)
            if child is None:
                issues.missing_children.append(ChildRef(parent_id, child_id))
                continue

            kept = index.parent_by_id.get(child_id)
            if kept is not None and kept != parent_id:
                issues.multiple_parents.append(MultipleParents(child_id, parent_id, kept))
                continue

            index.parent_by_id[child_id] = parent_id
            order_map[child_id] = len(ordered)
            ordered.append(child)

        index.children_by_id[parent_id] = ordered
        index.order_index[parent_id] = order_map

    # Pass 3: legacy-only parents
    reconcile_legacy_parents(tasks, by_id, legacy_parents, parents_with_children, index, issues)
    return index, issues
