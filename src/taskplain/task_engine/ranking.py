"""Readiness checks and the ranking comparator.

Everything here is a pure function of a task list: the
:class:`RankingContext` is rebuilt per invocation and never persisted.
"""

from __future__ import annotations

import functools
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from .hierarchy import build_hierarchy_index
from .model import Executor, State, TaskDoc


@dataclass
class RankingContext:
    by_id: dict[str, TaskDoc] = field(default_factory=dict)
    parent_by_id: dict[str, str] = field(default_factory=dict)
    root_epic_by_id: dict[str, Optional[str]] = field(default_factory=dict)
    epic_in_flight: set[str] = field(default_factory=set)
    child_order_index: dict[str, dict[str, int]] = field(default_factory=dict)

    def root_epic_of(self, task_id: str) -> Optional[str]:
        return self.root_epic_by_id.get(task_id)

    def is_epic_in_flight(self, task_id: str) -> bool:
        root = self.root_epic_by_id.get(task_id)
        return root is not None and root in self.epic_in_flight

    def has_ancestor(self, task_id: str, ancestor_id: str) -> bool:
        seen = {task_id}
        current = self.parent_by_id.get(task_id)
        while current is not None and current not in seen:
            if current == ancestor_id:
                return True
            seen.add(current)
            current = self.parent_by_id.get(current)
        return False


@dataclass
class Readiness:
    ready: bool
    reason: Optional[str] = None


@dataclass
class ScoreBreakdown:
    priority: int
    epic_in_flight: bool
    size: int
    executor_index: int
    executor_distance: int
    ambiguity: int
    isolation: int
    updated_at_ms: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_ranking_context(tasks: list[TaskDoc]) -> RankingContext:
    """Derive parent links, root epics and the epic-in-flight set.

    An epic is in flight when any of its descendants is ``ready`` or
    ``in-progress``.
    """
    index, _issues = build_hierarchy_index(tasks)
    ctx = RankingContext(
        by_id={doc.meta.id: doc for doc in tasks},
        parent_by_id=dict(index.parent_by_id),
        child_order_index=index.order_index,
    )

    def resolve_root_epic(task_id: str, visiting: set[str]) -> Optional[str]:
        if task_id in ctx.root_epic_by_id:
            return ctx.root_epic_by_id[task_id]
        doc = ctx.by_id.get(task_id)
        if doc is None or task_id in visiting:
            return None
        if doc.meta.kind.value == "epic":
            root: Optional[str] = task_id
        else:
            parent_id = ctx.parent_by_id.get(task_id)
            visiting.add(task_id)
            root = resolve_root_epic(parent_id, visiting) if parent_id else None
        ctx.root_epic_by_id[task_id] = root
        return root

    for doc in tasks:
        resolve_root_epic(doc.meta.id, set())

    for doc in tasks:
        if doc.meta.state in (State.READY, State.IN_PROGRESS) and doc.meta.kind.value != "epic":
            root = ctx.root_epic_by_id.get(doc.meta.id)
            if root is not None:
                ctx.epic_in_flight.add(root)
    return ctx


def is_task_ready(
    doc: TaskDoc,
    ctx: RankingContext,
    allow_blocked: bool = False,
    include_idea: bool = False,
) -> Readiness:
    """Check whether *doc* can be dispatched.

    Dependencies are checked first, so an unmet dependency is reported
    whatever the task's own state.  Then the state (``ready``, or ``idea``
    too with *include_idea*), then the ``blocked`` flag.
    """
    for dep_id in doc.meta.depends_on:
        dependency = ctx.by_id.get(dep_id)
        if dependency is None:
            return Readiness(False, f"missing dependency {dep_id}")
        if dependency.meta.state != State.DONE:
            return Readiness(False, f"dependency {dep_id} is {dependency.meta.state.value}")

    allowed = (State.IDEA, State.READY) if include_idea else (State.READY,)
    if doc.meta.state not in allowed:
        return Readiness(False, f"state={doc.meta.state.value}")

    if not allow_blocked and doc.meta.blocked is not None:
        message = doc.meta.blocked.strip()
        return Readiness(False, f"blocked:{message}" if message else "blocked")

    return Readiness(True)


def compute_score_breakdown(
    doc: TaskDoc,
    ctx: RankingContext,
    executor_preference: Optional[Executor] = None,
) -> ScoreBreakdown:
    meta = doc.meta
    executor_index = meta.executor.index
    if executor_preference is None:
        distance = executor_index
    else:
        distance = abs(executor_index - executor_preference.index)
    return ScoreBreakdown(
        priority=meta.priority.index,
        epic_in_flight=ctx.is_epic_in_flight(meta.id),
        size=meta.size.index,
        executor_index=executor_index,
        executor_distance=distance,
        ambiguity=meta.ambiguity.index,
        isolation=meta.isolation.score,
        updated_at_ms=meta.updated_at_ms,
    )


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def compare_tasks(
    a: TaskDoc,
    b: TaskDoc,
    ctx: RankingContext,
    executor_preference: Optional[Executor] = None,
) -> int:
    """Total order over tasks; negative means *a* ranks first.

    Siblings keep their declared order.  When *executor_preference* is
    given, closeness to it is compared next, ahead of priority.  Then
    priority leads, but a
    clearly more isolated task may jump a priority step of equal or smaller
    size.  Remaining ties go to active epics, smaller work, leaf kinds,
    isolation, executor fit, ambiguity and staleness, then title and id.
    """
    parent_a = ctx.parent_by_id.get(a.meta.id)
    parent_b = ctx.parent_by_id.get(b.meta.id)
    if parent_a is not None and parent_a == parent_b:
        order = ctx.child_order_index.get(parent_a)
        if order:
            idx_a = order.get(a.meta.id)
            idx_b = order.get(b.meta.id)
            if idx_a is not None or idx_b is not None:
                safe_a = idx_a if idx_a is not None else float("inf")
                safe_b = idx_b if idx_b is not None else float("inf")
                if safe_a != safe_b:
                    return _cmp(safe_a, safe_b)

    score_a = compute_score_breakdown(a, ctx, executor_preference)
    score_b = compute_score_breakdown(b, ctx, executor_preference)

    if executor_preference is not None and score_a.executor_distance != score_b.executor_distance:
        return _cmp(score_a.executor_distance, score_b.executor_distance)

    if score_a.priority != score_b.priority:
        isolation_gap = score_a.isolation - score_b.isolation
        priority_gap = score_a.priority - score_b.priority
        if (
            isolation_gap != 0
            and _sign(isolation_gap) != _sign(priority_gap)
            and abs(isolation_gap) >= abs(priority_gap)
        ):
            return _cmp(score_b.isolation, score_a.isolation)
        return _cmp(score_b.priority, score_a.priority)

    if score_a.epic_in_flight != score_b.epic_in_flight:
        return -1 if score_a.epic_in_flight else 1

    steps = (
        (score_a.size, score_b.size),
        (a.meta.kind.weight, b.meta.kind.weight),
        (score_b.isolation, score_a.isolation),
        (score_a.executor_distance, score_b.executor_distance),
        (score_a.executor_index, score_b.executor_index),
        (score_a.ambiguity, score_b.ambiguity),
        (score_a.updated_at_ms, score_b.updated_at_ms),
        (a.meta.title.lower(), b.meta.title.lower()),
        (a.meta.id, b.meta.id),
    )
    for left, right in steps:
        if left != right:
            return _cmp(left, right)
    return 0


def task_sort_key(
    ctx: RankingContext,
    executor_preference: Optional[Executor] = None,
) -> Callable[[TaskDoc], Any]:
    """``key=`` function for :func:`sorted` built on :func:`compare_tasks`."""
    return functools.cmp_to_key(lambda a, b: compare_tasks(a, b, ctx, executor_preference))


def rank_tasks(
    tasks: list[TaskDoc],
    ctx: RankingContext,
    executor_preference: Optional[Executor] = None,
) -> list[TaskDoc]:
    return sorted(tasks, key=task_sort_key(ctx, executor_preference))
