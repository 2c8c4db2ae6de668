"""Dispatch scheduler: rank ready tasks and pick a conflict-free batch.

The scheduler works on a flat task snapshot.  Candidates are filtered to
``ready`` tasks that pass the readiness check and the caller's shape
filters, ranked with the task comparator, then either sliced to ``count`` or
selected greedily for ``parallelize`` workers so that no two picks touch
overlapping paths.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from loguru import logger

from ..task_engine.model import Ambiguity, Executor, Isolation, Kind, Size, State, TaskDoc
from ..task_engine.ranking import (
    RankingContext,
    ScoreBreakdown,
    build_ranking_context,
    compute_score_breakdown,
    is_task_ready,
    task_sort_key,
)

GLOBAL_TOKEN = "__GLOBAL__"

_MULTI_SLASH_RE = re.compile(r"/+")
_TRAILING_STAR_RE = re.compile(r"\*+$")


@dataclass
class NextOptions:
    """Selection shape for :meth:`Scheduler.evaluate`."""

    count: int = 1
    kinds: set[Kind] = field(default_factory=lambda: {Kind.TASK})
    executor_preference: Optional[Executor] = None
    max_size: Optional[Size] = None
    ambiguity_filter: Optional[set[Ambiguity]] = None
    isolation_filter: Optional[set[Isolation]] = None
    parent: Optional[str] = None
    parallelize: Optional[int] = None
    include_root_without_kind: bool = False
    include_blocked: bool = False


@dataclass
class RankedCandidate:
    doc: TaskDoc
    root_epic_id: Optional[str]
    epic_in_flight: bool
    score: ScoreBreakdown
    touch_tokens: list[str]
    touches: list[str]
    backfilled: bool = False

    @property
    def id(self) -> str:
        return self.doc.meta.id

    def to_dict(self) -> dict[str, Any]:
        meta = self.doc.meta
        data: dict[str, Any] = {
            "id": meta.id,
            "title": meta.title,
            "kind": meta.kind.value,
            "state": meta.state.value,
            "priority": meta.priority.value,
            "size": meta.size.value,
            "ambiguity": meta.ambiguity.value,
            "executor": meta.executor.value,
            "isolation": meta.isolation.value,
            "path": str(self.doc.path),
            "root_epic": self.root_epic_id,
            "epic_in_flight": self.epic_in_flight,
            "score": self.score.to_dict(),
            "touches": list(self.touches),
            "touch_tokens": list(self.touch_tokens),
        }
        if self.backfilled:
            data["backfilled"] = True
        return data


@dataclass
class ConflictSkip:
    candidate: RankedCandidate
    conflicts_with: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"candidate": self.candidate.id, "conflicts_with": list(self.conflicts_with)}


@dataclass
class NextResult:
    candidates: list[RankedCandidate] = field(default_factory=list)
    selected: list[RankedCandidate] = field(default_factory=list)
    skipped_due_to_conflicts: list[ConflictSkip] = field(default_factory=list)
    backfilled: bool = False
    backfilled_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "selected": [c.to_dict() for c in self.selected],
            "skipped_due_to_conflicts": [s.to_dict() for s in self.skipped_due_to_conflicts],
            "backfilled": self.backfilled,
            "backfilled_ids": list(self.backfilled_ids),
        }


# ---------------------------------------------------------------------------
# Touch tokens
# ---------------------------------------------------------------------------

def normalize_touch_pattern(pattern: str) -> str:
    normalized = pattern.replace("**", "*")
    normalized = _TRAILING_STAR_RE.sub("", normalized)
    normalized = _MULTI_SLASH_RE.sub("/", normalized)
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized or GLOBAL_TOKEN


def build_touch_tokens(doc: TaskDoc) -> list[str]:
    """Normalized path fragments used for overlap detection.

    An empty ``touches`` list yields the global token for ``shared`` and
    ``global`` isolation and no tokens otherwise.
    """
    if not doc.meta.touches:
        return [GLOBAL_TOKEN] if doc.meta.isolation in (Isolation.SHARED, Isolation.GLOBAL) else []
    raw = [pattern.strip() for pattern in doc.meta.touches if pattern and pattern.strip()]
    if not raw:
        return [GLOBAL_TOKEN]
    return list(dict.fromkeys(normalize_touch_pattern(pattern) for pattern in raw))


def tokens_conflict(a: str, b: str) -> bool:
    if a == GLOBAL_TOKEN or b == GLOBAL_TOKEN:
        return True
    return a == b or a.startswith(b) or b.startswith(a)


def touches_overlap(a: Iterable[str], b: Iterable[str]) -> bool:
    b = list(b)
    return any(tokens_conflict(token_a, token_b) for token_a in a for token_b in b)


def find_conflicts(candidate: RankedCandidate, selected: list[RankedCandidate]) -> list[str]:
    if not candidate.touch_tokens:
        return []
    return [
        existing.id for existing in selected
        if touches_overlap(candidate.touch_tokens, existing.touch_tokens)
    ]


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class Scheduler:
    """Rank dispatchable tasks from a snapshot.

    Example::

        result = Scheduler(store.list_all_tasks()).evaluate(NextOptions(parallelize=3))
        for pick in result.selected:
            ...
    """

    def __init__(self, tasks: list[TaskDoc], context: Optional[RankingContext] = None) -> None:
        self.tasks = list(tasks)
        self.ctx = context or build_ranking_context(self.tasks)

    def evaluate(self, options: Optional[NextOptions] = None) -> NextResult:
        options = options or NextOptions()
        ranked = self.rank(options)

        result = NextResult()
        if options.parallelize and options.parallelize > 0:
            self._select_parallel_safe(ranked, options.parallelize, result)
        else:
            result.selected = ranked[: max(options.count, 0)]

        limit = max(options.count, options.parallelize or 0, len(result.selected))
        result.candidates = ranked[:limit]
        logger.debug(
            "Scheduler ranked {} candidates, selected {} (skipped {} for conflicts)",
            len(ranked), len(result.selected), len(result.skipped_due_to_conflicts),
        )
        return result

    def _passes_filters(self, doc: TaskDoc, options: NextOptions) -> bool:
        meta = doc.meta
        has_parent = bool(self.ctx.parent_by_id.get(meta.id))
        if meta.kind not in options.kinds and (has_parent or not options.include_root_without_kind):
            return False
        if meta.state != State.READY:
            return False
        if not is_task_ready(doc, self.ctx, allow_blocked=options.include_blocked).ready:
            return False
        if options.max_size is not None and meta.size.index > options.max_size.index:
            return False
        if options.ambiguity_filter and meta.ambiguity not in options.ambiguity_filter:
            return False
        if options.isolation_filter and meta.isolation not in options.isolation_filter:
            return False
        if options.parent and meta.id != options.parent and not self.ctx.has_ancestor(meta.id, options.parent):
            return False
        return True

    def rank(self, options: NextOptions) -> list[RankedCandidate]:
        """Filter the snapshot to eligible tasks and return them best first."""
        eligible = [doc for doc in self.tasks if self._passes_filters(doc, options)]
        eligible.sort(key=task_sort_key(self.ctx, options.executor_preference))
        return [self._candidate(doc, options.executor_preference) for doc in eligible]

    def _candidate(self, doc: TaskDoc, executor_preference: Optional[Executor]) -> RankedCandidate:
        root = self.ctx.root_epic_of(doc.meta.id)
        return RankedCandidate(
            doc=doc,
            root_epic_id=root,
            epic_in_flight=root is not None and root in self.ctx.epic_in_flight,
            score=compute_score_breakdown(doc, self.ctx, executor_preference),
            touch_tokens=build_touch_tokens(doc),
            touches=list(doc.meta.touches),
        )

    @staticmethod
    def _select_parallel_safe(ranked: list[RankedCandidate], slots: int, result: NextResult) -> None:
        selected: list[RankedCandidate] = []
        for candidate in ranked:
            conflicts = find_conflicts(candidate, selected)
            if conflicts:
                result.skipped_due_to_conflicts.append(ConflictSkip(candidate, conflicts))
                continue
            if len(selected) < slots:
                selected.append(candidate)
                continue
            lowest = min(range(len(selected)), key=lambda i: selected[i].score.priority)
            if candidate.score.priority > selected[lowest].score.priority:
                selected[lowest] = candidate

        # Not enough conflict-free work: fill remaining slots regardless of overlap.
        for candidate in ranked:
            if len(selected) >= slots:
                break
            if any(candidate is chosen for chosen in selected):
                continue
            candidate.backfilled = True
            selected.append(candidate)
            result.backfilled_ids.append(candidate.id)

        result.selected = selected
        result.backfilled = bool(result.backfilled_ids)
