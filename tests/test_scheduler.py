"""Tests for the dispatch scheduler (dispatch/scheduler.py)."""

from __future__ import annotations

from typing import Callable

import pytest

from taskplain.dispatch.scheduler import (
    GLOBAL_TOKEN,
    NextOptions,
    Scheduler,
    build_touch_tokens,
    normalize_touch_pattern,
    tokens_conflict,
    touches_overlap,
)
from taskplain.task_engine.model import Ambiguity, Executor, Kind, Size, TaskDoc


@pytest.fixture
def tasks(make_doc: Callable[..., TaskDoc]) -> list[TaskDoc]:
    return [
        make_doc("epic-alpha", "epic", "idea", title="Alpha Epic", priority="high", children=["story-alpha"]),
        make_doc("story-root-ready", "story", "ready", title="Root Ready Story", priority="high"),
        make_doc(
            "story-alpha", "story", "ready", title="Alpha Story", priority="high",
            children=["ready-urgent", "ready-high", "ready-low", "blocked-task", "overlay-blocked"],
        ),
        make_doc(
            "ready-urgent", "task", "ready", title="Urgent Fix", priority="urgent", size="small",
            touches=["app/shared/**"], updated_at="2025-01-02T00:00:00.000Z",
        ),
        make_doc(
            "ready-high", "task", "ready", title="High Priority", priority="high", executor="expert",
            touches=["module:billing/forms/**"], updated_at="2025-01-03T00:00:00.000Z",
        ),
        make_doc(
            "ready-low", "task", "ready", title="Low Priority", priority="low", size="tiny",
            executor="simple", isolation="isolated", updated_at="2025-01-04T00:00:00.000Z",
        ),
        make_doc(
            "blocked-task", "task", "ready", title="Blocked Task", depends_on=["ready-urgent"],
            updated_at="2025-01-05T00:00:00.000Z",
        ),
        make_doc(
            "overlay-blocked", "task", "ready", title="Blocked Overlay", priority="high",
            blocked="waiting on legal", updated_at="2025-01-05T12:00:00.000Z",
        ),
        make_doc(
            "dependency-done", "task", "done", title="Finished Dependency",
            updated_at="2025-01-01T12:00:00.000Z",
        ),
        make_doc(
            "needs-done", "task", "ready", title="Ready After Dependency", depends_on=["dependency-done"],
            touches=["services/email/**"], updated_at="2025-01-06T00:00:00.000Z",
        ),
        make_doc(
            "global-touch", "task", "ready", title="Global Task", isolation="global",
            updated_at="2025-01-07T00:00:00.000Z",
        ),
        make_doc(
            "in-progress-task", "task", "in-progress", title="Active Work Item", priority="urgent",
            touches=["app/active/**"], updated_at="2025-01-09T00:00:00.000Z",
        ),
        make_doc(
            "idea-task", "task", "idea", title="Idea Stage Task", priority="urgent",
            updated_at="2025-01-08T00:00:00.000Z",
        ),
    ]


def _ids(candidates) -> list[str]:
    return [candidate.id for candidate in candidates]


# ---------------------------------------------------------------------------
# Touch tokens
# ---------------------------------------------------------------------------

class TestTouchTokens:
    def test_normalize_strips_globs_and_slashes(self) -> None:
        assert normalize_touch_pattern("app/shared/**") == "app/shared"
        assert normalize_touch_pattern("src//api/*") == "src/api"
        assert normalize_touch_pattern("**") == GLOBAL_TOKEN

    def test_empty_touches_depend_on_isolation(self, make_doc) -> None:
        assert build_touch_tokens(make_doc("a", isolation="module")) == []
        assert build_touch_tokens(make_doc("b", isolation="isolated")) == []
        assert build_touch_tokens(make_doc("c", isolation="shared")) == [GLOBAL_TOKEN]
        assert build_touch_tokens(make_doc("d", isolation="global")) == [GLOBAL_TOKEN]

    def test_tokens_are_deduplicated(self, make_doc) -> None:
        doc = make_doc("a", touches=["src/api/**", "src/api/*", "docs"])
        assert build_touch_tokens(doc) == ["src/api", "docs"]

    def test_prefix_overlap(self) -> None:
        assert tokens_conflict("src/api", "src/api/routes")
        assert tokens_conflict("src/api/routes", "src/api")
        assert not tokens_conflict("src/api", "docs")
        assert tokens_conflict(GLOBAL_TOKEN, "docs")

    def test_touches_overlap_any_pair(self) -> None:
        assert touches_overlap(["docs", "src/api"], ["src"])
        assert not touches_overlap(["docs"], ["src", "tests"])
        assert not touches_overlap([], ["src"])


# ---------------------------------------------------------------------------
# Ranking and filters
# ---------------------------------------------------------------------------

class TestSchedulerRanking:
    def test_ranks_by_priority_epic_status_and_size(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=3, kinds={Kind.TASK}, include_root_without_kind=True))
        assert _ids(result.selected) == ["ready-urgent", "ready-high", "story-root-ready"]

    def test_parentless_stories_join_when_requested(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=3, kinds={Kind.TASK}, include_root_without_kind=True))
        assert "story-root-ready" in _ids(result.candidates)

        without = Scheduler(tasks).evaluate(NextOptions(count=10, kinds={Kind.TASK}))
        assert "story-root-ready" not in _ids(without.candidates)

    def test_in_progress_and_idea_tasks_are_omitted(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=10, kinds={Kind.TASK}, include_root_without_kind=True))
        for task_id in ("in-progress-task", "idea-task"):
            assert task_id not in _ids(result.candidates)
            assert task_id not in _ids(result.selected)

    def test_unmet_dependencies_exclude(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=5, kinds={Kind.TASK}))
        assert "blocked-task" not in _ids(result.candidates)

    def test_done_dependencies_allow(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=10, kinds={Kind.TASK}))
        assert "needs-done" in _ids(result.candidates)

    def test_blocked_tasks_excluded_by_default(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=5, kinds={Kind.TASK}))
        assert "overlay-blocked" not in _ids(result.candidates)

    def test_blocked_tasks_included_on_request(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=5, kinds={Kind.TASK}, include_blocked=True))
        assert "overlay-blocked" in _ids(result.candidates)

    def test_executor_preference_keeps_sibling_order(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(
            NextOptions(count=2, kinds={Kind.TASK}, executor_preference=Executor.EXPERT)
        )
        assert _ids(result.selected)[0] == "ready-urgent"

    def test_max_size_and_ambiguity_filters(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(
            count=5, kinds={Kind.TASK}, max_size=Size.SMALL, ambiguity_filter={Ambiguity.LOW},
        ))
        assert _ids(result.candidates) == ["ready-urgent", "ready-low"]

    def test_parent_filter_keeps_declared_order(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=5, kinds={Kind.TASK}, parent="story-alpha"))
        assert _ids(result.selected) == ["ready-urgent", "ready-high", "ready-low"]

    def test_parent_filter_reaches_grandchildren(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=10, kinds={Kind.TASK}, parent="epic-alpha"))
        assert set(_ids(result.candidates)) == {"ready-urgent", "ready-high", "ready-low"}

    def test_epic_in_flight_flag(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=10, kinds={Kind.TASK}))
        by_id = {candidate.id: candidate for candidate in result.candidates}
        assert by_id["ready-urgent"].root_epic_id == "epic-alpha"
        assert by_id["ready-urgent"].epic_in_flight is True
        assert by_id["needs-done"].root_epic_id is None
        assert by_id["needs-done"].epic_in_flight is False

    def test_count_zero_selects_nothing(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=0, kinds={Kind.TASK}))
        assert result.selected == []

    def test_empty_snapshot(self) -> None:
        result = Scheduler([]).evaluate()
        assert result.candidates == []
        assert result.selected == []
        assert result.backfilled is False


# ---------------------------------------------------------------------------
# Parallel selection
# ---------------------------------------------------------------------------

class TestParallelSelection:
    def test_greedy_conflict_free_selection(self, tasks) -> None:
        result = Scheduler(tasks).evaluate(NextOptions(count=3, parallelize=3, kinds={Kind.TASK}))
        selected = _ids(result.selected)
        assert len(selected) == 3
        assert {"ready-urgent", "ready-high", "needs-done"} <= set(selected)

        skip = next(entry for entry in result.skipped_due_to_conflicts if entry.candidate.id == "global-touch")
        assert len(skip.conflicts_with) > 0
        assert result.backfilled is False

    def test_lower_priority_pick_is_replaced(self, make_doc) -> None:
        docs = [
            make_doc("first", "task", "ready", priority="high", touches=["a"]),
            make_doc("second", "task", "ready", priority="low", isolation="isolated", touches=["b"]),
            make_doc("third", "task", "ready", priority="normal", touches=["c"]),
        ]
        result = Scheduler(docs).evaluate(NextOptions(count=2, parallelize=2, kinds={Kind.TASK}))
        assert set(_ids(result.selected)) == {"first", "third"}

    def test_backfill_when_conflicts_leave_slots_empty(self, make_doc) -> None:
        docs = [
            make_doc("alpha", "task", "ready", priority="high", touches=["src/core"]),
            make_doc("beta", "task", "ready", priority="normal", touches=["src/core/io"]),
        ]
        result = Scheduler(docs).evaluate(NextOptions(count=2, parallelize=2, kinds={Kind.TASK}))

        assert _ids(result.selected) == ["alpha", "beta"]
        assert result.backfilled is True
        assert result.backfilled_ids == ["beta"]
        assert result.selected[1].backfilled is True
        assert result.to_dict()["selected"][1]["backfilled"] is True
        assert [skip.candidate.id for skip in result.skipped_due_to_conflicts] == ["beta"]

    def test_candidates_cover_parallel_width(self, make_doc) -> None:
        docs = [make_doc(f"t{i}", "task", "ready", touches=[f"dir{i}"]) for i in range(4)]
        result = Scheduler(docs).evaluate(NextOptions(count=1, parallelize=3, kinds={Kind.TASK}))
        assert len(result.selected) == 3
        assert len(result.candidates) == 3


def test_result_serializes(tasks) -> None:
    payload = Scheduler(tasks).evaluate(NextOptions(count=2, kinds={Kind.TASK})).to_dict()
    first = payload["selected"][0]
    assert first["id"] == "ready-urgent"
    assert first["touch_tokens"] == ["app/shared"]
    assert first["score"]["priority"] == 4
    assert "backfilled" not in first
