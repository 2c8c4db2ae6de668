"""Tests for readiness and ranking (task_engine/ranking.py)."""

from __future__ import annotations

from taskplain.task_engine.model import Executor
from taskplain.task_engine.ranking import (
    build_ranking_context,
    compare_tasks,
    compute_score_breakdown,
    is_task_ready,
    rank_tasks,
)


def _ranked_ids(docs, executor_preference=None) -> list[str]:
    ctx = build_ranking_context(docs)
    return [doc.meta.id for doc in rank_tasks(docs, ctx, executor_preference)]


class TestReadiness:
    def test_ready_task(self, make_doc) -> None:
        doc = make_doc("a", state="ready")
        assert is_task_ready(doc, build_ranking_context([doc])).ready

    def test_dependencies_checked_before_state(self, make_doc) -> None:
        dep = make_doc("dep", state="in-progress")
        doc = make_doc("a", state="idea", depends_on=["dep"])
        readiness = is_task_ready(doc, build_ranking_context([dep, doc]))
        assert not readiness.ready
        assert readiness.reason == "dependency dep is in-progress"

    def test_missing_dependency(self, make_doc) -> None:
        doc = make_doc("a", state="ready", depends_on=["ghost"])
        assert is_task_ready(doc, build_ranking_context([doc])).reason == "missing dependency ghost"

    def test_state_reason(self, make_doc) -> None:
        doc = make_doc("a", state="idea")
        ctx = build_ranking_context([doc])
        assert is_task_ready(doc, ctx).reason == "state=idea"
        assert is_task_ready(doc, ctx, include_idea=True).ready

    def test_blocked_reason_and_override(self, make_doc) -> None:
        doc = make_doc("a", state="ready", blocked="  waiting on api  ")
        ctx = build_ranking_context([doc])
        assert is_task_ready(doc, ctx).reason == "blocked:waiting on api"
        assert is_task_ready(doc, ctx, allow_blocked=True).ready

    def test_empty_blocked_message_still_blocks(self, make_doc) -> None:
        doc = make_doc("a", state="ready", blocked="")
        assert is_task_ready(doc, build_ranking_context([doc])).reason == "blocked"


class TestRankingContext:
    def test_root_epic_and_in_flight(self, make_doc) -> None:
        docs = [
            make_doc("active-epic", "epic", children=["active-story"]),
            make_doc("active-story", "story", children=["active-task"]),
            make_doc("active-task", state="in-progress"),
            make_doc("quiet-epic", "epic", state="ready", children=["quiet-story"]),
            make_doc("quiet-story", "story"),
        ]
        ctx = build_ranking_context(docs)

        assert ctx.root_epic_of("active-task") == "active-epic"
        assert ctx.root_epic_of("quiet-story") == "quiet-epic"
        assert ctx.epic_in_flight == {"active-epic"}
        assert ctx.has_ancestor("active-task", "active-epic")
        assert not ctx.has_ancestor("active-epic", "active-task")

    def test_score_breakdown(self, make_doc) -> None:
        doc = make_doc("a", priority="high", size="large", executor="expert", isolation="isolated")
        score = compute_score_breakdown(doc, build_ranking_context([doc]), Executor.SIMPLE)
        assert score.priority == 3
        assert score.size == 3
        assert score.executor_index == 2
        assert score.executor_distance == 2
        assert score.isolation == 3


class TestComparator:
    def test_priority_leads(self, make_doc) -> None:
        docs = [make_doc("low", priority="low"), make_doc("urgent", priority="urgent")]
        assert _ranked_ids(docs) == ["urgent", "low"]

    def test_isolation_can_jump_one_priority_step(self, make_doc) -> None:
        docs = [
            make_doc("normal-module", priority="normal", isolation="module"),
            make_doc("low-isolated", priority="low", isolation="isolated"),
        ]
        assert _ranked_ids(docs) == ["low-isolated", "normal-module"]

    def test_isolation_cannot_jump_two_priority_steps(self, make_doc) -> None:
        docs = [
            make_doc("high-module", priority="high", isolation="module"),
            make_doc("low-isolated", priority="low", isolation="isolated"),
        ]
        assert _ranked_ids(docs) == ["high-module", "low-isolated"]

    def test_epic_in_flight_breaks_priority_ties(self, make_doc) -> None:
        docs = [
            make_doc("loose", title="AAA loose"),
            make_doc("epic", "epic", children=["story"]),
            make_doc("story", "story", state="ready", children=["member"]),
            make_doc("member", title="ZZZ member"),
        ]
        ranked = _ranked_ids([docs[0], docs[3]] + docs[1:3])
        assert ranked.index("member") < ranked.index("loose")

    def test_smaller_size_then_leaf_kind(self, make_doc) -> None:
        docs = [
            make_doc("big", size="large"),
            make_doc("small-story", "story", size="small"),
            make_doc("small-task", size="small"),
        ]
        assert _ranked_ids(docs) == ["small-task", "small-story", "big"]

    def test_staleness_then_title(self, make_doc) -> None:
        docs = [
            make_doc("fresh", updated_at="2025-03-01T00:00:00.000Z"),
            make_doc("stale-b", title="Bravo", updated_at="2025-01-01T00:00:00.000Z"),
            make_doc("stale-a", title="alpha", updated_at="2025-01-01T00:00:00.000Z"),
        ]
        assert _ranked_ids(docs) == ["stale-a", "stale-b", "fresh"]

    def test_executor_preference_first(self, make_doc) -> None:
        docs = [
            make_doc("urgent-standard", priority="urgent"),
            make_doc("low-expert", priority="low", executor="expert"),
        ]
        assert _ranked_ids(docs) == ["urgent-standard", "low-expert"]
        assert _ranked_ids(docs, Executor.EXPERT) == ["low-expert", "urgent-standard"]

    def test_siblings_keep_declared_order(self, make_doc) -> None:
        docs = [
            make_doc("story", "story", children=["second", "first"]),
            make_doc("first", priority="urgent"),
            make_doc("second", priority="low"),
        ]
        ctx = build_ranking_context(docs)
        assert compare_tasks(docs[2], docs[1], ctx) < 0
        assert compare_tasks(docs[1], docs[1], ctx) == 0
