"""Tests for hierarchy indexing (task_engine/hierarchy.py)."""

from __future__ import annotations

from taskplain.task_engine.hierarchy import build_hierarchy_index


class TestBuildHierarchyIndex:
    def test_children_lists_are_authoritative(self, make_doc) -> None:
        docs = [
            make_doc("epic", "epic", children=["story-b", "story-a"]),
            make_doc("story-a", "story"),
            make_doc("story-b", "story"),
        ]
        index, issues = build_hierarchy_index(docs)

        assert index.parent_by_id == {"story-b": "epic", "story-a": "epic"}
        assert [doc.meta.id for doc in index.children_of("epic")] == ["story-b", "story-a"]
        assert index.order_index["epic"] == {"story-b": 0, "story-a": 1}
        assert issues.to_dict() == {
            "missing_children": [],
            "duplicate_children": [],
            "legacy_only_children": [],
            "conflicting_parents": [],
            "multiple_parents": [],
        }

    def test_missing_and_duplicate_children(self, make_doc) -> None:
        docs = [make_doc("story", "story", children=["task-a", "ghost", "task-a"]), make_doc("task-a")]
        index, issues = build_hierarchy_index(docs)

        assert [ref.child_id for ref in issues.missing_children] == ["ghost"]
        assert [ref.child_id for ref in issues.duplicate_children] == ["task-a"]
        assert [doc.meta.id for doc in index.children_of("story")] == ["task-a"]

    def test_first_declaring_parent_wins(self, make_doc) -> None:
        docs = [
            make_doc("story-one", "story", children=["shared"]),
            make_doc("story-two", "story", children=["shared"]),
            make_doc("shared"),
        ]
        index, issues = build_hierarchy_index(docs)

        assert index.parent_by_id["shared"] == "story-one"
        assert index.children_of("story-two") == []
        assert len(issues.multiple_parents) == 1
        conflict = issues.multiple_parents[0]
        assert (conflict.child_id, conflict.parent_id, conflict.kept_parent_id) == ("shared", "story-two", "story-one")

    def test_legacy_parent_used_when_unclaimed(self, make_doc) -> None:
        docs = [make_doc("story", "story"), make_doc("task", parent="story")]
        index, issues = build_hierarchy_index(docs)

        assert index.parent_by_id["task"] == "story"
        assert [doc.meta.id for doc in index.children_of("story")] == ["task"]
        assert "story" not in index.order_index
        assert issues.legacy_only_children == []

    def test_legacy_parent_with_children_list_is_reported(self, make_doc) -> None:
        docs = [
            make_doc("story", "story", children=["listed"]),
            make_doc("listed"),
            make_doc("unlisted", parent="story"),
        ]
        index, issues = build_hierarchy_index(docs)

        assert [ref.child_id for ref in issues.legacy_only_children] == ["unlisted"]
        assert [doc.meta.id for doc in index.children_of("story")] == ["listed", "unlisted"]

    def test_conflicting_legacy_parent(self, make_doc) -> None:
        docs = [
            make_doc("story-one", "story", children=["task"]),
            make_doc("story-two", "story"),
            make_doc("task", parent="story-two"),
        ]
        index, issues = build_hierarchy_index(docs)

        assert index.parent_by_id["task"] == "story-one"
        assert len(issues.conflicting_parents) == 1
        assert issues.conflicting_parents[0].legacy_parent_id == "story-two"

    def test_descendants_and_ancestors(self, make_doc) -> None:
        docs = [
            make_doc("epic", "epic", children=["story"]),
            make_doc("story", "story", children=["task-1", "task-2"]),
            make_doc("task-1"),
            make_doc("task-2"),
        ]
        index, _issues = build_hierarchy_index(docs)

        assert [doc.meta.id for doc in index.descendants_of("epic")] == ["story", "task-1", "task-2"]
        assert index.ancestors_of("task-2") == ["story", "epic"]
        assert index.ancestors_of("epic") == []

    def test_cycles_terminate(self, make_doc) -> None:
        docs = [
            make_doc("story-a", "story", children=["story-b"]),
            make_doc("story-b", "story", children=["story-a"]),
        ]
        index, _issues = build_hierarchy_index(docs)

        assert [doc.meta.id for doc in index.descendants_of("story-a")] == ["story-b"]
        assert index.ancestors_of("story-a") == ["story-b"]
