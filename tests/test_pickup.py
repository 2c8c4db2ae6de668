"""Tests for the pickup workflow (dispatch/pickup.py)."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskplain.dispatch.pickup import PickupService
from taskplain.errors import TaskNotFoundError, TransitionViolation
from taskplain.task_engine.engine import TaskService
from taskplain.task_engine.model import State


@pytest.fixture
def service(repo: Path) -> TaskService:
    return TaskService(repo)


@pytest.fixture
def pickup(service: TaskService) -> PickupService:
    return PickupService(service)


class TestPickup:
    def test_dry_run_promotes_lineage_and_reports_children(self, service, pickup) -> None:
        epic = service.new_task("Pickup Epic", kind="epic")
        story = service.new_task("Pickup Story", kind="story", priority="high", parent=epic.meta.id)
        ready_task = service.new_task("Ready Child", parent=story.meta.id)
        blocked_task = service.new_task("Blocked Child", parent=story.meta.id)
        service.block(blocked_task.meta.id, "waiting on review")

        result = pickup.execute(story.meta.id, dry_run=True)

        assert result.dry_run is True
        summary = [(move.id, move.from_state, move.to_state) for move in result.moves]
        assert (epic.meta.id, State.IDEA, State.READY) in summary
        assert (story.meta.id, State.IDEA, State.IN_PROGRESS) in summary

        assert result.target.meta.state == State.IN_PROGRESS
        assert result.ancestors[0].meta.state == State.READY

        assert ready_task.meta.id not in [c.id for c in result.children.candidates]
        not_ready = {entry.doc.meta.id: entry.reason for entry in result.children.not_ready}
        assert not_ready == {ready_task.meta.id: "state=idea", blocked_task.meta.id: "state=idea"}
        assert result.children.total_direct_children == 2

        assert service.store.load_task_by_id(story.meta.id).meta.state == State.IDEA
        assert service.store.load_task_by_id(epic.meta.id).meta.state == State.IDEA

    def test_applies_moves(self, service, pickup, repo: Path) -> None:
        epic = service.new_task("Live Epic", kind="epic")
        story = service.new_task("Live Story", kind="story", parent=epic.meta.id)
        service.new_task("Live Task", parent=story.meta.id)

        result = pickup.execute(story.meta.id)

        assert result.dry_run is False
        updated_story = service.store.load_task_by_id(story.meta.id)
        assert updated_story.meta.state == State.IN_PROGRESS
        assert updated_story.path == repo / "tasks" / "20-in-progress" / "story-live-story.md"
        updated_epic = service.store.load_task_by_id(epic.meta.id)
        assert updated_epic.meta.state == State.READY
        assert updated_epic.path.parent.name == "10-ready"

    def test_ready_target_and_active_ancestor(self, service, pickup) -> None:
        epic = service.new_task("Ready Epic", kind="epic", state="ready")
        story = service.new_task("Ready Story", kind="story", state="ready", priority="high", parent=epic.meta.id)

        result = pickup.execute(story.meta.id)

        moves = {move.id: move for move in result.moves}
        assert moves[story.meta.id].from_state == State.READY
        assert moves[story.meta.id].to_state == State.IN_PROGRESS
        assert moves[story.meta.id].changed is True
        assert moves[epic.meta.id].changed is False
        assert moves[epic.meta.id].reason == "already_active"
        assert moves[epic.meta.id].to_state == State.READY
        assert service.store.load_task_by_id(story.meta.id).path.parent.name == "20-in-progress"

    def test_in_progress_children_are_not_suggested(self, service, pickup) -> None:
        story = service.new_task("Parent Story", kind="story", state="ready")
        ready_child = service.new_task("Ready Child Work", state="ready", priority="high", parent=story.meta.id)
        service.new_task("Active Child Work", state="in-progress", priority="high", parent=story.meta.id)

        result = pickup.execute(story.meta.id, dry_run=True, child_suggestion_limit=5)

        assert [c.id for c in result.children.candidates] == [ready_child.meta.id]
        assert [c.id for c in result.children.selected] == [ready_child.meta.id]

    def test_suggestion_limit(self, service, pickup) -> None:
        story = service.new_task("Parent Story", kind="story", state="ready")
        for title in ("Child One", "Child Two", "Child Three"):
            service.new_task(title, state="ready", parent=story.meta.id)

        limited = pickup.execute(story.meta.id, dry_run=True, child_suggestion_limit=2)
        assert [c.id for c in limited.children.selected] == ["child-one", "child-two"]

        none = pickup.execute(story.meta.id, dry_run=True, child_suggestion_limit=0)
        assert none.children.candidates == []
        assert none.children.total_direct_children == 3

    def test_blocked_children_on_request(self, service, pickup) -> None:
        story = service.new_task("Parent Story", kind="story", state="ready")
        child = service.new_task("Gated Child", state="ready", parent=story.meta.id)
        service.block(child.meta.id, "legal")

        default = pickup.execute(story.meta.id, dry_run=True)
        assert [entry.reason for entry in default.children.not_ready] == ["blocked:legal"]
        assert default.children.candidates == []

        included = pickup.execute(story.meta.id, dry_run=True, include_blocked_children=True)
        assert included.children.not_ready == []
        assert [c.id for c in included.children.candidates] == [child.meta.id]

    def test_in_progress_target_is_noop(self, service, pickup) -> None:
        task = service.new_task("Active", state="in-progress")
        result = pickup.execute(task.meta.id)
        assert [(m.changed, m.reason) for m in result.moves] == [(False, "already_active")]

    def test_terminal_target_rejected(self, service, pickup) -> None:
        task = service.new_task("Old", state="canceled")
        with pytest.raises(TransitionViolation, match="canceled"):
            pickup.execute(task.meta.id)

    def test_unknown_target(self, pickup) -> None:
        with pytest.raises(TaskNotFoundError):
            pickup.execute("ghost")

    def test_result_serializes(self, service, pickup) -> None:
        story = service.new_task("Parent Story", kind="story")
        payload = pickup.execute(story.meta.id, dry_run=True).to_dict()
        assert payload["target"]["state"] == "in-progress"
        assert payload["moves"][0]["to_state"] == "in-progress"
        assert payload["children"]["total_direct_children"] == 0
