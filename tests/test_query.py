"""Tests for listing and tree queries (task_engine/query.py)."""

from __future__ import annotations

import pytest

from taskplain.errors import TaskNotFoundError
from taskplain.task_engine.model import Priority, State
from taskplain.task_engine.query import TaskListFilters, TaskQueryService


@pytest.fixture
def query(make_doc) -> TaskQueryService:
    return TaskQueryService([
        make_doc("platform", "epic", title="Platform", state="ready", children=["auth"]),
        make_doc("auth", "story", title="Auth", state="ready", children=["login", "logout"]),
        make_doc("login", title="Login form", state="ready", priority="high", labels=["UI"]),
        make_doc("logout", title="Logout button", state="in-progress", blocked="design"),
        make_doc("billing", "story", title="Billing", state="idea", body="## Overview\n\nInvoices."),
        make_doc("archive", title="Archive", state="done"),
    ])


class TestLineage:
    def test_get_task(self, query: TaskQueryService) -> None:
        assert query.get_task("login").meta.title == "Login form"
        assert query.get_task("ghost") is None

    def test_ancestors_root_first(self, query: TaskQueryService) -> None:
        assert [doc.meta.id for doc in query.get_ancestors("login")] == ["platform", "auth"]
        assert [doc.meta.id for doc in query.get_ancestors("login", include_self=True)] == [
            "platform", "auth", "login",
        ]
        assert query.get_ancestors("ghost") == []

    def test_children_in_declared_order(self, query: TaskQueryService) -> None:
        assert [doc.meta.id for doc in query.get_children("auth")] == ["login", "logout"]
        assert query.get_children("login") == []


class TestListTasks:
    def test_sorted_by_state_then_rank(self, query: TaskQueryService) -> None:
        ids = [item["id"] for item in query.list_tasks()]
        assert ids == ["billing", "login", "auth", "platform", "logout", "archive"]

    def test_filters(self, query: TaskQueryService) -> None:
        def ids(**kwargs) -> list[str]:
            return [item["id"] for item in query.list_tasks(TaskListFilters(**kwargs))]

        assert ids(state=State.READY) == ["login", "auth", "platform"]
        assert ids(priority=Priority.HIGH) == ["login"]
        assert ids(parent="auth") == ["login", "logout"]
        assert ids(search="invoices") == ["billing"]
        assert ids(label="ui") == ["login"]
        assert ids(blocked=True) == ["logout"]
        assert "logout" not in ids(blocked=False)
        assert "archive" not in ids(open_states_only=True)

    def test_list_item_shape(self, query: TaskQueryService) -> None:
        item = next(entry for entry in query.list_tasks() if entry["id"] == "logout")
        assert item["parent"] == "auth"
        assert item["blocked"] == "design"
        assert item["state"] == "in-progress"
        assert item["path"].endswith("task-logout.md")


class TestTree:
    def test_full_forest_sorted_by_title(self, query: TaskQueryService) -> None:
        roots = query.build_tree()
        assert [node.id for node in roots] == ["archive", "billing", "platform"]
        platform = roots[2].to_dict()
        assert platform["children"][0]["id"] == "auth"
        assert [child["id"] for child in platform["children"][0]["children"]] == ["login", "logout"]
        assert platform["children"][0]["children"][1]["blocked"] == "design"

    def test_subtree(self, query: TaskQueryService) -> None:
        (node,) = query.build_tree("auth")
        assert [child.id for child in node.children] == ["login", "logout"]

    def test_unknown_root(self, query: TaskQueryService) -> None:
        with pytest.raises(TaskNotFoundError):
            query.build_tree("ghost")
