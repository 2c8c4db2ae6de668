"""Shared fixtures: task document factories backed by a temporary repository."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from taskplain.task_engine.model import (
    Ambiguity,
    Executor,
    Isolation,
    Kind,
    Priority,
    Size,
    State,
    TaskDoc,
    TaskMeta,
)
from taskplain.task_engine.sections import DEFAULT_BODY
from taskplain.task_engine.taskfile import path_for_state, write_task_file

BASE_TIME = "2025-01-01T00:00:00.000Z"

_ENUM_FIELDS = {
    "priority": Priority,
    "size": Size,
    "ambiguity": Ambiguity,
    "executor": Executor,
    "isolation": Isolation,
}


def build_doc(repo_root: Path, task_id: str, kind: str = "task", state: str = "idea",
              body: str = DEFAULT_BODY, **fields: Any) -> TaskDoc:
    for key, enum_cls in _ENUM_FIELDS.items():
        if isinstance(fields.get(key), str):
            fields[key] = enum_cls(fields[key])
    fields.setdefault("title", task_id.replace("-", " ").title())
    fields.setdefault("created_at", BASE_TIME)
    fields.setdefault("updated_at", BASE_TIME)
    fields.setdefault("last_activity_at", fields["updated_at"])
    if state == State.DONE.value:
        fields.setdefault("completed_at", fields["updated_at"])
    meta = TaskMeta(id=task_id, kind=Kind(kind), state=State(state), **fields)
    stamp = meta.completed_at or meta.updated_at
    return TaskDoc(meta=meta, body=body, path=path_for_state(repo_root, meta, meta.state, stamp))


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def make_doc(repo: Path) -> Callable[..., TaskDoc]:
    """Build an in-memory document whose path sits in *repo*."""

    def factory(task_id: str, kind: str = "task", state: str = "idea", **fields: Any) -> TaskDoc:
        return build_doc(repo, task_id, kind, state, **fields)

    return factory


@pytest.fixture
def write_doc(repo: Path) -> Callable[..., TaskDoc]:
    """Build a document and write it to its canonical path."""

    def factory(task_id: str, kind: str = "task", state: str = "idea", **fields: Any) -> TaskDoc:
        doc = build_doc(repo, task_id, kind, state, **fields)
        write_task_file(doc)
        return doc

    return factory
