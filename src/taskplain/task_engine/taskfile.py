"""Read and write task files: YAML front matter between ``---`` fences, then markdown."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Optional

import yaml

from ..constants import STATE_DIRECTORIES, TASK_FILE_SUFFIX, TASKS_DIR_NAME
from ..errors import TaskplainError
from ..io_utils import _atomic_write_text
from ..utils import _date_prefix
from .model import Kind, State, TaskDoc, TaskMeta, validate_meta_dict
from .normalization import TaskWarning, normalize_meta_input
from .sections import missing_headings


_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.S)
_EMPTY_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n---[ \t]*(?:\r?\n|\Z)")
_DONE_NAME_RE = re.compile(r"^\d{4}-\d{2}-\d{2} ")


class TaskFileError(TaskplainError):
    """A task file could not be parsed or failed the metadata schema."""

    def __init__(self, path: Path, problems: list[str]):
        self.path = path
        self.problems = problems
        super().__init__(f"{path}: " + "; ".join(problems))


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

def tasks_root(repo_root: Path) -> Path:
    return repo_root / TASKS_DIR_NAME


def state_dir(repo_root: Path, state: State) -> Path:
    return tasks_root(repo_root) / STATE_DIRECTORIES[state.value]


def active_name(kind: Kind, task_id: str) -> str:
    return f"{kind.value}-{task_id}{TASK_FILE_SUFFIX}"


def done_name(date: str, kind: Kind, task_id: str) -> str:
    return f"{date} {kind.value}-{task_id}{TASK_FILE_SUFFIX}"


def path_for_state(repo_root: Path, meta: TaskMeta, state: State, timestamp: str) -> Path:
    """Destination of *meta* in *state*; done files are dated from *timestamp*."""
    if state == State.DONE:
        name = done_name(_date_prefix(timestamp), meta.kind, meta.id)
    else:
        name = active_name(meta.kind, meta.id)
    return state_dir(repo_root, state) / name


def expected_path(repo_root: Path, meta: TaskMeta) -> Path:
    """Canonical location for *meta* given its current state and timestamps."""
    stamp = meta.completed_at or meta.updated_at
    return path_for_state(repo_root, meta, meta.state, stamp)


def state_for_directory(name: str) -> Optional[State]:
    for value, directory in STATE_DIRECTORIES.items():
        if directory == name:
            return State(value)
    return None


def filename_matches(path: Path, meta: TaskMeta) -> bool:
    """Whether the file name fits the ``<kind>-<id>.md`` (or dated done) convention."""
    stem = active_name(meta.kind, meta.id)
    if meta.state == State.DONE:
        return _DONE_NAME_RE.match(path.name) is not None and path.name[11:] == stem
    return path.name == stem


# ---------------------------------------------------------------------------
# Parse / serialize
# ---------------------------------------------------------------------------

def split_front_matter(text: str) -> tuple[dict[str, Any], str]:
    """Split raw file text into the front-matter mapping and the body."""
    if _EMPTY_FRONT_MATTER_RE.match(text):
        return {}, _EMPTY_FRONT_MATTER_RE.sub("", text, count=1)
    match = _FRONT_MATTER_RE.match(text)
    if match is None:
        return {}, text
    data = yaml.safe_load(match.group(1))
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"front matter must be a mapping, got {type(data).__name__}")
    return data, text[match.end():]


def parse_task_text(text: str, path: Path) -> tuple[TaskDoc, list[TaskWarning]]:
    """Parse file text into a :class:`TaskDoc`.

    Raises:
        TaskFileError: When YAML is malformed or the metadata fails the schema.
    """
    try:
        data, body = split_front_matter(text)
    except (yaml.YAMLError, ValueError) as exc:
        raise TaskFileError(path, [f"invalid front matter: {exc}"]) from exc

    normalized, warnings = normalize_meta_input(data)
    problems = validate_meta_dict(normalized)
    if problems:
        raise TaskFileError(path, problems)

    meta = TaskMeta.from_dict(normalized)
    doc = TaskDoc(meta=meta, body=body.replace("\r\n", "\n").lstrip("\n").rstrip(), path=path)
    for heading in missing_headings(doc.body, meta.state):
        warnings.append(TaskWarning("missing_heading", f"Missing required heading: {heading}", "body"))
    for warning in warnings:
        warning.file = str(path)
    return doc, warnings


def read_task_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise TaskFileError(path, [f"invalid encoding: {exc}"]) from exc


def read_task_file(path: Path) -> tuple[TaskDoc, list[TaskWarning]]:
    return parse_task_text(read_task_text(path), path)


def serialize_task_doc(doc: TaskDoc) -> str:
    """Render *doc* as file text, front matter in canonical key order.

    Raises:
        TaskFileError: When the metadata fails the schema.
    """
    data = doc.meta.to_dict()
    problems = validate_meta_dict(data)
    if problems:
        raise TaskFileError(doc.path, problems)
    front = yaml.safe_dump(
        data,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=float("inf"),
    ).strip()
    body = doc.body.lstrip("\n")
    if not body.endswith("\n"):
        body += "\n"
    return f"---\n{front}\n---\n\n{body}"


def write_task_file(doc: TaskDoc, path: Optional[Path] = None) -> None:
    _atomic_write_text(path or doc.path, serialize_task_doc(doc))
