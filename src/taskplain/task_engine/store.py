"""Markdown file store for task documents.

Tasks live under ``<repo>/tasks/<NN-state>/`` with one markdown file per
task.  Every invocation reads a fresh :class:`Snapshot`; nothing is cached
between calls and the store never assumes it is the only writer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..constants import TASK_FILE_SUFFIX
from ..errors import TaskNotFoundError, TaskplainError
from .model import TaskDoc
from .normalization import TaskWarning
from .taskfile import TaskFileError, read_task_file, tasks_root, write_task_file

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """All parseable tasks plus the read warnings and rejected files."""

    tasks: list[TaskDoc] = field(default_factory=list)
    warnings: list[TaskWarning] = field(default_factory=list)
    invalid: list[TaskFileError] = field(default_factory=list)

    def by_id(self) -> dict[str, TaskDoc]:
        return {doc.meta.id: doc for doc in self.tasks}


class TaskStore:
    """File-backed accessor for :class:`TaskDoc` records.

    Parameters
    ----------
    repo_root:
        Repository root; tasks are read from ``<repo_root>/tasks``.
    """

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = Path(repo_root).resolve()

    @property
    def tasks_root(self) -> Path:
        return tasks_root(self.repo_root)

    # -- reads ----------------------------------------------------------------

    def list_task_files(self) -> list[Path]:
        """Return every ``*.md`` under a state directory, sorted by path."""
        root = self.tasks_root
        if not root.is_dir():
            return []
        files: list[Path] = []
        for state_dir in root.iterdir():
            if not state_dir.is_dir():
                continue
            files.extend(p for p in state_dir.iterdir() if p.is_file() and p.suffix == TASK_FILE_SUFFIX)
        return sorted(files)

    def read_file(self, path: Path) -> tuple[TaskDoc, list[TaskWarning]]:
        return read_task_file(path)

    def read_snapshot(self) -> Snapshot:
        """Read every task file.

        Files that fail to parse are skipped and reported both in
        ``invalid`` and as an ``invalid_task_file`` warning.
        """
        snapshot = Snapshot()
        for path in self.list_task_files():
            try:
                doc, warnings = read_task_file(path)
            except TaskFileError as exc:
                logger.warning("Skipping invalid task file %s: %s", path, "; ".join(exc.problems))
                snapshot.invalid.append(exc)
                snapshot.warnings.append(
                    TaskWarning("invalid_task_file", "; ".join(exc.problems), None, str(path))
                )
                continue
            snapshot.tasks.append(doc)
            snapshot.warnings.extend(warnings)
        return snapshot

    def list_all_tasks(self) -> list[TaskDoc]:
        return self.read_snapshot().tasks

    def load_task_by_id(self, task_id: str) -> TaskDoc:
        for doc in self.list_all_tasks():
            if doc.meta.id == task_id:
                return doc
        raise TaskNotFoundError(task_id)

    # -- writes ---------------------------------------------------------------

    def persist(self, doc: TaskDoc, previous_path: Optional[Path] = None) -> None:
        """Write *doc* to ``doc.path``; when it moved, remove *previous_path* afterwards."""
        write_task_file(doc)
        if previous_path is not None and Path(previous_path) != Path(doc.path):
            Path(previous_path).unlink(missing_ok=True)
            logger.debug("Moved %s -> %s", previous_path, doc.path)

    def create(self, doc: TaskDoc) -> None:
        if Path(doc.path).exists():
            raise TaskplainError(f"Task with id {doc.meta.id} already exists at {doc.path}")
        write_task_file(doc)

    def remove(self, path: Path) -> None:
        Path(path).unlink()
