"""Bulk structural normalization (``taskplain validate --fix``).

Rewrites task files into canonical form: front-matter key order, required
headings, a checkbox acceptance list, synchronized timestamps and, on
request, the expected file name.  Legacy ``parent`` fields are migrated into
the parent's ``children`` list first.  The whole pass runs under a named
lock so two normalizers never interleave on the same repository.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..constants import DEFAULT_LOCK_RETRIES, DEFAULT_LOCK_STALE_SECONDS, STALE_TIMESTAMP_TOLERANCE_SECONDS
from ..errors import TaskplainError
from ..io_utils import FileLock, _named_lock_path
from ..utils import _iso_to_ms, _now_iso
from .model import KNOWN_META_KEYS, META_KEY_ORDER, TaskDoc
from .normalization import TaskWarning
from .ranking import build_ranking_context, task_sort_key
from .sections import (
    ACCEPTANCE_HEADING,
    append_missing_headings,
    check_acceptance,
    extract_section,
    seed_acceptance_checklist,
    set_section,
)
from .store import TaskStore
from .taskfile import expected_path, read_task_text, serialize_task_doc, split_front_matter

_DISPATCH_FIELDS = {"size", "ambiguity", "executor", "isolation", "decision_readiness", "agent_fit", "autonomy_risk"}


@dataclass
class FixRename:
    from_path: Path
    to_path: Path
    ok: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"from": str(self.from_path), "to": str(self.to_path), "ok": self.ok}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class FixItem:
    id: str
    path: Path
    changes: list[str]
    changed: bool
    rename: Optional[FixRename] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "path": str(self.path),
            "changes": list(self.changes),
            "changed": self.changed,
        }
        if self.rename is not None:
            data["rename"] = self.rename.to_dict()
        return data


@dataclass
class FixSkip:
    id: str
    reason: str
    path: Optional[Path] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "reason": self.reason}
        if self.path is not None:
            data["path"] = str(self.path)
        return data


@dataclass
class FixSummary:
    items: list[FixItem] = field(default_factory=list)
    skipped: list[FixSkip] = field(default_factory=list)

    @property
    def changed_count(self) -> int:
        return sum(1 for item in self.items if item.changed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "skipped": [skip.to_dict() for skip in self.skipped],
            "changed_count": self.changed_count,
        }


def _key_order_changed(keys: list[str]) -> bool:
    known = [key for key in META_KEY_ORDER if key in keys]
    unknown = [key for key in keys if key not in KNOWN_META_KEYS]
    return keys != known + unknown


def _dispatch_notes(warnings: list[TaskWarning]) -> list[str]:
    notes: list[str] = []
    for warning in warnings:
        if warning.field in _DISPATCH_FIELDS and warning.message not in notes:
            notes.append(warning.message)
    return notes


class FixService:
    """Normalize task files in place under the repository's fix lock.

    Parameters
    ----------
    repo_root:
        Repository root containing ``tasks/``.
    lock_retries / lock_stale:
        Lock acquisition retries and the age (seconds) after which a held
        lock is considered abandoned.
    """

    def __init__(
        self,
        repo_root: Path,
        store: Optional[TaskStore] = None,
        lock_retries: int = DEFAULT_LOCK_RETRIES,
        lock_stale: float = DEFAULT_LOCK_STALE_SECONDS,
    ) -> None:
        self.store = store or TaskStore(repo_root)
        self.repo_root = self.store.repo_root
        self.lock_path = _named_lock_path(self.repo_root)
        self.lock_retries = lock_retries
        self.lock_stale = lock_stale

    def _lock(self) -> FileLock:
        return FileLock(self.lock_path, retries=self.lock_retries, stale=self.lock_stale)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def fix_all(self, rename_files: bool = False) -> FixSummary:
        with self._lock():
            self.migrate_legacy_parents()
            summary = FixSummary()
            for path in self.store.list_task_files():
                try:
                    summary.items.append(self._fix_path(path, rename_files))
                except (TaskplainError, OSError) as exc:
                    logger.warning("Skipping {}: {}", path.name, exc)
                    summary.skipped.append(FixSkip(path.name, str(exc), path))
            logger.info("Normalized {} of {} task files", summary.changed_count, len(summary.items))
            return summary

    def fix_ids(self, ids: list[str], rename_files: bool = False) -> FixSummary:
        with self._lock():
            self.migrate_legacy_parents()
            summary = FixSummary()
            for task_id in dict.fromkeys(ids):
                try:
                    doc = self.store.load_task_by_id(task_id)
                    summary.items.append(self._fix_path(doc.path, rename_files))
                except (TaskplainError, OSError) as exc:
                    logger.warning("Skipping {}: {}", task_id, exc)
                    summary.skipped.append(FixSkip(task_id, str(exc)))
            return summary

    # ------------------------------------------------------------------
    # Legacy parents
    # ------------------------------------------------------------------

    def migrate_legacy_parents(self) -> list[str]:
        """Move every legacy ``parent`` into the parent's ``children`` list.

        New children are appended after the existing list in ranking order.
        Returns the ids of rewritten tasks.
        """
        tasks = self.store.list_all_tasks()
        legacy = [doc for doc in tasks if doc.meta.parent]
        if not legacy:
            return []

        timestamp = _now_iso()
        by_id = {doc.meta.id: doc for doc in tasks}
        ctx = build_ranking_context(tasks)
        rewritten: list[str] = []

        additions: dict[str, list[TaskDoc]] = {}
        for child in legacy:
            if child.meta.parent in by_id:
                additions.setdefault(child.meta.parent, []).append(child)

        for child in legacy:
            updated = child.copy()
            updated.meta.parent = None
            updated.meta.updated_at = timestamp
            updated.meta.last_activity_at = timestamp
            self.store.persist(updated)
            by_id[updated.meta.id] = updated
            rewritten.append(updated.meta.id)

        for parent_id, children in additions.items():
            parent = by_id[parent_id]
            existing = list(parent.meta.children)
            preserved = [child_id for child_id in existing if child_id in by_id]
            new_docs = [by_id[doc.meta.id] for doc in children if doc.meta.id not in existing]
            new_docs.sort(key=task_sort_key(ctx))
            next_children = preserved + [doc.meta.id for doc in new_docs]
            if next_children == existing:
                continue
            updated = parent.copy()
            updated.meta.children = next_children
            updated.meta.updated_at = timestamp
            updated.meta.last_activity_at = timestamp
            self.store.persist(updated)
            by_id[parent_id] = updated
            rewritten.append(parent_id)

        logger.info("Migrated legacy parent links for {} tasks", len(legacy))
        return rewritten

    # ------------------------------------------------------------------
    # Per file
    # ------------------------------------------------------------------

    def _fix_path(self, path: Path, rename_files: bool) -> FixItem:
        original = read_task_text(path).replace("\r\n", "\n")
        doc, warnings = self.store.read_file(path)
        mtime_ms = int(path.stat().st_mtime * 1000)

        normalized, changes, changed = self.normalize_doc(doc, original, mtime_ms, warnings)
        if changed:
            self.store.persist(normalized)

        result_path = path
        rename: Optional[FixRename] = None
        if rename_files:
            rename = self._rename_if_needed(path, normalized)
            if rename is not None and rename.ok:
                result_path = rename.to_path
                changes.append(f"renamed file to {rename.to_path.relative_to(self.repo_root).as_posix()}")

        net_changed = changed or (rename is not None and rename.ok)
        return FixItem(
            id=normalized.meta.id,
            path=result_path,
            changes=changes if net_changed else [],
            changed=net_changed,
            rename=rename,
        )

    def normalize_doc(
        self,
        doc: TaskDoc,
        original: str,
        mtime_ms: int,
        warnings: Optional[list[TaskWarning]] = None,
    ) -> tuple[TaskDoc, list[str], bool]:
        """Return ``(doc, changes, changed)`` for the canonical form of *doc*."""
        changes: list[str] = []
        front, _body = split_front_matter(original)
        if _key_order_changed([str(key) for key in front]):
            changes.append("normalized front matter order")

        body, added = append_missing_headings(doc.body, doc.meta.state)
        changes.extend(f"added heading {heading}" for heading in added)

        acceptance = check_acceptance(body)
        if acceptance.present and (acceptance.malformed or not acceptance.items):
            content = extract_section(body, ACCEPTANCE_HEADING) or ""
            body, seeded, _added = set_section(body, ACCEPTANCE_HEADING, seed_acceptance_checklist(content))
            if seeded:
                changes.append("seeded acceptance criteria checklist")

        base = doc.copy(body=body.lstrip("\n").rstrip())
        structural = serialize_task_doc(base) != original

        updated_ms = _iso_to_ms(doc.meta.updated_at)
        stale = updated_ms > 0 and mtime_ms - updated_ms > STALE_TIMESTAMP_TOLERANCE_SECONDS * 1000

        if not (structural or stale):
            return doc, [], False

        timestamp = _now_iso()
        base.meta.updated_at = timestamp
        base.meta.last_activity_at = timestamp
        changes.append("synchronized timestamps")
        for note in _dispatch_notes(warnings or []):
            if note not in changes:
                changes.append(note)
        return base, changes, True

    def _rename_if_needed(self, current: Path, doc: TaskDoc) -> Optional[FixRename]:
        target = expected_path(self.repo_root, doc.meta)
        if target == current:
            return None
        if target.exists():
            return FixRename(current, target, False, "target already exists")
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            current.rename(target)
        except OSError as exc:
            logger.warning("Rename {} -> {} failed: {}", current, target, exc)
            return FixRename(current, target, False, str(exc))
        return FixRename(current, target, True)
