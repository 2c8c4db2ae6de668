"""Graph-wide validation.

Findings are collected, never raised: :meth:`ValidationService.validate_all`
returns every error plus the soft state-anomaly warnings, and warnings never
affect ``ok``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..constants import MAX_HIERARCHY_DEPTH
from .hierarchy import build_hierarchy_index
from .model import CHILD_KIND, PARENT_KIND, TASK_ID_RE, Kind, State, TaskDoc, validate_meta_dict
from .sections import check_acceptance, missing_headings
from .taskfile import active_name, filename_matches, state_dir

logger = logging.getLogger(__name__)

STRUCTURAL = "structural"
REFERENTIAL = "referential"
DOCUMENT = "document"

_CATEGORY_BY_CODE: dict[str, str] = {
    "schema": DOCUMENT,
    "heading": DOCUMENT,
    "acceptance_criteria_empty": DOCUMENT,
    "acceptance_criteria_format": DOCUMENT,
    "all_acceptance_criteria_completed": DOCUMENT,
    "path": DOCUMENT,
    "filename": DOCUMENT,
    "duplicate_id": REFERENTIAL,
    "legacy_parent_metadata": STRUCTURAL,
    "invalid_children_kind": STRUCTURAL,
    "missing_child_reference": REFERENTIAL,
    "duplicate_child_reference": STRUCTURAL,
    "child_not_listed": STRUCTURAL,
    "conflicting_parent": STRUCTURAL,
    "multiple_parents": STRUCTURAL,
    "invalid_child_kind": STRUCTURAL,
    "missing_parent": REFERENTIAL,
    "invalid_parent_kind": STRUCTURAL,
    "cycle": STRUCTURAL,
    "depth_exceeded": STRUCTURAL,
    "incomplete_descendant": STRUCTURAL,
    "missing_dependency": REFERENTIAL,
    "missing_block_target": REFERENTIAL,
    "state_anomaly": STRUCTURAL,
    "state_progression": STRUCTURAL,
    "inconsistent_cancellation": STRUCTURAL,
    "incomplete_closure": STRUCTURAL,
}


def category_for(code: str) -> str:
    """Taxonomy bucket for a finding code; ``<field>_*`` reference codes are referential."""
    if code in _CATEGORY_BY_CODE:
        return _CATEGORY_BY_CODE[code]
    if code.startswith(("depends_on_", "blocks_")):
        return REFERENTIAL
    return DOCUMENT


@dataclass
class Finding:
    code: str
    message: str
    file: str
    category: str = ""

    def __post_init__(self) -> None:
        if not self.category:
            self.category = category_for(self.code)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "file": self.file, "category": self.category}


@dataclass
class ValidationResult:
    ok: bool
    errors: list[Finding] = field(default_factory=list)
    warnings: list[Finding] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


_PLURAL = {Kind.EPIC: "epics", Kind.STORY: "stories", Kind.TASK: "tasks"}


def _kind_label(kind: Kind) -> str:
    return kind.value.capitalize()


class ValidationService:
    """Check single documents and whole task graphs."""

    def validate(self, doc: TaskDoc) -> ValidationResult:
        errors, warnings = self.validate_document(doc)
        return ValidationResult(ok=not errors, errors=errors, warnings=warnings)

    def validate_all(self, docs: list[TaskDoc]) -> ValidationResult:
        errors: list[Finding] = []
        warnings: list[Finding] = []
        for doc in docs:
            doc_errors, doc_warnings = self.validate_document(doc)
            errors.extend(doc_errors)
            warnings.extend(doc_warnings)
        errors.extend(self.validate_cross_document(docs))
        warnings.extend(self.detect_state_warnings(docs))
        if errors:
            logger.debug("Validation found %d errors across %d tasks", len(errors), len(docs))
        return ValidationResult(ok=not errors, errors=errors, warnings=warnings)

    # ------------------------------------------------------------------
    # Per document
    # ------------------------------------------------------------------

    def validate_document(self, doc: TaskDoc) -> tuple[list[Finding], list[Finding]]:
        file = str(doc.path)
        errors: list[Finding] = []
        warnings: list[Finding] = []
        meta = doc.meta

        problems = validate_meta_dict(meta.to_dict())
        if problems:
            errors.append(Finding("schema", "; ".join(problems), file))

        for heading in missing_headings(doc.body, meta.state):
            errors.append(Finding("heading", f"Missing required heading: {heading}", file))

        acceptance = check_acceptance(doc.body)
        if acceptance.present:
            if not acceptance.items and not acceptance.malformed:
                errors.append(Finding(
                    "acceptance_criteria_empty",
                    "Acceptance Criteria must include at least one checkbox item.",
                    file,
                ))
            else:
                if acceptance.malformed:
                    errors.append(Finding(
                        "acceptance_criteria_format",
                        "Acceptance Criteria must be a list of checkbox bullet points (e.g., '- [ ] Description').",
                        file,
                    ))
                if not meta.state.is_terminal and acceptance.all_checked:
                    warnings.append(Finding(
                        "all_acceptance_criteria_completed",
                        "All acceptance criteria checkboxes are completed. "
                        "Task should be marked as done using 'taskplain complete'.",
                        file,
                    ))

        path = Path(doc.path)
        expected_dir = state_dir(Path("."), meta.state).name
        if path.parent.name != expected_dir:
            errors.append(Finding(
                "path",
                f"File resides in '{path.parent.name}' but state '{meta.state.value}' expects '{expected_dir}'",
                file,
            ))

        if not filename_matches(path, meta):
            if meta.state == State.DONE:
                message = "Done tasks must be prefixed with completion date (YYYY-MM-DD)"
            else:
                message = f"Expected filename '{active_name(meta.kind, meta.id)}' for state '{meta.state.value}'"
            errors.append(Finding("filename", message, file))

        return errors, warnings

    # ------------------------------------------------------------------
    # Cross document
    # ------------------------------------------------------------------

    def validate_cross_document(self, docs: list[TaskDoc]) -> list[Finding]:
        errors: list[Finding] = []
        id_map: dict[str, TaskDoc] = {}
        for doc in docs:
            if doc.meta.id in id_map:
                errors.append(Finding("duplicate_id", f"Duplicate task id '{doc.meta.id}' detected", str(doc.path)))
            else:
                id_map[doc.meta.id] = doc

        def path_of(*ids: str) -> str:
            for task_id in ids:
                if task_id in id_map:
                    return str(id_map[task_id].path)
            return ""

        index, issues = build_hierarchy_index(docs)

        for doc in docs:
            if doc.meta.parent:
                errors.append(Finding(
                    "legacy_parent_metadata",
                    f"Task '{doc.meta.id}' still declares legacy parent '{doc.meta.parent}'. "
                    "Run 'taskplain validate --fix' to migrate to parent-owned children.",
                    str(doc.path),
                ))
            if doc.meta.children and doc.meta.kind == Kind.TASK:
                errors.append(Finding(
                    "invalid_children_kind", f"Task '{doc.meta.id}' cannot declare children", str(doc.path),
                ))

        for ref in issues.missing_children:
            errors.append(Finding(
                "missing_child_reference",
                f"Parent '{ref.parent_id}' references missing child '{ref.child_id}'",
                path_of(ref.parent_id, ref.child_id),
            ))
        for ref in issues.duplicate_children:
            if ref.parent_id not in id_map:
                continue
            errors.append(Finding(
                "duplicate_child_reference",
                f"Parent '{ref.parent_id}' lists child '{ref.child_id}' more than once",
                path_of(ref.parent_id),
            ))
        for ref in issues.legacy_only_children:
            errors.append(Finding(
                "child_not_listed",
                f"Child '{ref.child_id}' is missing from parent '{ref.parent_id}' children list",
                path_of(ref.parent_id, ref.child_id),
            ))
        for conflict in issues.conflicting_parents:
            errors.append(Finding(
                "conflicting_parent",
                f"Child '{conflict.child_id}' is declared under '{conflict.declared_parent_id}' "
                f"but also linked to '{conflict.legacy_parent_id}'",
                path_of(conflict.child_id),
            ))
        for multiple in issues.multiple_parents:
            errors.append(Finding(
                "multiple_parents",
                f"Child '{multiple.child_id}' is listed by '{multiple.parent_id}' "
                f"but already belongs to '{multiple.kept_parent_id}'",
                path_of(multiple.parent_id),
            ))

        for parent_id, children in index.children_by_id.items():
            parent = id_map.get(parent_id)
            if parent is None:
                continue
            allowed = CHILD_KIND[parent.meta.kind]
            if allowed is None:
                continue
            for child in children:
                if child.meta.kind != allowed:
                    errors.append(Finding(
                        "invalid_child_kind",
                        f"{_kind_label(parent.meta.kind)} '{parent_id}' can only list {_PLURAL[allowed]} "
                        f"as children; found '{child.meta.id}' ({child.meta.kind.value})",
                        str(parent.path),
                    ))

        for doc in docs:
            parent_id = index.parent_by_id.get(doc.meta.id)
            if not parent_id:
                continue
            parent = id_map.get(parent_id)
            if parent is None:
                errors.append(Finding(
                    "missing_parent", f"Parent '{parent_id}' not found for task '{doc.meta.id}'", str(doc.path),
                ))
                continue

            expected = PARENT_KIND[doc.meta.kind]
            if expected is None:
                errors.append(Finding(
                    "invalid_parent_kind", f"Epic '{doc.meta.id}' cannot have a parent", str(doc.path),
                ))
            elif parent.meta.kind != expected:
                errors.append(Finding(
                    "invalid_parent_kind",
                    f"{_kind_label(doc.meta.kind)} '{doc.meta.id}' must have {'an' if expected == Kind.EPIC else 'a'} "
                    f"{expected.value} parent",
                    str(doc.path),
                ))

            depth, cycle = self._depth_and_cycle(doc.meta.id, index.parent_by_id)
            if cycle:
                errors.append(Finding("cycle", f"Parent cycle detected starting at '{doc.meta.id}'", str(doc.path)))
            if depth > MAX_HIERARCHY_DEPTH:
                errors.append(Finding(
                    "depth_exceeded", f"Hierarchy depth for '{doc.meta.id}' exceeds allowed maximum", str(doc.path),
                ))

        for doc in docs:
            if doc.meta.state != State.DONE or doc.meta.kind == Kind.TASK:
                continue
            for descendant in index.descendants_of(doc.meta.id):
                if not descendant.meta.state.is_terminal:
                    errors.append(Finding(
                        "incomplete_descendant",
                        f"Cannot mark '{doc.meta.id}' done while descendant '{descendant.meta.id}' "
                        f"is {descendant.meta.state.value}",
                        str(doc.path),
                    ))
                    break

        for doc in docs:
            self._check_references(doc, id_map, errors, "depends_on", "missing_dependency")
            self._check_references(doc, id_map, errors, "blocks", "missing_block_target")

        return errors

    @staticmethod
    def _depth_and_cycle(task_id: str, parent_by_id: dict[str, str]) -> tuple[int, bool]:
        depth = 1
        seen = {task_id}
        current: Optional[str] = task_id
        while current:
            parent_id = parent_by_id.get(current)
            if not parent_id:
                break
            if parent_id in seen:
                return depth, True
            seen.add(parent_id)
            depth += 1
            current = parent_id
        return depth, False

    @staticmethod
    def _check_references(
        doc: TaskDoc,
        id_map: dict[str, TaskDoc],
        errors: list[Finding],
        field_name: str,
        missing_code: str,
    ) -> None:
        file = str(doc.path)
        seen: set[str] = set()
        for target in getattr(doc.meta, field_name):
            if not TASK_ID_RE.match(target):
                errors.append(Finding(
                    f"{field_name}_invalid_id", f"{field_name} entry '{target}' is not a valid task id", file,
                ))
                continue
            if target == doc.meta.id:
                errors.append(Finding(
                    f"{field_name}_self_reference", f"{field_name} cannot include the task itself ({target})", file,
                ))
                continue
            if target not in id_map:
                errors.append(Finding(missing_code, f"{field_name} references missing task '{target}'", file))
            if target in seen:
                errors.append(Finding(
                    f"{field_name}_duplicate", f"{field_name} contains duplicate reference '{target}'", file,
                ))
            seen.add(target)

    # ------------------------------------------------------------------
    # Soft warnings
    # ------------------------------------------------------------------

    def detect_state_warnings(self, docs: list[TaskDoc]) -> list[Finding]:
        """Parent/child state combinations that are legal but probably stale."""
        warnings: list[Finding] = []
        if not docs:
            return warnings
        index, _issues = build_hierarchy_index(docs)
        id_map = {doc.meta.id: doc for doc in docs}

        for parent_id, children in index.children_by_id.items():
            parent = id_map.get(parent_id)
            if parent is None or not children:
                continue
            file = str(parent.path)
            state = parent.meta.state

            def ids_in(*states: State) -> list[str]:
                return [c.meta.id for c in children if c.meta.state in states]

            if state == State.IDEA and ids_in(State.DONE):
                warnings.append(Finding(
                    "state_anomaly",
                    f"Parent '{parent_id}' is in idea but has completed children ({', '.join(ids_in(State.DONE))}).\n"
                    "    Hint: Consider promoting the parent or adjusting children. "
                    "Use `taskplain move <id> ready` or `taskplain move <id> in-progress`.",
                    file,
                ))
            if state == State.IDEA and ids_in(State.IN_PROGRESS):
                warnings.append(Finding(
                    "state_progression",
                    f"Parent '{parent_id}' is in idea but child {', '.join(ids_in(State.IN_PROGRESS))} is in-progress.\n"
                    "    Hint: Consider promoting the parent to reflect active work. Use `taskplain move <id> ready`.",
                    file,
                ))
            if state == State.CANCELED:
                active = [
                    f"{c.meta.id}:{c.meta.state.value}" for c in children
                    if c.meta.state in (State.READY, State.IN_PROGRESS)
                ]
                if active:
                    warnings.append(Finding(
                        "inconsistent_cancellation",
                        f"Parent '{parent_id}' is canceled but has active children ({', '.join(active)}).\n"
                        "    Hint: Consider canceling children or restoring the parent. Use "
                        "`taskplain move <parent> canceled --cascade cancel` or move children individually.",
                        file,
                    ))
            if state == State.DONE and ids_in(State.CANCELED):
                warnings.append(Finding(
                    "incomplete_closure",
                    f"Parent '{parent_id}' is done but has canceled children ({', '.join(ids_in(State.CANCELED))}).\n"
                    "    Hint: If cancellation is expected, ignore. Otherwise, revisit scope alignment.",
                    file,
                ))
        return warnings
