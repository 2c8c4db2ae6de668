"""Task model for the markdown task engine.

A task is YAML front matter (``TaskMeta``) plus a markdown body.  The
front matter keeps a canonical key order on disk and preserves keys it
does not understand, so files written by newer tools survive a round trip.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..constants import COMMIT_MESSAGE_CUTOFF
from ..utils import _iso_to_ms, _now_iso, _parse_iso


TASK_ID_RE = re.compile(r"^[a-z0-9-]+$")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class _OrderedEnum(str, Enum):
    """String enum whose declaration order is meaningful."""

    @property
    def index(self) -> int:
        return list(type(self)).index(self)

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


class Kind(_OrderedEnum):
    EPIC = "epic"
    STORY = "story"
    TASK = "task"

    @property
    def weight(self) -> int:
        """Ranking weight: leaf work sorts before containers."""
        return {"task": 0, "story": 1, "epic": 2}[self.value]


class State(_OrderedEnum):
    IDEA = "idea"
    READY = "ready"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (State.DONE, State.CANCELED)


class Priority(_OrderedEnum):
    """Priority level, lowest first."""

    NONE = "none"
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Size(_OrderedEnum):
    TINY = "tiny"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    XL = "xl"


class Ambiguity(_OrderedEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Executor(_OrderedEnum):
    SIMPLE = "simple"
    STANDARD = "standard"
    EXPERT = "expert"
    HUMAN_REVIEW = "human_review"


class Isolation(_OrderedEnum):
    ISOLATED = "isolated"
    MODULE = "module"
    SHARED = "shared"
    GLOBAL = "global"

    @property
    def score(self) -> int:
        """Higher means safer to run alongside other work (isolated=3)."""
        return len(Isolation) - 1 - self.index


# Kind nesting rules.  Every rule site (creation, adoption, validation)
# consults these two tables.
PARENT_KIND: dict[Kind, Optional[Kind]] = {
    Kind.EPIC: None,
    Kind.STORY: Kind.EPIC,
    Kind.TASK: Kind.STORY,
}

CHILD_KIND: dict[Kind, Optional[Kind]] = {
    Kind.EPIC: Kind.STORY,
    Kind.STORY: Kind.TASK,
    Kind.TASK: None,
}

DEFAULT_SIZE = Size.MEDIUM
DEFAULT_AMBIGUITY = Ambiguity.LOW
DEFAULT_EXECUTOR = Executor.STANDARD
DEFAULT_ISOLATION = Isolation.MODULE


META_KEY_ORDER: tuple[str, ...] = (
    "id",
    "title",
    "kind",
    "parent",
    "children",
    "state",
    "blocked",
    "commit_message",
    "priority",
    "size",
    "ambiguity",
    "executor",
    "isolation",
    "touches",
    "depends_on",
    "blocks",
    "assignees",
    "labels",
    "created_at",
    "updated_at",
    "completed_at",
    "links",
    "last_activity_at",
    "execution",
)

KNOWN_META_KEYS = frozenset(META_KEY_ORDER)

_LIST_FIELDS = ("children", "touches", "depends_on", "blocks", "assignees", "labels")
_TIMESTAMP_FIELDS = ("created_at", "updated_at", "completed_at", "last_activity_at")


# ---------------------------------------------------------------------------
# TaskMeta
# ---------------------------------------------------------------------------

@dataclass
class TaskMeta:
    """Front-matter metadata of one task file.

    Optional list fields use an empty list for "absent"; they are omitted
    from the serialized form when empty.  ``blocked`` is different: an empty
    string still means the task is blocked, only ``None`` means unblocked.
    """

    # Identity
    id: str
    title: str
    kind: Kind = Kind.TASK
    state: State = State.IDEA
    priority: Priority = Priority.NORMAL

    # Hierarchy
    parent: Optional[str] = None  # legacy; children on the parent win
    children: list[str] = field(default_factory=list)

    # Blocking / completion
    blocked: Optional[str] = None
    commit_message: Optional[str] = None

    # Dispatch hints
    size: Size = DEFAULT_SIZE
    ambiguity: Ambiguity = DEFAULT_AMBIGUITY
    executor: Executor = DEFAULT_EXECUTOR
    isolation: Isolation = DEFAULT_ISOLATION
    touches: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)

    # People
    assignees: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    # Timestamps
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None
    last_activity_at: Optional[str] = None

    links: Optional[list[dict[str, Any]]] = None
    execution: Optional[dict[str, Any]] = None

    # Unknown front-matter keys, preserved verbatim
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def updated_at_ms(self) -> int:
        return _iso_to_ms(self.updated_at)

    def copy(self, **changes: Any) -> "TaskMeta":
        """Return a copy with list/dict fields detached from the original."""
        clone = replace(
            self,
            children=list(self.children),
            touches=list(self.touches),
            depends_on=list(self.depends_on),
            blocks=list(self.blocks),
            assignees=list(self.assignees),
            labels=list(self.labels),
            links=[dict(link) for link in self.links] if self.links is not None else None,
            execution=dict(self.execution) if self.execution is not None else None,
            extra=dict(self.extra),
        )
        for key, value in changes.items():
            setattr(clone, key, value)
        return clone

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize in canonical key order, unknown keys last."""
        raw: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "kind": self.kind.value,
            "parent": self.parent,
            "children": list(self.children) or None,
            "state": self.state.value,
            "blocked": self.blocked,
            "commit_message": self.commit_message,
            "priority": self.priority.value,
            "size": self.size.value,
            "ambiguity": self.ambiguity.value,
            "executor": self.executor.value,
            "isolation": self.isolation.value,
            "touches": list(self.touches) or None,
            "depends_on": list(self.depends_on) or None,
            "blocks": list(self.blocks) or None,
            "assignees": list(self.assignees) or None,
            "labels": list(self.labels) or None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "links": [dict(link) for link in self.links] if self.links is not None else None,
            "last_activity_at": self.last_activity_at,
            "execution": self.execution,
        }
        data: dict[str, Any] = {}
        for key in META_KEY_ORDER:
            if key == "completed_at":
                # Always written; null marks "not completed".
                data[key] = self.completed_at
                continue
            value = raw[key]
            if value is not None:
                data[key] = value
        for key, value in self.extra.items():
            if key not in data:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskMeta":
        """Build from a normalized, schema-valid mapping."""
        d = dict(data)

        def _enum(enum_cls: type[Enum], key: str, default: Enum) -> Any:
            raw = d.pop(key, None)
            if raw is None:
                return default
            if isinstance(raw, enum_cls):
                return raw
            try:
                return enum_cls(str(raw))
            except ValueError:
                return default

        def _list(key: str) -> list[str]:
            return [str(item) for item in (d.pop(key, None) or [])]

        kind = _enum(Kind, "kind", Kind.TASK)
        state = _enum(State, "state", State.IDEA)
        priority = _enum(Priority, "priority", Priority.NORMAL)
        size = _enum(Size, "size", DEFAULT_SIZE)
        ambiguity = _enum(Ambiguity, "ambiguity", DEFAULT_AMBIGUITY)
        executor = _enum(Executor, "executor", DEFAULT_EXECUTOR)
        isolation = _enum(Isolation, "isolation", DEFAULT_ISOLATION)
        blocked = d.pop("blocked", None)
        links = d.pop("links", None)

        meta = cls(
            id=str(d.pop("id")),
            title=str(d.pop("title")),
            kind=kind,
            state=state,
            priority=priority,
            parent=d.pop("parent", None) or None,
            children=_list("children"),
            blocked=str(blocked) if blocked is not None else None,
            commit_message=d.pop("commit_message", None),
            size=size,
            ambiguity=ambiguity,
            executor=executor,
            isolation=isolation,
            touches=_list("touches"),
            depends_on=_list("depends_on"),
            blocks=_list("blocks"),
            assignees=_list("assignees"),
            labels=_list("labels"),
            created_at=str(d.pop("created_at")),
            updated_at=str(d.pop("updated_at")),
            completed_at=d.pop("completed_at", None) or None,
            last_activity_at=d.pop("last_activity_at", None) or None,
            links=[dict(link) for link in links] if isinstance(links, list) else None,
            execution=d.pop("execution", None),
        )
        meta.extra = d
        return meta


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

def _is_non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _check_enum(data: dict[str, Any], key: str, enum_cls: type[_OrderedEnum],
                errors: list[str], required: bool = False) -> None:
    value = data.get(key)
    if value is None:
        if required:
            errors.append(f"'{key}' is required")
        return
    if value not in enum_cls.values():
        errors.append(f"'{key}' must be one of {enum_cls.values()}, got '{value}'")


def _check_link(link: Any, index: int, errors: list[str]) -> None:
    if not isinstance(link, dict):
        errors.append(f"'links[{index}]' must be an object")
        return
    link_type = link.get("type")
    if link_type == "github_issue":
        number = link.get("number")
        if isinstance(number, bool) or not isinstance(number, int) or number < 1:
            errors.append(f"'links[{index}].number' must be a positive integer")
        if "repo" in link and not _is_non_empty_str(link["repo"]):
            errors.append(f"'links[{index}].repo' must be a non-empty string")
        if "key" in link:
            errors.append(f"'links[{index}].key' is not allowed for github_issue")
    elif link_type == "linear":
        if not _is_non_empty_str(link.get("key")):
            errors.append(f"'links[{index}].key' must be a non-empty string")
        if "repo" in link or "number" in link:
            errors.append(f"'links[{index}]' linear links only take 'key'")
    else:
        errors.append(f"'links[{index}].type' must be 'github_issue' or 'linear'")


def validate_meta_dict(data: dict[str, Any]) -> list[str]:
    """Validate a front-matter mapping.

    Returns a list of error strings (empty = valid).  A ``done`` task
    completed on or after the commit-message cutoff must carry a
    non-empty ``commit_message``.
    """
    errors: list[str] = []
    if not isinstance(data, dict):
        return ["Expected a mapping"]

    task_id = data.get("id")
    if not _is_non_empty_str(task_id):
        errors.append("'id' is required and must be non-empty")
    elif not TASK_ID_RE.match(task_id):
        errors.append(f"'id' must match {TASK_ID_RE.pattern}, got '{task_id}'")
    if not _is_non_empty_str(data.get("title")):
        errors.append("'title' is required and must be non-empty")

    _check_enum(data, "kind", Kind, errors, required=True)
    _check_enum(data, "state", State, errors, required=True)
    _check_enum(data, "priority", Priority, errors, required=True)
    _check_enum(data, "size", Size, errors)
    _check_enum(data, "ambiguity", Ambiguity, errors)
    _check_enum(data, "executor", Executor, errors)
    _check_enum(data, "isolation", Isolation, errors)

    if "parent" in data and not _is_non_empty_str(data["parent"]):
        errors.append("'parent' must be a non-empty string")
    for list_field in _LIST_FIELDS:
        value = data.get(list_field)
        if value is None:
            continue
        if not isinstance(value, list) or not all(_is_non_empty_str(v) for v in value):
            errors.append(f"'{list_field}' must be an array of non-empty strings")

    for ts_field in ("created_at", "updated_at"):
        if _parse_iso(data.get(ts_field)) is None:
            errors.append(f"'{ts_field}' must be an ISO-8601 timestamp")
    for ts_field in ("completed_at", "last_activity_at"):
        value = data.get(ts_field)
        if value is not None and _parse_iso(value) is None:
            errors.append(f"'{ts_field}' must be an ISO-8601 timestamp")

    if "blocked" in data and not isinstance(data["blocked"], str):
        errors.append("'blocked' must be a string")
    if "commit_message" in data and not _is_non_empty_str(data["commit_message"]):
        errors.append("'commit_message' must be a non-empty string")
    if "execution" in data and not isinstance(data["execution"], dict):
        errors.append("'execution' must be an object")

    links = data.get("links")
    if links is not None:
        if not isinstance(links, list):
            errors.append("'links' must be an array")
        else:
            for index, link in enumerate(links):
                _check_link(link, index, errors)

    if data.get("state") == State.DONE.value:
        completion = data.get("completed_at") or data.get("updated_at")
        completed = _parse_iso(completion)
        cutoff = _parse_iso(COMMIT_MESSAGE_CUTOFF)
        if completed is None or completed >= cutoff:
            message = data.get("commit_message")
            if not isinstance(message, str) or not message.strip():
                errors.append("commit_message is required when state is done")
    return errors


# ---------------------------------------------------------------------------
# TaskDoc
# ---------------------------------------------------------------------------

@dataclass
class TaskDoc:
    """A task file: metadata, markdown body and its location on disk."""

    meta: TaskMeta
    body: str
    path: Path

    @property
    def id(self) -> str:
        return self.meta.id

    def copy(self, **changes: Any) -> "TaskDoc":
        doc = TaskDoc(meta=self.meta.copy(), body=self.body, path=self.path)
        for key, value in changes.items():
            setattr(doc, key, value)
        return doc

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.meta.id, "path": str(self.path), "meta": self.meta.to_dict(), "body": self.body}
