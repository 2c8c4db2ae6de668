"""Normalize raw front matter before schema validation.

Hand-edited task files drift: ``in_progress`` instead of ``in-progress``,
numeric priorities, comma-separated labels, missing timestamps.  Each
repair is reported as a :class:`TaskWarning` so callers can surface it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Optional

from ..utils import _format_iso, _now_iso
from .model import (
    DEFAULT_AMBIGUITY,
    DEFAULT_EXECUTOR,
    DEFAULT_ISOLATION,
    DEFAULT_SIZE,
    KNOWN_META_KEYS,
    TASK_ID_RE,
    Ambiguity,
    Executor,
    Isolation,
    Priority,
    Size,
    State,
)


@dataclass
class TaskWarning:
    code: str
    message: str
    field: Optional[str] = None
    file: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


_STATE_ALIASES = {
    "in_progress": "in-progress",
    "inprogress": "in-progress",
    "in progress": "in-progress",
    "cancelled": "canceled",
}


def coerce_timestamps(data: dict[str, Any]) -> dict[str, Any]:
    """Turn YAML-parsed datetimes back into ISO strings."""
    copy = dict(data)
    for key in ("created_at", "updated_at", "last_activity_at", "completed_at"):
        value = copy.get(key)
        if isinstance(value, datetime):
            copy[key] = _format_iso(value)
        elif isinstance(value, date):
            copy[key] = _format_iso(datetime(value.year, value.month, value.day))
    execution = copy.get("execution")
    if isinstance(execution, dict) and isinstance(execution.get("attempts"), list):
        for attempt in execution["attempts"]:
            if not isinstance(attempt, dict):
                continue
            for key in ("started_at", "ended_at"):
                if isinstance(attempt.get(key), datetime):
                    attempt[key] = _format_iso(attempt[key])
            reviewer = attempt.get("reviewer")
            if isinstance(reviewer, dict) and isinstance(reviewer.get("reviewed_at"), datetime):
                reviewer["reviewed_at"] = _format_iso(reviewer["reviewed_at"])
    return copy


def normalize_state(value: str) -> str:
    trimmed = value.strip().lower()
    if trimmed in _STATE_ALIASES:
        return _STATE_ALIASES[trimmed]
    canonical = trimmed.replace("_", "-").replace(" ", "-")
    if canonical in _STATE_ALIASES:
        return _STATE_ALIASES[canonical]
    if canonical in State.values():
        return canonical
    return value


def normalize_priority(value: Any) -> Any:
    values = Priority.values()
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return values[value] if 0 <= value < len(values) else value
    if isinstance(value, str):
        trimmed = value.strip().lower()
        if trimmed in values:
            return trimmed
        try:
            numeric = int(trimmed)
        except ValueError:
            return value
        if 0 <= numeric < len(values):
            return values[numeric]
    return value


def _normalize_enum(value: Any, allowed: list[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if normalized in allowed else None


def _normalize_or_default(value: Any, allowed: list[str], fallback: str, field: str,
                          warnings: list[TaskWarning]) -> str:
    if isinstance(value, str):
        normalized = _normalize_enum(value, allowed)
        if normalized:
            return normalized
        warnings.append(TaskWarning(
            f"{field}_invalid", f"{field} '{value}' not recognized → defaulted to {fallback}", field,
        ))
    elif value is not None:
        warnings.append(TaskWarning(
            f"{field}_invalid_type", f"{field} expected string → defaulted to {fallback}", field,
        ))
    return fallback


def _coerce_array(value: Any, field: str, warnings: list[TaskWarning]) -> Optional[list[Any]]:
    if value is None:
        return None
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        raw = [entry.strip() for entry in value.split(",") if entry.strip()]
        if not raw:
            return None
        warnings.append(TaskWarning(f"{field}_coerced", f"{field} string coerced into array", field))
        return raw
    warnings.append(TaskWarning(f"{field}_invalid_type", f"{field} expected array or comma string", field))
    return None


def _normalize_string_array(value: Any, field: str, warnings: list[TaskWarning]) -> Optional[list[str]]:
    values = _coerce_array(value, field, warnings)
    if values is None:
        return None
    result: list[str] = []
    for index, item in enumerate(values):
        if not isinstance(item, str):
            warnings.append(TaskWarning(
                f"{field}_coerced", f"{field}[{index}] was not a string and was dropped", field,
            ))
            continue
        trimmed = item.strip()
        if not trimmed:
            warnings.append(TaskWarning(
                f"{field}_empty_entry", f"{field}[{index}] was empty and removed", field,
            ))
            continue
        if trimmed not in result:
            result.append(trimmed)
    return result or None


def _normalize_id_array(value: Any, field: str, warnings: list[TaskWarning]) -> Optional[list[str]]:
    normalized = _normalize_string_array(value, field, warnings)
    if not normalized:
        return None
    lowered: list[str] = []
    for entry in normalized:
        if entry.lower() not in lowered:
            lowered.append(entry.lower())
    invalid = [entry for entry in lowered if not TASK_ID_RE.match(entry)]
    if invalid:
        warnings.append(TaskWarning(
            f"{field}_invalid_id", f"{field} contains invalid ids: {', '.join(invalid)}", field,
        ))
    return lowered


def _set_or_drop(meta: dict[str, Any], key: str, value: Any) -> None:
    if value is None:
        meta.pop(key, None)
    else:
        meta[key] = value


def _migrate_legacy_dispatch_fields(meta: dict[str, Any], warnings: list[TaskWarning]) -> None:
    if isinstance(meta.get("decision_readiness"), str):
        raw = meta.pop("decision_readiness")
        normalized = _normalize_enum(raw, Ambiguity.values())
        if normalized:
            meta.setdefault("ambiguity", normalized)
            warnings.append(TaskWarning(
                "decision_readiness_migrated", f"decision_readiness → ambiguity ({normalized})",
                "decision_readiness",
            ))
        else:
            warnings.append(TaskWarning(
                "decision_readiness_unmapped", f"decision_readiness '{raw}' not recognized",
                "decision_readiness",
            ))

    if isinstance(meta.get("agent_fit"), str):
        raw = meta.pop("agent_fit")
        normalized = _normalize_enum(raw, Executor.values())
        if normalized:
            meta.setdefault("executor", normalized)
            warnings.append(TaskWarning("agent_fit_migrated", f"agent_fit → executor ({normalized})", "agent_fit"))
        else:
            warnings.append(TaskWarning("agent_fit_unmapped", f"agent_fit '{raw}' not recognized", "agent_fit"))

    if isinstance(meta.get("autonomy_risk"), str):
        raw = meta.pop("autonomy_risk")
        if _normalize_enum(raw, ["low", "medium", "high"]) == "high":
            meta["ambiguity"] = "high"
            warnings.append(TaskWarning(
                "autonomy_risk_migrated", "autonomy_risk: high → ambiguity: high", "autonomy_risk",
            ))
        else:
            warnings.append(TaskWarning(
                "autonomy_risk_ignored", f"autonomy_risk '{raw}' not mapped (only 'high' supported)",
                "autonomy_risk",
            ))


def _normalize_blocked(meta: dict[str, Any], warnings: list[TaskWarning]) -> None:
    if "blocked" not in meta:
        return
    value = meta["blocked"]
    if value is None or isinstance(value, bool):
        meta["blocked"] = ""
        warnings.append(TaskWarning(
            "blocked_coerced",
            "blocked true/null coerced to empty string (run taskplain update <id> --unset blocked)",
            "blocked",
        ))
    elif isinstance(value, str) and value.rstrip() != value:
        meta["blocked"] = value.rstrip()
        warnings.append(TaskWarning("blocked_trimmed", "blocked message had trailing whitespace removed", "blocked"))


def _normalize_commit_message(meta: dict[str, Any], warnings: list[TaskWarning]) -> None:
    if "commit_message" not in meta:
        return
    value = meta["commit_message"]
    if value is None:
        del meta["commit_message"]
        warnings.append(TaskWarning(
            "commit_message_null", "commit_message was null → treated as absent", "commit_message",
        ))
        return
    if not isinstance(value, str):
        return
    trimmed = value.strip()
    if not trimmed:
        del meta["commit_message"]
        warnings.append(TaskWarning(
            "commit_message_empty", "commit_message was blank and removed", "commit_message",
        ))
        return
    if trimmed != value:
        meta["commit_message"] = trimmed
        warnings.append(TaskWarning(
            "commit_message_trimmed", "commit_message had surrounding whitespace removed", "commit_message",
        ))


def _normalize_links(links: list[Any], warnings: list[TaskWarning]) -> list[Any]:
    result: list[Any] = []
    for index, link in enumerate(links):
        if not isinstance(link, dict):
            warnings.append(TaskWarning(
                "link_not_object", f"links[{index}] was not an object and was preserved as-is", "links",
            ))
            result.append(link)
            continue
        copy = dict(link)
        number = copy.get("number")
        if isinstance(number, str) and number.strip().isdigit():
            copy["number"] = int(number.strip())
            warnings.append(TaskWarning(
                "link_number_normalized", f"links[{index}].number coerced to integer", "links",
            ))
        result.append(copy)
    return result


def _normalize_labels(meta: dict[str, Any], warnings: list[TaskWarning]) -> None:
    labels = meta.get("labels")
    if isinstance(labels, str):
        if labels.strip():
            meta["labels"] = [labels.strip()]
            warnings.append(TaskWarning("labels_coerced", "labels string coerced into array", "labels"))
    elif isinstance(labels, list):
        coerced = [v.strip() if isinstance(v, str) else str(v) for v in labels]
        coerced = [v for v in coerced if v]
        unique = list(dict.fromkeys(coerced))
        if unique != labels:
            meta["labels"] = unique
            warnings.append(TaskWarning("labels_normalized", "labels normalized (trimmed, deduped)", "labels"))

    assignees = meta.get("assignees")
    if isinstance(assignees, str) and assignees.strip():
        meta["assignees"] = [assignees.strip()]
        warnings.append(TaskWarning("assignees_coerced", "assignees string coerced into array", "assignees"))


def _normalize_dispatch_fields(meta: dict[str, Any], warnings: list[TaskWarning]) -> None:
    meta["size"] = _normalize_or_default(meta.get("size"), Size.values(), DEFAULT_SIZE.value, "size", warnings)
    meta["ambiguity"] = _normalize_or_default(
        meta.get("ambiguity"), Ambiguity.values(), DEFAULT_AMBIGUITY.value, "ambiguity", warnings,
    )
    meta["executor"] = _normalize_or_default(
        meta.get("executor"), Executor.values(), DEFAULT_EXECUTOR.value, "executor", warnings,
    )
    meta["isolation"] = _normalize_or_default(
        meta.get("isolation"), Isolation.values(), DEFAULT_ISOLATION.value, "isolation", warnings,
    )
    _set_or_drop(meta, "touches", _normalize_string_array(meta.get("touches"), "touches", warnings))
    _set_or_drop(meta, "depends_on", _normalize_id_array(meta.get("depends_on"), "depends_on", warnings))
    _set_or_drop(meta, "blocks", _normalize_id_array(meta.get("blocks"), "blocks", warnings))

    if meta["size"] == Size.XL.value and meta["isolation"] in (Isolation.ISOLATED.value, Isolation.MODULE.value):
        warnings.append(TaskWarning(
            "size_isolation_mismatch", "size 'xl' rarely stays isolated/module. Double-check isolation", "size",
        ))
    if meta["executor"] == Executor.SIMPLE.value and meta["ambiguity"] == Ambiguity.HIGH.value:
        warnings.append(TaskWarning(
            "executor_ambiguity_mismatch", "executor 'simple' with ambiguity 'high' may need escalation",
            "executor",
        ))


def normalize_meta_input(data: dict[str, Any]) -> tuple[dict[str, Any], list[TaskWarning]]:
    """Repair common front-matter drift.

    Returns the normalized mapping and the warnings describing each repair.
    The input mapping is not modified.
    """
    warnings: list[TaskWarning] = []
    meta = coerce_timestamps(data)

    _migrate_legacy_dispatch_fields(meta, warnings)

    if "parent" in meta and meta["parent"] in (None, ""):
        del meta["parent"]
        warnings.append(TaskWarning("parent_removed", "parent was null → treated as absent", "parent"))

    if isinstance(meta.get("state"), str):
        normalized = normalize_state(meta["state"])
        if normalized != meta["state"]:
            warnings.append(TaskWarning(
                "state_normalized", f"state '{normalized}' normalized from '{meta['state']}'", "state",
            ))
            meta["state"] = normalized

    if isinstance(meta.get("priority"), (str, int)):
        normalized = normalize_priority(meta["priority"])
        if normalized != meta["priority"]:
            meta["priority"] = normalized
            warnings.append(TaskWarning("priority_normalized", f"priority normalized to '{normalized}'", "priority"))

    _normalize_blocked(meta, warnings)
    _normalize_commit_message(meta, warnings)
    _normalize_labels(meta, warnings)

    links = meta.get("links")
    if isinstance(links, list):
        meta["links"] = _normalize_links(links, warnings)
    elif isinstance(links, dict):
        meta["links"] = _normalize_links([links], warnings)
        warnings.append(TaskWarning("links_coerced", "links object coerced into array", "links"))

    _normalize_dispatch_fields(meta, warnings)

    now = _now_iso()
    if not meta.get("created_at"):
        meta["created_at"] = now
        warnings.append(TaskWarning("created_at_missing", "created_at missing → defaulted to now", "created_at"))
    if not meta.get("updated_at"):
        meta["updated_at"] = meta["created_at"]
        warnings.append(TaskWarning(
            "updated_at_missing", "updated_at missing → defaulted to created_at", "updated_at",
        ))
    if not meta.get("last_activity_at"):
        meta["last_activity_at"] = meta["updated_at"]
        warnings.append(TaskWarning(
            "last_activity_missing", "last_activity_at missing → defaulted to updated_at", "last_activity_at",
        ))

    for key in meta:
        if key not in KNOWN_META_KEYS:
            warnings.append(TaskWarning("unknown_meta_key", f"Unknown metadata key '{key}' preserved", key))

    if isinstance(meta.get("blocked"), str) and meta.get("state") in (State.DONE.value, State.CANCELED.value):
        warnings.append(TaskWarning(
            "blocked_terminal_state", "blocked present while state is done/canceled", "blocked",
        ))

    return meta, warnings
