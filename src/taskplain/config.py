"""Load optional configuration from `.taskplain/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE,
    DEFAULT_CHILD_SUGGESTION_LIMIT,
    DEFAULT_LOCK_RETRIES,
    DEFAULT_LOCK_STALE_SECONDS,
    DEFAULT_NEXT_COUNT,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error


VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def load_config(repo_root: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        repo_root: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    repo_root = repo_root.resolve()
    path = repo_root / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_int(raw: Any, default: int) -> int:
    if isinstance(raw, bool):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


def get_next_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract scheduler defaults from the config.

    Args:
        config: Configuration dictionary.

    Returns:
        A mapping with `count`, `kinds` and `executor_preference`.
    """
    raw = _get_nested(config, "next")
    raw = raw if isinstance(raw, dict) else {}
    kinds = raw.get("kinds")
    if isinstance(kinds, str):
        kinds = [kinds]
    if not isinstance(kinds, list) or not kinds:
        kinds = ["task"]
    preference = raw.get("executor_preference")
    return {
        "count": _positive_int(raw.get("count"), DEFAULT_NEXT_COUNT) or DEFAULT_NEXT_COUNT,
        "kinds": [str(kind) for kind in kinds],
        "executor_preference": str(preference) if preference else None,
    }


def get_pickup_config(config: dict[str, Any]) -> dict[str, Any]:
    raw = _get_nested(config, "pickup")
    raw = raw if isinstance(raw, dict) else {}
    return {
        "child_suggestion_limit": _positive_int(
            raw.get("child_suggestion_limit"), DEFAULT_CHILD_SUGGESTION_LIMIT
        ),
    }


def get_fix_config(config: dict[str, Any]) -> dict[str, Any]:
    raw = _get_nested(config, "fix")
    raw = raw if isinstance(raw, dict) else {}
    return {"rename_files": bool(raw.get("rename_files", False))}


def get_lock_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the normalization lock settings.

    Args:
        config: Configuration dictionary.

    Returns:
        A mapping with `retries` and `stale` (seconds).
    """
    raw = _get_nested(config, "lock")
    raw = raw if isinstance(raw, dict) else {}
    stale_raw = raw.get("stale_seconds")
    try:
        stale = float(stale_raw) if stale_raw is not None else DEFAULT_LOCK_STALE_SECONDS
    except (TypeError, ValueError):
        stale = DEFAULT_LOCK_STALE_SECONDS
    if stale <= 0:
        stale = DEFAULT_LOCK_STALE_SECONDS
    return {
        "retries": _positive_int(raw.get("retries"), DEFAULT_LOCK_RETRIES),
        "stale": stale,
    }


def get_log_level(config: dict[str, Any]) -> str | None:
    raw = _get_nested(config, "logging", "level")
    if isinstance(raw, str) and raw.upper() in VALID_LOG_LEVELS:
        return raw.upper()
    return None
