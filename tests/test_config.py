"""Tests for config loading and logging helpers."""

from __future__ import annotations

from pathlib import Path

from taskplain.config import (
    get_fix_config,
    get_lock_config,
    get_log_level,
    get_next_config,
    get_pickup_config,
    load_config,
)
from taskplain.logging_utils import pretty


def _write_config(repo: Path, text: str) -> Path:
    path = repo / ".taskplain" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_missing_file(self, repo: Path) -> None:
        assert load_config(repo) == ({}, None)

    def test_reads_mapping(self, repo: Path) -> None:
        _write_config(repo, "next:\n  count: 3\n")
        config, err = load_config(repo)
        assert err is None
        assert config == {"next": {"count": 3}}

    def test_empty_file(self, repo: Path) -> None:
        _write_config(repo, "")
        assert load_config(repo) == ({}, None)

    def test_bad_yaml_is_reported(self, repo: Path) -> None:
        _write_config(repo, "next: [unclosed\n")
        config, err = load_config(repo)
        assert config == {}
        assert err is not None and err.startswith("config.yaml: YAMLError")

    def test_non_mapping_is_reported(self, repo: Path) -> None:
        _write_config(repo, "- one\n- two\n")
        config, err = load_config(repo)
        assert config == {}
        assert err == "config.yaml: expected object, got list"


class TestConfigSections:
    def test_next_defaults(self) -> None:
        assert get_next_config({}) == {"count": 1, "kinds": ["task"], "executor_preference": None}

    def test_next_values(self) -> None:
        config = {"next": {"count": 4, "kinds": "story", "executor_preference": "expert"}}
        assert get_next_config(config) == {"count": 4, "kinds": ["story"], "executor_preference": "expert"}

    def test_next_rejects_bad_counts(self) -> None:
        assert get_next_config({"next": {"count": 0}})["count"] == 1
        assert get_next_config({"next": {"count": -2}})["count"] == 1
        assert get_next_config({"next": {"count": True}})["count"] == 1
        assert get_next_config({"next": "nonsense"})["count"] == 1

    def test_pickup(self) -> None:
        assert get_pickup_config({}) == {"child_suggestion_limit": 3}
        assert get_pickup_config({"pickup": {"child_suggestion_limit": 0}}) == {"child_suggestion_limit": 0}

    def test_fix(self) -> None:
        assert get_fix_config({}) == {"rename_files": False}
        assert get_fix_config({"fix": {"rename_files": True}}) == {"rename_files": True}

    def test_lock(self) -> None:
        assert get_lock_config({}) == {"retries": 5, "stale": 30.0}
        assert get_lock_config({"lock": {"retries": "2", "stale_seconds": 0}}) == {"retries": 2, "stale": 30.0}
        assert get_lock_config({"lock": {"stale_seconds": "abc"}})["stale"] == 30.0
        assert get_lock_config({"lock": {"stale_seconds": 12}})["stale"] == 12.0

    def test_log_level(self) -> None:
        assert get_log_level({"logging": {"level": "debug"}}) == "DEBUG"
        assert get_log_level({"logging": {"level": "loud"}}) is None
        assert get_log_level({"logging": "INFO"}) is None
        assert get_log_level({}) is None


class TestPretty:
    def test_mapping(self) -> None:
        assert pretty({"a": 1}) == '{\n  "a": 1\n}'

    def test_uses_to_dict(self) -> None:
        class Result:
            def to_dict(self):
                return {"ok": True}

        assert pretty(Result(), indent=0) == '{\n"ok": true\n}'

    def test_falls_back_to_str(self) -> None:
        assert pretty(Path("a/b")) == '"a/b"'
