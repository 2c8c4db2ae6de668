from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Any

import pytest

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@pytest.fixture(scope="module")
def project() -> dict[str, Any]:
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    with pyproject.open("rb") as fh:
        return tomllib.load(fh)["project"]


def _requirement_names(requirements: list[str]) -> set[str]:
    return {re.split(r"[<>=!~;\[ ]", item, maxsplit=1)[0].lower() for item in requirements}


def test_runtime_stack_ships_with_the_cli(project: dict[str, Any]) -> None:
    # yaml for front matter, loguru for the dispatch/fix logs, rich for `taskplain tree`
    assert project["name"] == "taskplain"
    assert {"pyyaml", "loguru", "rich"} <= _requirement_names(project["dependencies"])
    assert project["scripts"] == {"taskplain": "taskplain.cli:main"}


def test_test_extra_pulls_pytest(project: dict[str, Any]) -> None:
    names = _requirement_names(project["optional-dependencies"]["test"])
    assert "pytest" in names
    assert "tomli" in names
