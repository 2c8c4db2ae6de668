"""Markdown body sections: required headings, extraction and replacement."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from ..constants import ACCEPTANCE_PLACEHOLDER
from ..errors import TaskplainError
from .model import State


OVERVIEW_HEADING = "## Overview"
ACCEPTANCE_HEADING = "## Acceptance Criteria"
TECHNICAL_APPROACH_HEADING = "## Technical Approach"
INSIGHTS_HEADING = "## Post-Implementation Insights"

REQUIRED_HEADINGS: tuple[str, ...] = (OVERVIEW_HEADING, ACCEPTANCE_HEADING, TECHNICAL_APPROACH_HEADING)

INSIGHTS_SUBSECTIONS: tuple[str, ...] = ("### Changelog", "### Decisions", "### Technical Changes")
LEGACY_INSIGHTS_SUBSECTIONS: tuple[str, ...] = ("### Architecture",)

INSIGHTS_SCAFFOLD = "\n\n".join((INSIGHTS_HEADING,) + INSIGHTS_SUBSECTIONS)

SECTION_HEADINGS: dict[str, str] = {
    "overview": OVERVIEW_HEADING,
    "acceptance_criteria": ACCEPTANCE_HEADING,
    "technical_approach": TECHNICAL_APPROACH_HEADING,
    "delivery_plan": TECHNICAL_APPROACH_HEADING,
    "post_implementation_insights": INSIGHTS_HEADING,
}

DEFAULT_BODY = (
    f"{OVERVIEW_HEADING}\n\n"
    "<!-- What is this work and why does it matter? -->\n\n"
    f"{ACCEPTANCE_HEADING}\n\n"
    f"- [ ] {ACCEPTANCE_PLACEHOLDER}\n\n"
    f"{TECHNICAL_APPROACH_HEADING}\n\n"
    "<!-- How will this be built? -->\n\n"
    f"{INSIGHTS_SCAFFOLD}\n"
)

_HTML_COMMENT_RE = re.compile(r"<!--[\s\S]*?-->")
_CHECKBOX_EMPTY_RE = re.compile(r"^[-*]\s+\[( |x|X)\]\s*$")
_CHECKBOX_RE = re.compile(r"^[-*]\s+\[( |x|X)\]\s+.+$")
_CHECKED_RE = re.compile(r"^[-*]\s+\[(x|X)\]\s+.+$")


def required_headings_for_state(state: State) -> list[str]:
    if state == State.DONE:
        return list(REQUIRED_HEADINGS) + [INSIGHTS_HEADING]
    return list(REQUIRED_HEADINGS)


def resolve_section_heading(section_id: str) -> str:
    try:
        return SECTION_HEADINGS[section_id]
    except KeyError:
        raise TaskplainError(
            f"Unknown section '{section_id}'. Expected one of {sorted(SECTION_HEADINGS)}"
        ) from None


def strip_comments(body: str) -> str:
    return _HTML_COMMENT_RE.sub("", body).replace("\r\n", "\n")


def has_heading(body: str, heading: str) -> bool:
    return re.search(rf"^{re.escape(heading)}\s*$", strip_comments(body), re.M) is not None


def missing_headings(body: str, state: State) -> list[str]:
    return [h for h in required_headings_for_state(state) if not has_heading(body, h)]


def extract_section(body: str, heading: str) -> Optional[str]:
    """Return the text under *heading* up to the next ``##`` heading, or None."""
    pattern = re.compile(rf"^{re.escape(heading)}\s*\n([\s\S]*?)(?=^##\s+|\Z)", re.M)
    match = pattern.search(body.replace("\r\n", "\n"))
    if match is None:
        return None
    return match.group(1).rstrip()


def _ensure_trailing_newline(value: str) -> str:
    return value if value.endswith("\n") else value + "\n"


def _format_block(heading: str, content: str) -> str:
    if not content:
        return f"{heading}\n\n"
    return f"{heading}\n\n{content}\n\n"


def set_section(body: str, heading: str, content: str) -> tuple[str, bool, bool]:
    """Replace or append the section under *heading*.

    Returns ``(body, changed, added)``.
    """
    normalized = _ensure_trailing_newline(body.replace("\r\n", "\n"))
    pattern = re.compile(rf"(^{re.escape(heading)}\s*$\n?)([\s\S]*?)(?=^##\s+|\Z)", re.M)
    desired = content.replace("\r\n", "\n").rstrip()
    block = _format_block(heading, desired)

    match = pattern.search(normalized)
    if match is None:
        prefix = normalized.rstrip()
        updated = f"{prefix}\n\n{block}" if prefix else block
        return _ensure_trailing_newline(updated), True, True

    if match.group(2).rstrip().strip() == desired.strip():
        return normalized, False, False
    updated = normalized[: match.start()] + block + normalized[match.end():]
    return _ensure_trailing_newline(updated.rstrip()), True, False


def append_missing_headings(body: str, state: State) -> tuple[str, list[str]]:
    """Append any required heading that is absent.  Returns the added headings."""
    missing = missing_headings(body, state)
    if not missing:
        return body, []
    parts = [body.rstrip()] if body.strip() else []
    for heading in missing:
        parts.append(INSIGHTS_SCAFFOLD if heading == INSIGHTS_HEADING else heading)
    return "\n\n".join(parts) + "\n", missing


# ---------------------------------------------------------------------------
# Acceptance criteria
# ---------------------------------------------------------------------------

@dataclass
class AcceptanceCheck:
    """Outcome of inspecting the Acceptance Criteria checklist."""

    present: bool
    items: list[str]
    malformed: list[str]

    @property
    def empty(self) -> bool:
        return self.present and not self.items and not self.malformed

    @property
    def all_checked(self) -> bool:
        return bool(self.items) and not self.malformed and all(_CHECKED_RE.match(i) for i in self.items)


def check_acceptance(body: str) -> AcceptanceCheck:
    content = extract_section(strip_comments(body), ACCEPTANCE_HEADING)
    if content is None:
        return AcceptanceCheck(present=False, items=[], malformed=[])
    items: list[str] = []
    malformed: list[str] = []
    for raw in content.split("\n"):
        line = raw.strip()
        if not line or _CHECKBOX_EMPTY_RE.match(line):
            continue
        if _CHECKBOX_RE.match(line):
            items.append(line)
        else:
            malformed.append(line)
    return AcceptanceCheck(present=True, items=items, malformed=malformed)


def seed_acceptance_checklist(content: str) -> str:
    """Turn free-form lines into unchecked boxes; fill an empty list with a placeholder."""
    lines: list[str] = []
    for raw in strip_comments(content).split("\n"):
        line = raw.strip()
        if not line or _CHECKBOX_EMPTY_RE.match(line):
            continue
        if _CHECKBOX_RE.match(line):
            lines.append(line)
            continue
        text = re.sub(r"^[-*+]\s+", "", line)
        text = re.sub(r"^\d+[.)]\s+", "", text)
        lines.append(f"- [ ] {text}")
    if not lines:
        lines.append(f"- [ ] {ACCEPTANCE_PLACEHOLDER}")
    return "\n".join(lines)


def insights_look_empty(body: str) -> Optional[str]:
    """Return a warning message when Post-Implementation Insights is missing or placeholder-only."""
    content = extract_section(body, INSIGHTS_HEADING)
    if content is None:
        return "Post-Implementation Insights section is missing"
    text = strip_comments(content).strip()
    subsections = INSIGHTS_SUBSECTIONS + LEGACY_INSIGHTS_SUBSECTIONS
    has_subsections = any(has_heading(text, heading) for heading in subsections)
    substance = [
        line for line in text.split("\n")
        if line.strip() and not line.strip().startswith("#") and line.strip() != "-"
    ]
    if not has_subsections or not substance:
        return "Post-Implementation Insights section appears empty or incomplete"
    return None
