"""Command line entry point for ``taskplain``.

Every subcommand prints JSON to stdout.  ``tree`` and ``next --table``
render with rich instead.  Engine errors are reported on stderr with exit
status 1.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from .config import get_fix_config, get_lock_config, get_log_level, get_next_config, get_pickup_config, load_config
from .dispatch.pickup import PickupService
from .dispatch.scheduler import NextOptions, Scheduler
from .errors import TaskplainError
from .logging_utils import configure_logging
from .task_engine.engine import CascadeMode, TaskService
from .task_engine.fix import FixService
from .task_engine.model import Ambiguity, Executor, Isolation, Kind, Priority, Size, State
from .task_engine.query import TaskListFilters, TaskQueryService, TaskTreeNode
from .task_engine.sections import SECTION_HEADINGS
from .task_engine.store import TaskStore
from .task_engine.validation import ValidationService


def _resolve_repo(repo: Optional[str]) -> Path:
    return Path(repo).expanduser().resolve() if repo else Path.cwd().resolve()


def _emit(payload: Any) -> None:
    if hasattr(payload, "to_dict"):
        payload = payload.to_dict()
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _parse_assignments(values: Optional[list[str]], option: str) -> dict[str, Any]:
    """Turn ``key=value`` pairs into a mapping; ``[...]``/``{...}`` values are read as YAML."""
    parsed: dict[str, Any] = {}
    for raw in values or []:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise TaskplainError(f"{option} expects key=value, got '{raw}'")
        text = value.strip()
        if text.startswith(("[", "{")):
            try:
                parsed[key.strip()] = yaml.safe_load(text)
            except yaml.YAMLError as exc:
                raise TaskplainError(f"{option} {key.strip()}: invalid YAML value: {exc}") from exc
        else:
            parsed[key.strip()] = value
    return parsed


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def _new(args: argparse.Namespace) -> int:
    service = TaskService(args.repo_root)
    doc = service.new_task(
        title=args.title,
        kind=args.kind,
        parent=args.parent,
        state=args.state,
        priority=args.priority,
        assignees=args.assignee,
        labels=args.label,
        commit_message=args.commit_message,
    )
    _emit({"id": doc.meta.id, "path": str(doc.path), "meta": doc.meta.to_dict()})
    return 0


def _update(args: argparse.Namespace) -> int:
    sections = {key: str(value) for key, value in _parse_assignments(args.field, "--field").items()}
    raw_body = None
    if args.body_file:
        raw_body = Path(args.body_file).read_text(encoding="utf-8")
    result = TaskService(args.repo_root).update(
        args.id,
        meta_patch=_parse_assignments(args.meta, "--meta"),
        unset=args.unset,
        sections=sections,
        raw_body=raw_body,
        dry_run=args.dry_run,
    )
    _emit(result)
    return 0


def _move(args: argparse.Namespace) -> int:
    result = TaskService(args.repo_root).move(
        args.id,
        args.state,
        cascade=args.cascade,
        include_blocked=args.include_blocked,
        force=args.force,
        dry_run=args.dry_run,
    )
    _emit(result)
    return 0


def _complete(args: argparse.Namespace) -> int:
    result = TaskService(args.repo_root).complete(
        args.id, dry_run=args.dry_run, commit_message=args.commit_message
    )
    for warning in result.warnings:
        logger.warning("{}: {}", warning.code, warning.message)
    _emit(result)
    return 0


def _block(args: argparse.Namespace) -> int:
    _emit(TaskService(args.repo_root).block(args.id, args.reason, dry_run=args.dry_run))
    return 0


def _unblock(args: argparse.Namespace) -> int:
    _emit(TaskService(args.repo_root).unblock(args.id, dry_run=args.dry_run))
    return 0


def _delete(args: argparse.Namespace) -> int:
    _emit(TaskService(args.repo_root).delete(args.id, cascade=args.cascade, dry_run=args.dry_run))
    return 0


def _adopt(args: argparse.Namespace) -> int:
    result = TaskService(args.repo_root).adopt(
        args.parent, args.child, before=args.before, after=args.after, dry_run=args.dry_run
    )
    _emit(result)
    return 0


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def _render_next_table(result: Any) -> None:
    table = Table(title="Next tasks")
    for column in ("#", "id", "kind", "priority", "size", "executor", "isolation", "touches", "note"):
        table.add_column(column)
    selected_ids = {c.id for c in result.selected}
    for position, candidate in enumerate(result.candidates, start=1):
        meta = candidate.doc.meta
        note = "selected" if candidate.id in selected_ids else ""
        if candidate.backfilled:
            note = "backfilled"
        table.add_row(
            str(position), meta.id, meta.kind.value, meta.priority.value, meta.size.value,
            meta.executor.value, meta.isolation.value, ", ".join(candidate.touches), note,
        )
    console = Console()
    console.print(table)
    for skip in result.skipped_due_to_conflicts:
        console.print(f"[yellow]skipped[/yellow] {skip.candidate.id}: conflicts with {', '.join(skip.conflicts_with)}")


def _next(args: argparse.Namespace) -> int:
    defaults = get_next_config(args.config)
    preference = args.executor or defaults["executor_preference"]
    options = NextOptions(
        count=args.count if args.count is not None else defaults["count"],
        kinds={Kind(kind) for kind in (args.kind or defaults["kinds"]) if kind in Kind.values()},
        executor_preference=Executor(preference) if preference in Executor.values() else None,
        max_size=Size(args.max_size) if args.max_size else None,
        ambiguity_filter={Ambiguity(v) for v in args.ambiguity} if args.ambiguity else None,
        isolation_filter={Isolation(v) for v in args.isolation} if args.isolation else None,
        parent=args.parent,
        parallelize=args.parallelize,
        include_root_without_kind=args.include_root,
        include_blocked=args.include_blocked,
    )
    result = Scheduler(TaskStore(args.repo_root).list_all_tasks()).evaluate(options)
    if args.table:
        _render_next_table(result)
    else:
        _emit(result)
    return 0


def _pickup(args: argparse.Namespace) -> int:
    limit = args.limit if args.limit is not None else get_pickup_config(args.config)["child_suggestion_limit"]
    result = PickupService(TaskService(args.repo_root)).execute(
        args.id,
        dry_run=args.dry_run,
        include_blocked_children=args.include_blocked,
        child_suggestion_limit=limit,
    )
    _emit(result)
    return 0


# ---------------------------------------------------------------------------
# Validation and queries
# ---------------------------------------------------------------------------

def _validate(args: argparse.Namespace) -> int:
    payload: dict[str, Any] = {}
    if args.fix:
        lock = get_lock_config(args.config)
        service = FixService(args.repo_root, lock_retries=lock["retries"], lock_stale=lock["stale"])
        rename = args.rename_files or get_fix_config(args.config)["rename_files"]
        summary = service.fix_ids(args.ids, rename) if args.ids else service.fix_all(rename)
        payload["fix"] = summary.to_dict()

    snapshot = TaskStore(args.repo_root).read_snapshot()
    result = ValidationService().validate_all(snapshot.tasks)
    payload.update(result.to_dict())
    payload["read_warnings"] = [w.to_dict() for w in snapshot.warnings]
    _emit(payload)
    return 0 if result.ok else 1


def _list(args: argparse.Namespace) -> int:
    filters = TaskListFilters(
        state=State(args.state) if args.state else None,
        priority=Priority(args.priority) if args.priority else None,
        parent=args.parent,
        search=args.search,
        label=args.label,
        blocked=args.blocked,
        open_states_only=args.open,
    )
    query = TaskQueryService(TaskStore(args.repo_root).list_all_tasks())
    _emit({"tasks": query.list_tasks(filters)})
    return 0


def _add_tree_nodes(branch: Tree, nodes: list[TaskTreeNode]) -> None:
    for node in nodes:
        label = f"[bold]{node.id}[/bold] ({node.kind}, {node.state}, {node.priority}) {escape(node.title)}"
        if node.blocked is not None:
            label += f" [red]blocked: {escape(node.blocked or '-')}[/red]"
        _add_tree_nodes(branch.add(label), node.children)


def _tree(args: argparse.Namespace) -> int:
    query = TaskQueryService(TaskStore(args.repo_root).list_all_tasks())
    nodes = query.build_tree(args.id)
    if args.json:
        _emit({"tree": [node.to_dict() for node in nodes]})
        return 0
    root = Tree("tasks")
    _add_tree_nodes(root, nodes)
    Console().print(root)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskplain", description="Markdown task hierarchy and dispatch CLI")
    parser.add_argument("--repo", default=None, help="Repository root (default: current working directory)")
    parser.add_argument("--log-level", default=None, help="Log level (TRACE, DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    new = subparsers.add_parser("new", help="Create a task")
    new.add_argument("title")
    new.add_argument("--kind", default=Kind.TASK.value, choices=Kind.values())
    new.add_argument("--parent", default=None)
    new.add_argument("--state", default=State.IDEA.value, choices=State.values())
    new.add_argument("--priority", default=Priority.NORMAL.value, choices=Priority.values())
    new.add_argument("--assignee", action="append", default=None)
    new.add_argument("--label", action="append", default=None)
    new.add_argument("--commit-message", default=None)
    new.set_defaults(func=_new)

    update = subparsers.add_parser("update", help="Patch metadata or body sections")
    update.add_argument("id")
    update.add_argument("--meta", action="append", default=None, help="key=value metadata patch")
    update.add_argument("--field", action="append", default=None,
                        help=f"section=content ({', '.join(sorted(SECTION_HEADINGS))})")
    update.add_argument("--unset", action="append", default=None)
    update.add_argument("--body-file", default=None, help="Replace the whole body with this file's content")
    update.add_argument("--dry-run", action="store_true")
    update.set_defaults(func=_update)

    move = subparsers.add_parser("move", help="Change a task's state")
    move.add_argument("id")
    move.add_argument("state", choices=State.values())
    move.add_argument("--cascade", default=CascadeMode.NONE.value, choices=[m.value for m in CascadeMode])
    move.add_argument("--include-blocked", action="store_true")
    move.add_argument("--force", action="store_true")
    move.add_argument("--dry-run", action="store_true")
    move.set_defaults(func=_move)

    complete = subparsers.add_parser("complete", help="Mark a task done")
    complete.add_argument("id")
    complete.add_argument("--commit-message", default=None)
    complete.add_argument("--dry-run", action="store_true")
    complete.set_defaults(func=_complete)

    block = subparsers.add_parser("block", help="Mark a task blocked")
    block.add_argument("id")
    block.add_argument("reason", nargs="?", default="")
    block.add_argument("--dry-run", action="store_true")
    block.set_defaults(func=_block)

    unblock = subparsers.add_parser("unblock", help="Clear a task's blocked flag")
    unblock.add_argument("id")
    unblock.add_argument("--dry-run", action="store_true")
    unblock.set_defaults(func=_unblock)

    delete = subparsers.add_parser("delete", help="Delete a task")
    delete.add_argument("id")
    delete.add_argument("--cascade", action="store_true")
    delete.add_argument("--dry-run", action="store_true")
    delete.set_defaults(func=_delete)

    adopt = subparsers.add_parser("adopt", help="Move a task under a new parent")
    adopt.add_argument("parent")
    adopt.add_argument("child")
    adopt.add_argument("--before", default=None)
    adopt.add_argument("--after", default=None)
    adopt.add_argument("--dry-run", action="store_true")
    adopt.set_defaults(func=_adopt)

    nxt = subparsers.add_parser("next", help="Rank ready work")
    nxt.add_argument("--count", type=int, default=None)
    nxt.add_argument("--kind", action="append", default=None, choices=Kind.values())
    nxt.add_argument("--executor", default=None, choices=Executor.values())
    nxt.add_argument("--max-size", default=None, choices=Size.values())
    nxt.add_argument("--ambiguity", action="append", default=None, choices=Ambiguity.values())
    nxt.add_argument("--isolation", action="append", default=None, choices=Isolation.values())
    nxt.add_argument("--parent", default=None)
    nxt.add_argument("--parallelize", type=int, default=None)
    nxt.add_argument("--include-root", action="store_true")
    nxt.add_argument("--include-blocked", action="store_true")
    nxt.add_argument("--table", action="store_true")
    nxt.set_defaults(func=_next)

    pickup = subparsers.add_parser("pickup", help="Start work on a task")
    pickup.add_argument("id")
    pickup.add_argument("--limit", type=int, default=None, help="Child suggestion limit")
    pickup.add_argument("--include-blocked", action="store_true")
    pickup.add_argument("--dry-run", action="store_true")
    pickup.set_defaults(func=_pickup)

    validate = subparsers.add_parser("validate", help="Check every task, optionally normalizing files")
    validate.add_argument("ids", nargs="*")
    validate.add_argument("--fix", action="store_true")
    validate.add_argument("--rename-files", action="store_true")
    validate.set_defaults(func=_validate)

    lst = subparsers.add_parser("list", help="List tasks")
    lst.add_argument("--state", default=None, choices=State.values())
    lst.add_argument("--priority", default=None, choices=Priority.values())
    lst.add_argument("--parent", default=None)
    lst.add_argument("--search", default=None)
    lst.add_argument("--label", default=None)
    lst.add_argument("--blocked", dest="blocked", action="store_true", default=None)
    lst.add_argument("--unblocked", dest="blocked", action="store_false", default=None)
    lst.add_argument("--open", action="store_true")
    lst.set_defaults(func=_list)

    tree = subparsers.add_parser("tree", help="Show the task hierarchy")
    tree.add_argument("id", nargs="?", default=None)
    tree.add_argument("--json", action="store_true")
    tree.set_defaults(func=_tree)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    args.repo_root = _resolve_repo(args.repo)

    config, config_error = load_config(args.repo_root)
    args.config = config
    configure_logging(args.log_level or get_log_level(config) or "WARNING")
    if config_error:
        logger.warning("Ignoring config: {}", config_error)

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except TaskplainError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
