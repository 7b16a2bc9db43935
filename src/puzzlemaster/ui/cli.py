"""Command-line interface router for puzzlemaster."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from puzzlemaster.api import PlanningAPI
from puzzlemaster.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    resolve_store_path,
)
from puzzlemaster.domain.result import Err
from puzzlemaster.importer import PlanImporter
from puzzlemaster.main import ExitCode
from puzzlemaster.observability import setup_logging, shutdown_logging
from puzzlemaster.persistence.store import Store, StoreError
from puzzlemaster.ui.render import CLIRenderer, create_renderer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = ExitCode.REQUEST_FAILED

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="puzzlemaster",
        description=(
            "puzzlemaster: hierarchical project planning store.\n\n"
            "Common workflows:\n"
            "  puzzlemaster migrate                       Create or upgrade the database\n"
            "  puzzlemaster import plan.yaml              Import a whole project tree\n"
            "  puzzlemaster call get-projects             Call an API method\n"
            "  puzzlemaster show <PROJECT_ID>             Render a project tree\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./puzzlemaster.toml if present).",
    )
    common.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Database file; overrides store.path.",
    )
    common.add_argument(
        "--env",
        default=None,
        choices=("development", "production", "test"),
        help="Environment; selects the default database file.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Also write log records to stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser(
        "migrate",
        parents=[common],
        help="Apply database migrations",
    )
    migrate_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    migrate_parser.set_defaults(handler=_cmd_migrate)

    check_parser = subparsers.add_parser(
        "check",
        parents=[common],
        help="Run SQLite integrity and foreign-key checks",
    )
    check_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    check_parser.set_defaults(handler=_cmd_check)

    backup_parser = subparsers.add_parser(
        "backup",
        parents=[common],
        help="Write a consistent snapshot of the database",
    )
    backup_parser.add_argument("destination", help="Destination database file")
    backup_parser.set_defaults(handler=_cmd_backup)

    import_parser = subparsers.add_parser(
        "import",
        parents=[common],
        help="Import a project tree from a YAML or JSON document",
        description=(
            "Create a project, its plan and every phase in one transaction.\n\n"
            "Examples:\n"
            "  puzzlemaster import samples/project.yaml\n"
            "  puzzlemaster import project.json --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    import_parser.add_argument("document", help="Path to the .yaml/.yml/.json document")
    import_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    import_parser.set_defaults(handler=_cmd_import)

    call_parser = subparsers.add_parser(
        "call",
        parents=[common],
        help="Call an API method and print the response envelope",
        description=(
            "Dispatch one request through the planning API.\n\n"
            "Examples:\n"
            "  puzzlemaster call get-roles\n"
            '  puzzlemaster call create-role --data \'{"name": "Coder"}\'\n'
            '  puzzlemaster call update-role --data \'{"id": "...", "description": null}\'\n'
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    call_parser.add_argument("method", help="API method name (see `puzzlemaster methods`)")
    call_parser.add_argument("--data", default=None, help="JSON payload")
    call_parser.set_defaults(handler=_cmd_call)

    show_parser = subparsers.add_parser(
        "show",
        parents=[common],
        help="Render a project with its plan, phases, jobs, teams and actions",
    )
    show_parser.add_argument("project_id", help="Project id")
    show_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    show_parser.set_defaults(handler=_cmd_show)

    methods_parser = subparsers.add_parser(
        "methods",
        parents=[common],
        help="List API method names",
    )
    methods_parser.set_defaults(handler=_cmd_methods)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        config = _load_effective_config(namespace)
        setup_logging(config["logging"])
        try:
            result = handler(namespace, config)
        finally:
            shutdown_logging()
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(exc.exit_code)
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Console-script entrypoint."""

    from puzzlemaster.main import cli_entrypoint

    return cli_entrypoint(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_migrate(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    store = _open_store(config)
    history = store.schema_history()
    payload = {
        "command": "migrate",
        "path": store.path.as_posix(),
        "schema_version": store.schema_version(),
        "migrations": [
            {"version": item.version, "name": item.name, "applied_at": item.applied_at}
            for item in history
        ],
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Database", payload["path"])
    renderer.kv("Schema version", payload["schema_version"])
    renderer.table(
        ("version", "name", "applied_at"),
        [(str(item.version), item.name, item.applied_at) for item in history],
        title="Migrations:",
    )
    return int(ExitCode.SUCCESS)


def _cmd_check(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    store = _open_store(config)
    try:
        problems = store.integrity_check()
    except StoreError as exc:
        raise CLIError(f"integrity check failed: {exc}", exit_code=ExitCode.INTERNAL_ERROR) from exc

    exit_code = ExitCode.SUCCESS if not problems else ExitCode.REQUEST_FAILED
    if _flag(args, "json"):
        _emit_json({"command": "check", "ok": not problems, "problems": list(problems)})
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.heading(f"puzzlemaster check {store.path.as_posix()}")
    if not problems:
        renderer.ok("integrity")
    for problem in problems:
        renderer.fail(problem)
    return int(exit_code)


def _cmd_backup(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    store = _open_store(config)
    destination = Path(_require_str(getattr(args, "destination", None), "destination"))
    if destination.expanduser().resolve() == store.path.resolve():
        raise CLIError("backup destination must differ from the database file", exit_code=2)
    try:
        written = store.backup(destination)
    except StoreError as exc:
        raise CLIError(f"backup failed: {exc}", exit_code=ExitCode.INTERNAL_ERROR) from exc
    _get_renderer(args).kv("Backup written", written.as_posix())
    return int(ExitCode.SUCCESS)


def _cmd_import(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    store = _open_store(config)
    document = Path(_require_str(getattr(args, "document", None), "document"))
    if not document.is_file():
        raise CLIError(f"import document not found: {document}", exit_code=ExitCode.CONFIG_ERROR)

    result = PlanImporter(store).import_file(document)
    if isinstance(result, Err):
        if _flag(args, "json"):
            _emit_json({"success": False, "error": result.error.message, "kind": str(result.error.kind)})
            return int(ExitCode.REQUEST_FAILED)
        raise CLIError(f"import failed: {result.error.message}")

    summary = result.value
    if _flag(args, "json"):
        _emit_json({"success": True, "data": summary.to_dict()})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Imported project", summary.project_id)
    renderer.table(
        ("entity", "created"),
        [(kind, str(count)) for kind, count in summary.counts().items()],
    )
    return int(ExitCode.SUCCESS)


def _cmd_call(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    method = _require_str(getattr(args, "method", None), "method")
    payload = _parse_payload(getattr(args, "data", None))
    api = PlanningAPI(_open_store(config))
    response = api.handle(method, payload)
    _emit_json(response)
    return int(ExitCode.SUCCESS if response["success"] else ExitCode.REQUEST_FAILED)


def _cmd_show(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    project_id = _require_str(getattr(args, "project_id", None), "project_id")
    api = PlanningAPI(_open_store(config))
    result = api.project_tree(project_id)
    if isinstance(result, Err):
        raise CLIError(result.error.message)

    if _flag(args, "json"):
        _emit_json(result.value)
    else:
        _get_renderer(args).project_tree(result.value)
    return int(ExitCode.SUCCESS)


def _cmd_methods(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    api = PlanningAPI(_open_store(config))
    _get_renderer(args).items(api.methods, prefix="")
    return int(ExitCode.SUCCESS)


def _cmd_config(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    del args
    print(dump_effective_config(config))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=_flag(args, "verbose"))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    db_path = _optional_str(getattr(args, "db_path", None))
    overrides: dict[str, object] = {
        "env": getattr(args, "env", None),
        "store.path": None if db_path is None else Path(db_path).expanduser().resolve().as_posix(),
        "logging.log_to_stderr": True if _flag(args, "verbose") else None,
    }
    try:
        return load_config(config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


def _open_store(config: Mapping[str, Any]) -> Store:
    store = Store(resolve_store_path(config), busy_timeout_ms=config["store"]["busy_timeout_ms"])
    try:
        store.migrate()
    except StoreError as exc:
        raise CLIError(f"cannot open store {store.path}: {exc}", exit_code=ExitCode.INTERNAL_ERROR) from exc
    return store


def _parse_payload(raw: object) -> object:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise CLIError("invalid --data: expected string", exit_code=ExitCode.CONFIG_ERROR)
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CLIError(f"invalid --data JSON: {exc}", exit_code=ExitCode.CONFIG_ERROR) from exc


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=ExitCode.CONFIG_ERROR)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=ExitCode.CONFIG_ERROR)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=ExitCode.CONFIG_ERROR)
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
