"""CLI routing, output and exit-code tests (in-process)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from puzzlemaster.main import ExitCode, cli_entrypoint
from puzzlemaster.ui import build_parser, run_cli

if TYPE_CHECKING:
    from pathlib import Path


_DOCUMENT = """
roles:
  - {key: coder, name: Coder}
validators:
  - {key: done, template: "done({resource})", resource: board}
project:
  name: Jigsaw
  plan:
    description: edges first
    phases:
      - key: edges
        name: Edges
        job:
          name: Sort
          tasks:
            - {name: Corners, agent: ada, validator: done}
        team:
          name: Sorters
          agents:
            - {key: ada, name: Ada, role: coder}
        actions:
          - {name: Advance, target: fill, validator: done}
      - key: fill
        name: Fill
"""


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("PUZZLEMASTER_ENV", "PUZZLEMASTER_STORE_PATH", "PUZZLEMASTER_LOGGING_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def _call(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict[str, object]]:
    code = run_cli(["call", *argv])
    out = capsys.readouterr().out
    return code, json.loads(out)


def test_parser_exposes_every_command() -> None:
    parser = build_parser()
    choices = parser._subparsers._group_actions[0].choices  # type: ignore[union-attr]

    assert set(choices) == {"migrate", "check", "backup", "import", "call", "show", "methods", "config"}


def test_missing_subcommand_is_a_usage_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint([]) == ExitCode.CONFIG_ERROR
    assert "usage" in capsys.readouterr().err


def test_migrate_uses_the_env_default_database(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["migrate", "--env", "test", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert code == ExitCode.SUCCESS
    assert payload["schema_version"] == 1
    assert payload["path"] == (tmp_path.resolve() / "state" / "puzzlemaster-test.db").as_posix()
    assert [item["name"] for item in payload["migrations"]] == ["initial_planning_schema"]
    assert (tmp_path / "state" / "logs" / "puzzlemaster.jsonl").exists()


def test_call_round_trip_and_exit_codes(capsys: pytest.CaptureFixture[str]) -> None:
    code, created = _call(capsys, "create-role", "--data", '{"name": "Coder", "description": "writes code"}')
    assert code == ExitCode.SUCCESS
    role = created["data"]
    assert isinstance(role, dict)

    code, updated = _call(capsys, "update-role", "--data", json.dumps({"id": role["id"], "description": None}))
    assert code == ExitCode.SUCCESS
    assert updated["data"]["description"] is None  # type: ignore[index]

    code, missing = _call(capsys, "get-role", "--data", json.dumps(role["id"][::-1]))
    assert code == ExitCode.REQUEST_FAILED
    assert missing["success"] is False

    code, unknown = _call(capsys, "frobnicate")
    assert code == ExitCode.REQUEST_FAILED
    assert unknown["kind"] == "unknown_method"


def test_invalid_json_payload_is_a_usage_error(capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["call", "create-role", "--data", "{nope"])

    assert code == ExitCode.CONFIG_ERROR
    assert "invalid --data JSON" in capsys.readouterr().err


def test_import_then_show(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    document = tmp_path / "jigsaw.yml"
    document.write_text(_DOCUMENT, encoding="utf-8")

    assert run_cli(["import", str(document), "--json"]) == ExitCode.SUCCESS
    imported = json.loads(capsys.readouterr().out)
    project_id = imported["data"]["project_id"]
    assert imported["data"]["counts"]["Phase"] == 2

    assert run_cli(["show", project_id]) == ExitCode.SUCCESS
    rendered = capsys.readouterr().out
    assert rendered.startswith(f"Project Jigsaw [{project_id}]")
    assert "    Phase Edges [" in rendered
    assert "      Job Sort (PENDING)" in rendered
    assert "      Team Sorters" in rendered
    assert "      Action Advance => " in rendered

    assert run_cli(["show", project_id, "--json"]) == ExitCode.SUCCESS
    tree = json.loads(capsys.readouterr().out)
    assert [node["phase"]["name"] for node in tree["phases"]] == ["Edges", "Fill"]


def test_failed_import_reports_and_leaves_store_empty(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    document = tmp_path / "broken.yaml"
    document.write_text(_DOCUMENT.replace("target: fill", "target: nowhere"), encoding="utf-8")

    assert run_cli(["import", str(document)]) == ExitCode.REQUEST_FAILED
    assert "import failed" in capsys.readouterr().err

    code, projects = _call(capsys, "get-projects")
    assert code == ExitCode.SUCCESS
    assert projects["data"] == []


def test_missing_import_document_is_a_usage_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["import", "absent.yaml"]) == ExitCode.CONFIG_ERROR
    assert "import document not found" in capsys.readouterr().err


def test_show_unknown_project_fails(capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["show", "00000000-0000-4000-8000-000000000000"]) == ExitCode.REQUEST_FAILED
    assert "not found" in capsys.readouterr().err


def test_check_and_backup(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["check", "--json"]) == ExitCode.SUCCESS
    assert json.loads(capsys.readouterr().out) == {"command": "check", "ok": True, "problems": []}

    destination = tmp_path / "backups" / "copy.db"
    assert run_cli(["backup", str(destination)]) == ExitCode.SUCCESS
    assert destination.exists()
    assert "Backup written" in capsys.readouterr().out

    same = (tmp_path / "state" / "puzzlemaster-dev.db").as_posix()
    assert run_cli(["backup", same]) == ExitCode.CONFIG_ERROR


def test_db_flag_overrides_the_store_path(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["migrate", "--db", "custom/plans.db", "--json"]) == ExitCode.SUCCESS

    payload = json.loads(capsys.readouterr().out)
    assert payload["path"] == (tmp_path.resolve() / "custom" / "plans.db").as_posix()


def test_methods_and_config_commands(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["methods"]) == ExitCode.SUCCESS
    listed = [line.strip() for line in capsys.readouterr().out.splitlines()]
    assert "get-project-tree" in listed
    assert listed == sorted(listed)

    assert run_cli(["config", "--env", "production"]) == ExitCode.SUCCESS
    config = json.loads(capsys.readouterr().out)
    assert config["env"] == "production"
    assert config["store"]["path"].endswith("state/puzzlemaster-prod.db")


def test_bad_config_file_is_a_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = tmp_path / "bad.toml"
    config.write_text('env = "staging"\n', encoding="utf-8")

    assert run_cli(["migrate", "--config", str(config)]) == ExitCode.CONFIG_ERROR
    assert "env" in capsys.readouterr().err
