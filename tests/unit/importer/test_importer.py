"""Whole-project import from YAML and JSON documents."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import pytest
import yaml

from puzzlemaster.api import PlanningAPI
from puzzlemaster.domain.errors import NotFoundError, PersistenceError, ValidationError
from puzzlemaster.domain.result import Err, Ok
from puzzlemaster.importer import ImportSummary, PlanImporter, load_document
from puzzlemaster.persistence.store import STORE_TABLES, Store

if TYPE_CHECKING:
    from pathlib import Path


class _Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, object]]] = []

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append(("info", event, kwargs))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append(("warning", event, kwargs))

    def error(self, event: str, **kwargs: object) -> None:
        self.events.append(("error", event, kwargs))


_YAML_DOCUMENT = """
version: 1
roles:
  - key: coder
    name: Coder
    description: writes code
validators:
  - key: four-corners
    template: "count({resource}) == 4"
    resource: corners
project:
  name: Jigsaw
  description: 1000 pieces
  plan:
    description: edges first
    phases:
      - key: edges
        name: Edges
        job:
          name: Sort edge pieces
          status: RUNNING
          tasks:
            - name: Find corners
              agent: ada
              validator: four-corners
            - name: Find straight edges
        team:
          name: Sorters
          agents:
            - key: ada
              name: Ada
              role: coder
        actions:
          - name: Advance
            target: fill
            validator: four-corners
      - key: fill
        name: Fill
"""


@pytest.fixture()
def store(tmp_path: Path) -> Store:
    store = Store(tmp_path / "state" / "import.db")
    store.migrate()
    return store


def _row_counts(store: Store) -> dict[str, int]:
    counts: dict[str, int] = {}
    for table in STORE_TABLES:
        row = store.query_one(f"SELECT COUNT(*) AS n FROM {table}")
        assert row is not None
        counts[table] = int(row["n"])  # type: ignore[arg-type]
    return counts


def _document() -> dict[str, Any]:
    loaded = yaml.safe_load(_YAML_DOCUMENT)
    assert isinstance(loaded, dict)
    return loaded


def test_yaml_import_creates_the_whole_tree(tmp_path: Path, store: Store) -> None:
    source = tmp_path / "jigsaw.yaml"
    source.write_text(_YAML_DOCUMENT, encoding="utf-8")
    recorder = _Recorder()

    result = PlanImporter(store, logger=recorder).import_file(source)

    assert isinstance(result, Ok)
    summary = result.value
    assert summary.counts() == {
        "Action": 1,
        "Agent": 1,
        "Job": 1,
        "Phase": 2,
        "Plan": 1,
        "Project": 1,
        "Role": 1,
        "Task": 2,
        "Team": 1,
        "Validator": 1,
    }

    tree = PlanningAPI(store).project_tree(summary.project_id).unwrap()
    edges, fill = tree["phases"]
    assert tree["project"]["name"] == "Jigsaw"
    assert edges["job"]["status"] == "RUNNING"
    assert [task["name"] for task in edges["tasks"]] == ["Find corners", "Find straight edges"]
    assert edges["tasks"][0]["agent_id"] == edges["agents"][0]["id"]
    assert edges["tasks"][1]["agent_id"] is None
    assert edges["actions"][0]["target_phase_id"] == fill["phase"]["id"]
    assert fill["job"] is None

    completed = [fields for _, name, fields in recorder.events if name == "planning_import_completed"]
    assert completed == [{"project_id": summary.project_id, "counts": summary.counts()}]


def test_json_import_matches_yaml_import(tmp_path: Path, store: Store) -> None:
    source = tmp_path / "jigsaw.json"
    source.write_text(json.dumps(_document()), encoding="utf-8")

    result = PlanImporter(store).import_file(source)

    assert isinstance(result, Ok)
    assert result.value.counts()["Task"] == 2
    assert _row_counts(store)["tasks"] == 2


def test_unknown_reference_rolls_back_everything(store: Store) -> None:
    document = _document()
    document["project"]["plan"]["phases"][0]["actions"][0]["target"] = "nowhere"
    recorder = _Recorder()

    result = PlanImporter(store, logger=recorder).import_document(document)

    assert isinstance(result, Err)
    assert isinstance(result.error, ValidationError)
    assert result.error.fields == ("project.plan.phases[0].actions[0].target",)
    assert result.error.contains("unknown reference 'nowhere'")
    assert all(count == 0 for count in _row_counts(store).values())
    rolled_back = [fields for level, name, fields in recorder.events if name == "planning_import_rolled_back"]
    assert rolled_back[0]["error_kind"] == "validation"


def test_gateway_failures_abort_the_import(store: Store) -> None:
    document = _document()
    document["project"]["plan"]["phases"][1]["name"] = ""

    result = PlanImporter(store).import_document(document)

    assert isinstance(result, Err)
    assert result.error.message == "Invalid Phase: name: must not be empty"
    assert all(count == 0 for count in _row_counts(store).values())


def test_store_constraint_failure_rolls_back_earlier_entities(store: Store) -> None:
    PlanImporter(store).import_document(_document()).unwrap()
    before = _row_counts(store)

    again = PlanImporter(store).import_document(_document())

    assert isinstance(again, Err)
    assert isinstance(again.error, PersistenceError)
    assert again.error.contains("Role create failed")
    assert _row_counts(store) == before


def test_duplicate_keys_are_rejected(store: Store) -> None:
    document = _document()
    document["roles"].append({"key": "coder", "name": "Another"})

    result = PlanImporter(store).import_document(document)

    assert isinstance(result, Err)
    assert result.error.fields == ("roles[1].key",)
    assert result.error.contains("duplicate key 'coder'")


@pytest.mark.parametrize(
    ("document", "field_name"),
    [
        ([], "document"),
        ({"version": 2, "project": {}}, "version"),
        ({"roles": "coder", "project": {}}, "roles"),
        ({"project": {"name": "P"}}, "project.plan"),
    ],
)
def test_malformed_documents_are_validation_errors(store: Store, document: object, field_name: str) -> None:
    result = PlanImporter(store).import_document(document)

    assert isinstance(result, Err)
    assert isinstance(result.error, ValidationError)
    assert result.error.fields == (field_name,)


def test_load_document_reports_unreadable_and_unparsable_files(tmp_path: Path) -> None:
    missing = load_document(tmp_path / "absent.yaml")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    scalar = tmp_path / "scalar.yml"
    scalar.write_text("just text\n", encoding="utf-8")

    assert isinstance(missing, Err) and missing.error.fields == ("file",)
    parsed = load_document(broken)
    assert isinstance(parsed, Err) and parsed.error.contains("cannot parse broken.json")
    not_mapping = load_document(scalar)
    assert isinstance(not_mapping, Err) and not_mapping.error.fields == ("document",)


def test_missing_role_reference_reports_the_agent_path(store: Store) -> None:
    document = _document()
    document["project"]["plan"]["phases"][0]["team"]["agents"][0]["role"] = "reviewer"

    result = PlanImporter(store).import_document(document)

    assert isinstance(result, Err)
    assert not isinstance(result.error, NotFoundError)
    assert result.error.fields == ("project.plan.phases[0].team.agents[0].role",)


def test_summary_serializes_sorted_counts() -> None:
    summary = ImportSummary(import_id="imp", project_id="p", created={"Task": ["a", "b"], "Job": ["c"]})

    assert summary.to_dict() == {
        "import_id": "imp",
        "project_id": "p",
        "counts": {"Job": 1, "Task": 2},
        "created": {"Job": ["c"], "Task": ["a", "b"]},
    }
