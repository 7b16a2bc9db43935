"""
puzzlemaster: whole-project import from YAML/JSON documents.

Purpose
- Seed a store with a complete project tree in one atomic step.

Document layout (``version: 1``)::

    roles:       [{key, name, description?}]
    validators:  [{key, template, resource}]
    project:
      name, description?
      plan:
        description
        phases:
          - key, name
            job:     {name, description?, status?, tasks: [{name, description?, status?, agent?, validator?}]}
            team:    {name, agents: [{key, name, role}]}
            actions: [{name, target, validator}]

``key`` values are document-local symbols; ``role``, ``agent``,
``validator`` and ``target`` refer to them and are replaced by the generated
ids. Every entity is created through its gateway inside a single outer
transaction: any failure rolls the whole import back.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, NoReturn

import structlog
import yaml

from puzzlemaster.constants import IMPORT_SCHEMA_VERSION
from puzzlemaster.domain import ids
from puzzlemaster.domain.errors import DomainError, PersistenceError, ValidationError
from puzzlemaster.domain.models import Entity
from puzzlemaster.domain.result import Err, Ok, Result
from puzzlemaster.observability import correlation_scope
from puzzlemaster.persistence.gateways import (
    ActionGateway,
    AgentGateway,
    Gateway,
    JobGateway,
    PhaseGateway,
    PlanGateway,
    ProjectGateway,
    RoleGateway,
    TaskGateway,
    TeamGateway,
    ValidatorGateway,
)
from puzzlemaster.persistence.store import Store, StoreError

_DOCUMENT: Final[str] = "Import"
_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})


@dataclass(slots=True)
class ImportSummary:
    """Ids created by one import, grouped by entity kind."""

    import_id: str
    project_id: str = ""
    created: dict[str, list[str]] = field(default_factory=dict)

    def record(self, entity: Entity) -> None:
        self.created.setdefault(type(entity).ENTITY, []).append(entity.id)

    def counts(self) -> dict[str, int]:
        return {kind: len(items) for kind, items in sorted(self.created.items())}

    def to_dict(self) -> dict[str, object]:
        return {
            "import_id": self.import_id,
            "project_id": self.project_id,
            "counts": self.counts(),
            "created": {kind: list(items) for kind, items in sorted(self.created.items())},
        }


class _Abort(Exception):
    """Unwinds the import transaction while carrying the error value."""

    def __init__(self, error: DomainError) -> None:
        super().__init__(error.message)
        self.error = error


def load_document(path: str | Path) -> Result[dict[str, Any], DomainError]:
    """Parse a YAML (``.yaml``/``.yml``) or JSON document from disk."""

    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        return Err(ValidationError(_DOCUMENT, [("file", f"cannot read {source}: {exc}")]))

    try:
        if source.suffix.lower() in _YAML_SUFFIXES:
            parsed = yaml.safe_load(text)
        else:
            parsed = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        return Err(ValidationError(_DOCUMENT, [("file", f"cannot parse {source.name}: {exc}")]))

    if not isinstance(parsed, dict):
        return Err(
            ValidationError(_DOCUMENT, [("document", f"expected mapping, got {type(parsed).__name__}")])
        )
    return Ok(parsed)


class PlanImporter:
    """Create a project tree described by an import document."""

    def __init__(self, store: Store, *, logger: Any | None = None) -> None:
        self._store = store
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._projects = ProjectGateway(store, logger=logger)
        self._plans = PlanGateway(store, logger=logger)
        self._phases = PhaseGateway(store, logger=logger)
        self._jobs = JobGateway(store, logger=logger)
        self._teams = TeamGateway(store, logger=logger)
        self._roles = RoleGateway(store, logger=logger)
        self._agents = AgentGateway(store, logger=logger)
        self._validators = ValidatorGateway(store, logger=logger)
        self._tasks = TaskGateway(store, logger=logger)
        self._actions = ActionGateway(store, logger=logger)

    def import_file(self, path: str | Path) -> Result[ImportSummary, DomainError]:
        loaded = load_document(path)
        if isinstance(loaded, Err):
            return loaded
        return self.import_document(loaded.value)

    def import_document(self, document: object) -> Result[ImportSummary, DomainError]:
        """Create every entity in ``document`` or nothing at all."""

        summary = ImportSummary(import_id=ids.generate_id())
        with correlation_scope(import_id=summary.import_id):
            try:
                with self._store.transaction():
                    self._run(document, summary)
            except _Abort as exc:
                error: DomainError = exc.error
            except (sqlite3.Error, StoreError) as exc:
                error = PersistenceError(_DOCUMENT, "import", exc)
            else:
                self._logger.info(
                    "planning_import_completed",
                    project_id=summary.project_id,
                    counts=summary.counts(),
                )
                return Ok(summary)

            self._logger.warning(
                "planning_import_rolled_back",
                error_kind=str(error.kind),
                error=error.message,
            )
        return Err(error)

    def _run(self, document: object, summary: ImportSummary) -> None:
        root = _mapping(document, "document")
        version = root.get("version", IMPORT_SCHEMA_VERSION)
        if version != IMPORT_SCHEMA_VERSION:
            _fail("version", f"unsupported import version {version!r}; expected {IMPORT_SCHEMA_VERSION}")

        roles: dict[str, str] = {}
        for index, item in enumerate(_sequence(root.get("roles"), "roles")):
            spec = _mapping(item, f"roles[{index}]")
            key = _key(spec, f"roles[{index}]")
            role = self._create(self._roles, _without(spec, "key"), summary)
            _bind(roles, key, role.id, f"roles[{index}].key")

        validators: dict[str, str] = {}
        for index, item in enumerate(_sequence(root.get("validators"), "validators")):
            spec = _mapping(item, f"validators[{index}]")
            key = _key(spec, f"validators[{index}]")
            validator = self._create(self._validators, _without(spec, "key"), summary)
            _bind(validators, key, validator.id, f"validators[{index}].key")

        project_spec = _mapping(root.get("project"), "project")
        plan_spec = _mapping(project_spec.get("plan"), "project.plan")
        project = self._create(self._projects, _without(project_spec, "plan"), summary)
        summary.project_id = project.id

        plan = self._create(
            self._plans,
            {**_without(plan_spec, "phases"), "project_id": project.id},
            summary,
        )

        phase_specs = [
            _mapping(item, f"project.plan.phases[{index}]")
            for index, item in enumerate(_sequence(plan_spec.get("phases"), "project.plan.phases"))
        ]
        phases: dict[str, str] = {}
        phase_ids: list[str] = []
        for index, spec in enumerate(phase_specs):
            where = f"project.plan.phases[{index}]"
            phase = self._create(
                self._phases,
                {**_without(spec, "key", "job", "team", "actions"), "plan_id": plan.id},
                summary,
            )
            phase_ids.append(phase.id)
            if "key" in spec:
                _bind(phases, _key(spec, where), phase.id, f"{where}.key")

        agents: dict[str, str] = {}
        for index, (spec, phase_id) in enumerate(zip(phase_specs, phase_ids, strict=True)):
            where = f"project.plan.phases[{index}].team"
            if spec.get("team") is None:
                continue
            team_spec = _mapping(spec["team"], where)
            team = self._create(
                self._teams,
                {**_without(team_spec, "agents"), "phase_id": phase_id},
                summary,
            )
            for agent_index, item in enumerate(_sequence(team_spec.get("agents"), f"{where}.agents")):
                agent_where = f"{where}.agents[{agent_index}]"
                agent_spec = _mapping(item, agent_where)
                agent = self._create(
                    self._agents,
                    {
                        **_without(agent_spec, "key", "role"),
                        "team_id": team.id,
                        "role_id": _resolve(roles, agent_spec.get("role"), f"{agent_where}.role"),
                    },
                    summary,
                )
                if "key" in agent_spec:
                    _bind(agents, _key(agent_spec, agent_where), agent.id, f"{agent_where}.key")

        for index, (spec, phase_id) in enumerate(zip(phase_specs, phase_ids, strict=True)):
            where = f"project.plan.phases[{index}]"
            if spec.get("job") is not None:
                job_spec = _mapping(spec["job"], f"{where}.job")
                job = self._create(
                    self._jobs,
                    {**_without(job_spec, "tasks"), "phase_id": phase_id},
                    summary,
                )
                tasks = _sequence(job_spec.get("tasks"), f"{where}.job.tasks")
                for task_index, item in enumerate(tasks):
                    task_where = f"{where}.job.tasks[{task_index}]"
                    task_spec = _mapping(item, task_where)
                    candidate = {**_without(task_spec, "agent", "validator"), "job_id": job.id}
                    if task_spec.get("agent") is not None:
                        candidate["agent_id"] = _resolve(agents, task_spec["agent"], f"{task_where}.agent")
                    if task_spec.get("validator") is not None:
                        candidate["validator_id"] = _resolve(
                            validators, task_spec["validator"], f"{task_where}.validator"
                        )
                    self._create(self._tasks, candidate, summary)

            for action_index, item in enumerate(_sequence(spec.get("actions"), f"{where}.actions")):
                action_where = f"{where}.actions[{action_index}]"
                action_spec = _mapping(item, action_where)
                self._create(
                    self._actions,
                    {
                        **_without(action_spec, "target", "validator"),
                        "phase_id": phase_id,
                        "target_phase_id": _resolve(
                            phases, action_spec.get("target"), f"{action_where}.target"
                        ),
                        "validator_id": _resolve(
                            validators, action_spec.get("validator"), f"{action_where}.validator"
                        ),
                    },
                    summary,
                )

    def _create(
        self,
        gateway: Gateway[Any],
        candidate: Mapping[str, object],
        summary: ImportSummary,
    ) -> Entity:
        created = gateway.create(candidate)
        if isinstance(created, Err):
            raise _Abort(created.error)
        summary.record(created.value)
        return created.value


def _fail(path: str, message: str) -> NoReturn:
    raise _Abort(ValidationError(_DOCUMENT, [(path, message)]))


def _mapping(value: object, path: str) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected mapping, got {type(value).__name__}")
    return dict(value)


def _sequence(value: object, path: str) -> Sequence[object]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        _fail(path, f"expected list, got {type(value).__name__}")
    return value


def _key(spec: Mapping[str, object], path: str) -> str:
    key = spec.get("key")
    if not isinstance(key, str) or not key.strip():
        _fail(f"{path}.key", "expected non-empty string")
    return key.strip()


def _bind(table: dict[str, str], key: str, entity_id: str, path: str) -> None:
    if key in table:
        _fail(path, f"duplicate key {key!r}")
    table[key] = entity_id


def _resolve(table: Mapping[str, str], key: object, path: str) -> str:
    if not isinstance(key, str) or key not in table:
        _fail(path, f"unknown reference {key!r}")
    return table[key]


def _without(spec: Mapping[str, object], *keys: str) -> dict[str, object]:
    return {name: value for name, value in spec.items() if name not in keys}


__all__ = ["ImportSummary", "PlanImporter", "load_document"]
