"""
puzzlemaster: request/response facade over the persistence gateways.

Purpose
- Expose every gateway operation under a stable method name
  (``create-task``, ``get-actions-by-phase``, ...).
- Return ``{"success": True, "data": ...}`` or
  ``{"success": False, "error": ..., "kind": ...}`` for every call.

Functional requirements
- ``PlanningAPI.handle`` never raises; unexpected exceptions become an
  ``internal`` error envelope and are logged.
- Payload ids may be given as a bare string or as ``{"id": ...}``.
- Update payloads carry the record id together with the changed fields.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

import structlog

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

Envelope = dict[str, Any]
_Handler = Callable[[object], Result[Any, DomainError]]


class EnvelopeKind(StrEnum):
    """Error kinds that exist only at the request boundary."""

    UNKNOWN_METHOD = "unknown_method"
    BAD_REQUEST = "bad_request"
    INTERNAL = "internal"


@dataclass(frozen=True, slots=True)
class _Scoped:
    method: str
    kind: str
    call: str
    param: str


# Resource name, gateway attribute on PlanningAPI.
_RESOURCES: Final[tuple[tuple[str, str], ...]] = (
    ("project", "projects"),
    ("plan", "plans"),
    ("phase", "phases"),
    ("job", "jobs"),
    ("team", "teams"),
    ("role", "roles"),
    ("agent", "agents"),
    ("validator", "validators"),
    ("task", "tasks"),
    ("action", "actions"),
)

_SCOPED: Final[tuple[_Scoped, ...]] = (
    _Scoped("get-plans-by-project", "plans", "get_by_project", "project_id"),
    _Scoped("get-phases-by-plan", "phases", "get_by_plan", "plan_id"),
    _Scoped("get-jobs-by-phase", "jobs", "get_by_phase", "phase_id"),
    _Scoped("get-teams-by-phase", "teams", "get_by_phase", "phase_id"),
    _Scoped("get-agents-by-team", "agents", "get_by_team", "team_id"),
    _Scoped("get-agents-by-role", "agents", "get_by_role", "role_id"),
    _Scoped("get-tasks-by-job", "tasks", "get_by_job", "job_id"),
    _Scoped("get-tasks-by-agent", "tasks", "get_by_agent", "agent_id"),
    _Scoped("get-actions-by-phase", "actions", "get_by_phase", "phase_id"),
    _Scoped("get-actions-by-target-phase", "actions", "get_by_target_phase", "target_phase_id"),
)


class _BadRequest(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class PlanningAPI:
    """Method-name dispatch over one gateway per entity kind.

    The store is injected; all gateways share it.
    """

    def __init__(self, store: Store, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self.projects = ProjectGateway(store, logger=logger)
        self.plans = PlanGateway(store, logger=logger)
        self.phases = PhaseGateway(store, logger=logger)
        self.jobs = JobGateway(store, logger=logger)
        self.teams = TeamGateway(store, logger=logger)
        self.roles = RoleGateway(store, logger=logger)
        self.agents = AgentGateway(store, logger=logger)
        self.validators = ValidatorGateway(store, logger=logger)
        self.tasks = TaskGateway(store, logger=logger)
        self.actions = ActionGateway(store, logger=logger)
        self._store = store
        self._handlers = self._build_handlers()

    @property
    def store(self) -> Store:
        return self._store

    @property
    def methods(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))

    def handle(self, method: object, payload: object = None) -> Envelope:
        """Dispatch ``method`` with ``payload`` and wrap the outcome in an envelope."""

        if not isinstance(method, str) or method not in self._handlers:
            return failure(f"Unknown method: {method!r}", EnvelopeKind.UNKNOWN_METHOD)

        with correlation_scope(method=method):
            try:
                result = self._handlers[method](payload)
            except _BadRequest as exc:
                self._logger.warning("planning_api_bad_request", method=method, error=exc.message)
                return failure(exc.message, EnvelopeKind.BAD_REQUEST)
            except Exception as exc:  # noqa: BLE001 - request boundary normalization.
                self._logger.error(
                    "planning_api_internal_error",
                    method=method,
                    error_type=type(exc).__name__,
                    error=DomainError.narrow(exc),
                )
                return failure(f"Internal error: {DomainError.narrow(exc)}", EnvelopeKind.INTERNAL)
        return envelope(result)

    def _build_handlers(self) -> dict[str, _Handler]:
        handlers: dict[str, _Handler] = {}
        for resource, attr in _RESOURCES:
            gateway: Gateway[Any] = getattr(self, attr)
            handlers[f"create-{resource}"] = gateway.create
            handlers[f"get-{resource}"] = _by_id(gateway.get)
            handlers[f"get-{attr}"] = _no_args(gateway.get_all)
            handlers[f"update-{resource}"] = _update(gateway)
            handlers[f"delete-{resource}"] = _by_id(gateway.delete)
        for scoped in _SCOPED:
            bound = getattr(getattr(self, scoped.kind), scoped.call)
            handlers[scoped.method] = _by_id(bound, key=scoped.param)
        handlers["get-task-counts-by-job"] = _no_args(self.tasks.count_by_job)
        handlers["get-project-tree"] = _by_id(self.project_tree, key="project_id")
        return handlers

    def project_tree(self, project_id: object) -> Result[dict[str, Any], DomainError]:
        """Read a project with its plan and every phase's job, tasks, team, agents and actions."""

        try:
            # One read transaction so the tree is a consistent snapshot.
            with self._store.transaction(immediate=False):
                return self._collect_tree(project_id)
        except (sqlite3.Error, StoreError) as exc:
            return Err(PersistenceError(self.projects.entity, "tree", exc))

    def _collect_tree(self, project_id: object) -> Result[dict[str, Any], DomainError]:
        project = self.projects.get(project_id)
        if isinstance(project, Err):
            return project
        tree: dict[str, Any] = {"project": project.value.to_dict(), "plan": None, "phases": []}
        if project.value.plan_id is None:
            return Ok(tree)

        plan = self.plans.get(project.value.plan_id)
        if isinstance(plan, Err):
            return plan
        tree["plan"] = plan.value.to_dict()

        for phase_id in plan.value.phases:
            node = self._phase_node(phase_id)
            if isinstance(node, Err):
                return node
            tree["phases"].append(node.value)
        return Ok(tree)

    def _phase_node(self, phase_id: str) -> Result[dict[str, Any], DomainError]:
        phase = self.phases.get(phase_id)
        if isinstance(phase, Err):
            return phase
        node: dict[str, Any] = {
            "phase": phase.value.to_dict(),
            "job": None,
            "tasks": [],
            "team": None,
            "agents": [],
        }
        if phase.value.job_id is not None:
            job = self.jobs.get(phase.value.job_id)
            tasks = self.tasks.get_by_job(phase.value.job_id)
            if isinstance(job, Err):
                return job
            if isinstance(tasks, Err):
                return tasks
            node["job"] = job.value.to_dict()
            node["tasks"] = to_data(tasks.value)
        if phase.value.team_id is not None:
            team = self.teams.get(phase.value.team_id)
            agents = self.agents.get_by_team(phase.value.team_id)
            if isinstance(team, Err):
                return team
            if isinstance(agents, Err):
                return agents
            node["team"] = team.value.to_dict()
            node["agents"] = to_data(agents.value)
        actions = self.actions.get_by_phase(phase_id)
        if isinstance(actions, Err):
            return actions
        node["actions"] = to_data(actions.value)
        return Ok(node)


def envelope(result: Result[Any, DomainError]) -> Envelope:
    """Convert a gateway result into the transport envelope."""

    if isinstance(result, Ok):
        return {"success": True, "data": to_data(result.value)}
    return failure(result.error.message, str(result.error.kind))


def failure(message: str, kind: str) -> Envelope:
    return {"success": False, "error": message, "kind": str(kind)}


def to_data(value: object) -> object:
    """Serialize gateway output into plain JSON-compatible values."""

    if isinstance(value, Entity):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [to_data(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): to_data(item) for key, item in value.items()}
    return value


def _by_id(
    call: Callable[[object], Result[Any, DomainError]],
    *,
    key: str = "id",
) -> _Handler:
    def handler(payload: object) -> Result[Any, DomainError]:
        return call(_extract_id(payload, key))

    return handler


def _no_args(call: Callable[[], Result[Any, DomainError]]) -> _Handler:
    def handler(payload: object) -> Result[Any, DomainError]:
        if payload not in (None, {}):
            raise _BadRequest("this method takes no payload")
        return call()

    return handler


def _update(gateway: Gateway[Any]) -> _Handler:
    def handler(payload: object) -> Result[Any, DomainError]:
        if not isinstance(payload, Mapping):
            return Err(
                ValidationError(
                    gateway.entity,
                    [("record", f"expected object with id, got {type(payload).__name__}")],
                )
            )
        if "id" not in payload:
            return Err(ValidationError(gateway.entity, [("id", "required")]))
        changes = {key: value for key, value in payload.items() if key != "id"}
        return gateway.update(payload["id"], changes)

    return handler


def _extract_id(payload: object, key: str) -> object:
    if isinstance(payload, Mapping):
        if key in payload:
            return payload[key]
        if "id" in payload:
            return payload["id"]
        raise _BadRequest(f"payload must include {key!r}")
    return payload


__all__ = ["Envelope", "EnvelopeKind", "PlanningAPI", "envelope", "failure", "to_data"]
