"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from puzzlemaster.domain import ids
from puzzlemaster.persistence.gateways import (
    ActionGateway,
    AgentGateway,
    JobGateway,
    PhaseGateway,
    PlanGateway,
    ProjectGateway,
    RoleGateway,
    TaskGateway,
    TeamGateway,
    ValidatorGateway,
)
from puzzlemaster.persistence.store import Store

if TYPE_CHECKING:
    from pathlib import Path


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append(("info", event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append(("warning", event, dict(kwargs)))

    def error(self, event: str, **kwargs: object) -> None:
        self.events.append(("error", event, dict(kwargs)))

    def named(self, event: str) -> list[dict[str, object]]:
        return [fields for _, name, fields in self.events if name == event]


def _randbytes(seed: int) -> Callable[[int], bytes]:
    byte_value = (seed % 251) + 1

    def _provider(size: int) -> bytes:
        return bytes([byte_value]) * size

    return _provider


def make_id(seed: int) -> str:
    """Deterministic, well-formed id that no builder below will ever generate."""
    return ids.generate_id(randbytes=_randbytes(seed))


def make_store(tmp_path: Path, name: str = "puzzlemaster-test.db") -> Store:
    store = Store(tmp_path / "state" / name)
    store.migrate()
    return store


@dataclass(slots=True)
class Gateways:
    store: Store
    logger: RecordingLogger
    projects: ProjectGateway
    plans: PlanGateway
    phases: PhaseGateway
    jobs: JobGateway
    teams: TeamGateway
    roles: RoleGateway
    agents: AgentGateway
    validators: ValidatorGateway
    tasks: TaskGateway
    actions: ActionGateway


def make_gateways(store: Store, logger: RecordingLogger | None = None) -> Gateways:
    recorder = logger if logger is not None else RecordingLogger()
    return Gateways(
        store=store,
        logger=recorder,
        projects=ProjectGateway(store, logger=recorder),
        plans=PlanGateway(store, logger=recorder),
        phases=PhaseGateway(store, logger=recorder),
        jobs=JobGateway(store, logger=recorder),
        teams=TeamGateway(store, logger=recorder),
        roles=RoleGateway(store, logger=recorder),
        agents=AgentGateway(store, logger=recorder),
        validators=ValidatorGateway(store, logger=recorder),
        tasks=TaskGateway(store, logger=recorder),
        actions=ActionGateway(store, logger=recorder),
    )


@dataclass(frozen=True, slots=True)
class Tree:
    """Ids of one fully populated project: two phases, the first fully staffed."""

    project: str
    plan: str
    phase: str
    next_phase: str
    job: str
    team: str
    role: str
    agent: str
    validator: str
    task: str
    action: str


def seed_tree(gw: Gateways, *, role_name: str = "Coder") -> Tree:
    project = gw.projects.create({"name": "Jigsaw", "description": "1000 pieces"}).unwrap()
    plan = gw.plans.create({"project_id": project.id, "description": "edges first"}).unwrap()
    phase = gw.phases.create({"plan_id": plan.id, "name": "Edges"}).unwrap()
    next_phase = gw.phases.create({"plan_id": plan.id, "name": "Fill"}).unwrap()
    job = gw.jobs.create({"phase_id": phase.id, "name": "Sort edge pieces"}).unwrap()
    team = gw.teams.create({"phase_id": phase.id, "name": "Sorters"}).unwrap()
    role = gw.roles.create({"name": role_name, "description": "writes code"}).unwrap()
    agent = gw.agents.create({"team_id": team.id, "role_id": role.id, "name": "Ada"}).unwrap()
    validator = gw.validators.create(
        {"template": "count({resource}) == 4", "resource": "corners"}
    ).unwrap()
    task = gw.tasks.create(
        {
            "job_id": job.id,
            "name": "Find corners",
            "agent_id": agent.id,
            "validator_id": validator.id,
        }
    ).unwrap()
    action = gw.actions.create(
        {
            "phase_id": phase.id,
            "target_phase_id": next_phase.id,
            "validator_id": validator.id,
            "name": "Advance",
        }
    ).unwrap()
    return Tree(
        project=project.id,
        plan=plan.id,
        phase=phase.id,
        next_phase=next_phase.id,
        job=job.id,
        team=team.id,
        role=role.id,
        agent=agent.id,
        validator=validator.id,
        task=task.id,
        action=action.id,
    )


def table_count(store: Store, table: str) -> int:
    row = store.query_one(f"SELECT COUNT(*) AS n FROM {table}")
    assert row is not None
    value = row["n"]
    assert isinstance(value, int)
    return value
