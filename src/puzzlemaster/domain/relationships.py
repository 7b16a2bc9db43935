"""Static parent → child relationship map for the planning domain.

Each :class:`Relation` names the child column that points at the parent, the
cardinality, the derived collection it feeds on the parent entity, and the
deletion policy. Gateways consult this table for three things:

- parent-reference pre-checks on create/update (every relation whose child is
  the gateway's kind),
- derived collections at read time (every relation with a ``collection``),
- the delete path (``CASCADE`` removes dependents, ``RESTRICT`` refuses to
  delete a parent while dependents outside the cascade set still point at it).

Policy
------
Structural containment cascades: Project → Plan → Phase → (Job, Team,
Action) and Job → Task, Team → Agent. Deleting a phase also removes actions
that *target* it, since an action without a destination is meaningless.
Shared catalogue records restrict: a Role, Validator or Agent cannot be
deleted while something outside the deleted subtree still references it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Final, Literal


class DeletePolicy(StrEnum):
    CASCADE = "cascade"
    RESTRICT = "restrict"


Cardinality = Literal["one", "many"]


@dataclass(frozen=True, slots=True)
class Relation:
    """One foreign-key edge from ``child.column`` to ``parent.id``."""

    parent: str
    child: str
    column: str
    cardinality: Cardinality
    on_delete: DeletePolicy
    required: bool = True
    collection: str | None = None

    @property
    def label(self) -> str:
        return f"{self.parent} -> {self.child}.{self.column}"


RELATIONS: Final[tuple[Relation, ...]] = (
    Relation("Project", "Plan", "project_id", "one", DeletePolicy.CASCADE, collection="plan_id"),
    Relation("Plan", "Phase", "plan_id", "many", DeletePolicy.CASCADE, collection="phases"),
    Relation("Phase", "Job", "phase_id", "one", DeletePolicy.CASCADE, collection="job_id"),
    Relation("Phase", "Team", "phase_id", "one", DeletePolicy.CASCADE, collection="team_id"),
    Relation("Phase", "Action", "phase_id", "many", DeletePolicy.CASCADE, collection="actions"),
    Relation("Phase", "Action", "target_phase_id", "many", DeletePolicy.CASCADE),
    Relation("Job", "Task", "job_id", "many", DeletePolicy.CASCADE, collection="tasks"),
    Relation("Team", "Agent", "team_id", "many", DeletePolicy.CASCADE, collection="agents"),
    Relation("Role", "Agent", "role_id", "many", DeletePolicy.RESTRICT),
    Relation(
        "Agent",
        "Task",
        "agent_id",
        "many",
        DeletePolicy.RESTRICT,
        required=False,
        collection="tasks",
    ),
    Relation("Validator", "Task", "validator_id", "many", DeletePolicy.RESTRICT, required=False),
    Relation("Validator", "Action", "validator_id", "many", DeletePolicy.RESTRICT),
)


def references_of(child: str) -> tuple[Relation, ...]:
    """Relations through which ``child`` rows point at a parent."""
    return tuple(relation for relation in RELATIONS if relation.child == child)


def dependents_of(parent: str) -> tuple[Relation, ...]:
    """Relations through which other rows point at ``parent`` rows."""
    return tuple(relation for relation in RELATIONS if relation.parent == parent)


def collections_of(parent: str) -> tuple[Relation, ...]:
    """Relations that feed a derived collection on ``parent``."""
    return tuple(
        relation
        for relation in RELATIONS
        if relation.parent == parent and relation.collection is not None
    )


__all__ = [
    "RELATIONS",
    "Cardinality",
    "DeletePolicy",
    "Relation",
    "collections_of",
    "dependents_of",
    "references_of",
]
