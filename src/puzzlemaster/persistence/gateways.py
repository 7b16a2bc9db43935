"""
Persistence gateways: one per entity kind, all sharing :class:`Gateway`.

Every public operation returns a :class:`~puzzlemaster.domain.result.Result`
and never raises for store faults, missing records or invalid input. Each
call runs in one store transaction covering the existence check and the
write. Reads re-validate stored rows through the entity's smart
constructor, so a malformed row surfaces as an error instead of a half-built
object.

Referential integrity is checked here rather than in the validators: parent
references are looked up inside the write transaction and a missing parent
yields a :class:`NotFoundError` naming the reference field. Deletes follow
the relationship map (:mod:`puzzlemaster.domain.relationships`).
"""

from __future__ import annotations

import sqlite3
from collections import deque
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any, ClassVar, Final, Generic, TypeVar, cast

import structlog

from puzzlemaster.domain import ids
from puzzlemaster.domain.errors import (
    DomainError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from puzzlemaster.domain.models import (
    ENTITIES_BY_NAME,
    Action,
    Agent,
    Entity,
    Job,
    Phase,
    Plan,
    Project,
    Role,
    Task,
    Team,
    Validator,
    is_utf8_text,
)
from puzzlemaster.domain.relationships import (
    DeletePolicy,
    Relation,
    collections_of,
    dependents_of,
    references_of,
)
from puzzlemaster.domain.result import Err, Ok, Result, combine
from puzzlemaster.persistence.reducer import reduce
from puzzlemaster.persistence.store import RowValue, SQLValue, Store, StoreError

TEntity = TypeVar("TEntity", bound=Entity)

_DERIVED_WRITE: Final[str] = "derived from child records and cannot be written"
_STORE_ASSIGNED: Final[str] = "assigned by the store"


class Gateway(Generic[TEntity]):
    """Shared create/get/list/update/delete for one entity kind."""

    entity_type: ClassVar[type[Entity]] = Entity

    def __init__(self, store: Store, *, logger: Any | None = None) -> None:
        if not isinstance(store, Store):
            raise TypeError(f"{type(self).__name__} requires a Store, got {type(store).__name__}")
        self._store = store
        self._store.migrate()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def entity(self) -> str:
        return self.entity_type.ENTITY

    @property
    def store(self) -> Store:
        return self._store

    def create(self, data: object) -> Result[TEntity, DomainError]:
        supplied_id = data.get("id") if isinstance(data, Mapping) else None
        return self._guarded("create", supplied_id, lambda: self._create(data))

    def get(self, entity_id: object) -> Result[TEntity, DomainError]:
        return self._guarded("get", entity_id, lambda: self._get(entity_id))

    def get_all(self) -> Result[list[TEntity], DomainError]:
        return self._guarded("list", None, lambda: self._list_where(None, None))

    def update(self, entity_id: object, partial: object) -> Result[TEntity, DomainError]:
        return self._guarded("update", entity_id, lambda: self._update(entity_id, partial))

    def delete(self, entity_id: object) -> Result[bool, DomainError]:
        return self._guarded("delete", entity_id, lambda: self._delete(entity_id))

    def _get_all_by(self, column: str, parent_id: object) -> Result[list[TEntity], DomainError]:
        return self._guarded(
            f"list by {column}",
            parent_id,
            lambda: self._list_where(column, parent_id),
        )

    def _guarded(
        self,
        operation: str,
        entity_id: object,
        body: Callable[[], Result[Any, DomainError]],
    ) -> Result[Any, DomainError]:
        try:
            result = body()
        except (sqlite3.Error, StoreError) as exc:
            result = Err(PersistenceError(self.entity, operation, exc))
        if isinstance(result, Err):
            loggable_id = isinstance(entity_id, str) and is_utf8_text(entity_id)
            self._logger.warning(
                "planning_gateway_error",
                entity=self.entity,
                operation=operation,
                entity_id=entity_id if loggable_id else None,
                error_kind=str(result.error.kind),
                error=result.error.message,
            )
        return result

    def _log_mutation(self, event: str, entity_id: str, **fields: object) -> None:
        self._logger.info(event, entity=self.entity, entity_id=entity_id, **fields)

    def _create(self, data: object) -> Result[TEntity, DomainError]:
        if not isinstance(data, Mapping):
            return cast("Result[TEntity, DomainError]", self.entity_type.create(data))

        candidate = dict(data)
        extra_problems: list[tuple[str, str]] = []
        for key in self.entity_type.DERIVED:
            if key in candidate and candidate[key] not in (None, [], ()):
                extra_problems.append((key, _DERIVED_WRITE))
            candidate.pop(key, None)
        if candidate.get("created_at") is not None:
            extra_problems.append(("created_at", _STORE_ASSIGNED))
        candidate.pop("created_at", None)
        if candidate.get("id") is None:
            candidate["id"] = ids.generate_id()

        validated = self.entity_type.create(candidate)
        if isinstance(validated, Err) or extra_problems:
            problems = list(validated.error.problems) if isinstance(validated, Err) else []
            return Err(ValidationError(self.entity, problems + extra_problems))
        entity = validated.value

        supplied = [
            spec
            for spec in self.entity_type.FIELDS
            if spec.name == "id" or candidate.get(spec.name) is not None
        ]
        columns = ", ".join(spec.store_column for spec in supplied)
        placeholders = ", ".join("?" for _ in supplied)
        params = tuple(_to_sql(getattr(entity, spec.name)) for spec in supplied)

        with self._store.transaction() as conn:
            missing = self._check_references(conn, entity)
            if missing is not None:
                return Err(missing)
            self._store.execute(
                f"INSERT INTO {self.entity_type.TABLE} ({columns}) VALUES ({placeholders})",
                params,
                conn=conn,
            )
            created = self._load(conn, entity.id)

        if isinstance(created, Ok):
            self._log_mutation("planning_entity_created", entity.id)
        return created

    def _get(self, entity_id: object) -> Result[TEntity, DomainError]:
        invalid = self._check_lookup_id(entity_id)
        if invalid is not None:
            return Err(invalid)
        with self._store.connection() as conn:
            return self._load(conn, cast("str", entity_id))

    def _list_where(self, column: str | None, value: object) -> Result[list[TEntity], DomainError]:
        sql = f"SELECT * FROM {self.entity_type.TABLE}"
        params: tuple[SQLValue, ...] = ()
        if column is not None:
            invalid = self._check_lookup_id(value, column)
            if invalid is not None:
                return Err(invalid)
            value = cast("str", value)
            sql += f" WHERE {column} = ?"
            params = (value,)
        sql += " ORDER BY rowid ASC"

        with self._store.connection() as conn:
            rows = self._store.query_all(sql, params, conn=conn)
            hydrated = [self._hydrate(conn, row) for row in rows]
        return cast("Result[list[TEntity], DomainError]", combine(hydrated))

    def _update(self, entity_id: object, partial: object) -> Result[TEntity, DomainError]:
        invalid = self._check_lookup_id(entity_id)
        if invalid is not None:
            return Err(invalid)
        key = cast("str", entity_id)

        with self._store.transaction() as conn:
            existing = self._load(conn, key)
            if isinstance(existing, Err):
                return existing

            patched = reduce(existing.value, partial, self.entity_type)
            if isinstance(patched, Err):
                return patched
            patch = patched.value
            if patch.is_empty:
                return existing

            base = {
                name: value
                for name, value in existing.value.to_dict().items()
                if name not in self.entity_type.DERIVED
            }
            merged = self.entity_type.create(patch.merge(base))
            if isinstance(merged, Err):
                return merged
            candidate = merged.value

            missing = self._check_references(conn, candidate, only=tuple(patch.changes))
            if missing is not None:
                return Err(missing)

            assignments = ", ".join(f"{column} = ?" for column in patch.columns(self.entity_type))
            params = tuple(_to_sql(getattr(candidate, name)) for name in patch.changes)
            self._store.execute(
                f"UPDATE {self.entity_type.TABLE} SET {assignments} WHERE id = ?",
                (*params, key),
                conn=conn,
            )
            updated = self._load(conn, key)

        if isinstance(updated, Ok):
            self._log_mutation("planning_entity_updated", key, fields=sorted(patch.changes))
        return updated

    def _delete(self, entity_id: object) -> Result[bool, DomainError]:
        invalid = self._check_lookup_id(entity_id)
        if invalid is not None:
            return Err(invalid)
        key = cast("str", entity_id)

        with self._store.transaction() as conn:
            if not _exists(self._store, conn, self.entity_type, key):
                return Err(NotFoundError(self.entity, key))
            planned = _plan_deletion(self._store, conn, self.entity, key)
            if isinstance(planned, Err):
                return planned
            doomed = planned.value
            for kind, doomed_id in reversed(doomed):
                self._store.execute(
                    f"DELETE FROM {ENTITIES_BY_NAME[kind].TABLE} WHERE id = ?",
                    (doomed_id,),
                    conn=conn,
                )

        self._log_mutation("planning_entity_deleted", key, cascaded=len(doomed) - 1)
        return Ok(True)

    def _check_lookup_id(self, entity_id: object, field_name: str = "id") -> ValidationError | None:
        if not isinstance(entity_id, str):
            return ValidationError(
                self.entity, [(field_name, f"expected string id, got {type(entity_id).__name__}")]
            )
        if not is_utf8_text(entity_id):
            return ValidationError(self.entity, [(field_name, "must be valid UTF-8 text")])
        return None

    def _check_references(
        self,
        conn: sqlite3.Connection,
        entity: Entity,
        *,
        only: tuple[str, ...] | None = None,
    ) -> NotFoundError | None:
        for relation in references_of(self.entity):
            if only is not None and relation.column not in only:
                continue
            parent_id = getattr(entity, relation.column)
            if parent_id is None:
                continue
            parent_type = ENTITIES_BY_NAME[relation.parent]
            if not _exists(self._store, conn, parent_type, parent_id):
                return NotFoundError(
                    relation.parent,
                    parent_id,
                    field=f"{self.entity}.{relation.column}",
                )
        return None

    def _load(self, conn: sqlite3.Connection, entity_id: str) -> Result[TEntity, DomainError]:
        row = self._store.query_one(
            f"SELECT * FROM {self.entity_type.TABLE} WHERE id = ?",
            (entity_id,),
            conn=conn,
        )
        if row is None:
            return Err(NotFoundError(self.entity, entity_id))
        return self._hydrate(conn, row)

    def _hydrate(
        self,
        conn: sqlite3.Connection,
        row: Mapping[str, RowValue],
    ) -> Result[TEntity, DomainError]:
        candidate: dict[str, object] = {
            spec.name: row.get(spec.store_column) for spec in self.entity_type.FIELDS
        }
        for relation in collections_of(self.entity):
            candidate[cast("str", relation.collection)] = _child_ids(
                self._store,
                conn,
                relation,
                row.get("id"),
            )
        return cast("Result[TEntity, DomainError]", self.entity_type.create(candidate))


class ProjectGateway(Gateway[Project]):
    entity_type = Project


class PlanGateway(Gateway[Plan]):
    entity_type = Plan

    def get_by_project(self, project_id: object) -> Result[list[Plan], DomainError]:
        return self._get_all_by("project_id", project_id)


class PhaseGateway(Gateway[Phase]):
    entity_type = Phase

    def get_by_plan(self, plan_id: object) -> Result[list[Phase], DomainError]:
        return self._get_all_by("plan_id", plan_id)


class JobGateway(Gateway[Job]):
    entity_type = Job

    def get_by_phase(self, phase_id: object) -> Result[list[Job], DomainError]:
        return self._get_all_by("phase_id", phase_id)


class TeamGateway(Gateway[Team]):
    entity_type = Team

    def get_by_phase(self, phase_id: object) -> Result[list[Team], DomainError]:
        return self._get_all_by("phase_id", phase_id)


class RoleGateway(Gateway[Role]):
    entity_type = Role


class AgentGateway(Gateway[Agent]):
    entity_type = Agent

    def get_by_team(self, team_id: object) -> Result[list[Agent], DomainError]:
        return self._get_all_by("team_id", team_id)

    def get_by_role(self, role_id: object) -> Result[list[Agent], DomainError]:
        return self._get_all_by("role_id", role_id)


class ValidatorGateway(Gateway[Validator]):
    entity_type = Validator


class TaskGateway(Gateway[Task]):
    entity_type = Task

    def get_by_job(self, job_id: object) -> Result[list[Task], DomainError]:
        return self._get_all_by("job_id", job_id)

    def get_by_agent(self, agent_id: object) -> Result[list[Task], DomainError]:
        return self._get_all_by("agent_id", agent_id)

    def count_by_job(self) -> Result[dict[str, int], DomainError]:
        """Number of tasks per job id; jobs without tasks are omitted."""
        return self._guarded("count by job", None, self._count_by_job)

    def _count_by_job(self) -> Result[dict[str, int], DomainError]:
        rows = self._store.query_all(
            "SELECT job_id, COUNT(*) AS task_count FROM tasks GROUP BY job_id ORDER BY job_id"
        )
        counts: dict[str, int] = {}
        for row in rows:
            job_id = row.get("job_id")
            task_count = row.get("task_count")
            if not isinstance(job_id, str) or not isinstance(task_count, int):
                return Err(PersistenceError(self.entity, "count by job", "malformed aggregate row"))
            counts[job_id] = task_count
        return Ok(counts)


class ActionGateway(Gateway[Action]):
    entity_type = Action

    def get_by_phase(self, phase_id: object) -> Result[list[Action], DomainError]:
        """Actions available from ``phase_id``."""
        return self._get_all_by("phase_id", phase_id)

    def get_by_target_phase(self, phase_id: object) -> Result[list[Action], DomainError]:
        """Actions leading into ``phase_id``."""
        return self._get_all_by("target_phase_id", phase_id)


def _exists(store: Store, conn: sqlite3.Connection, entity_type: type[Entity], entity_id: str) -> bool:
    row = store.query_one(
        f"SELECT 1 AS present FROM {entity_type.TABLE} WHERE id = ?",
        (entity_id,),
        conn=conn,
    )
    return row is not None


def _child_ids(
    store: Store,
    conn: sqlite3.Connection,
    relation: Relation,
    parent_id: RowValue,
) -> str | list[str] | None:
    child_table = ENTITIES_BY_NAME[relation.child].TABLE
    sql = f"SELECT id FROM {child_table} WHERE {relation.column} = ? ORDER BY rowid ASC"
    if relation.cardinality == "one":
        row = store.query_one(sql + " LIMIT 1", (parent_id,), conn=conn)
        return None if row is None else cast("str", row["id"])
    return [cast("str", row["id"]) for row in store.query_all(sql, (parent_id,), conn=conn)]


def _plan_deletion(
    store: Store,
    conn: sqlite3.Connection,
    kind: str,
    entity_id: str,
) -> Result[list[tuple[str, str]], DomainError]:
    """Collect the cascade closure of ``kind``/``entity_id`` in discovery order.

    Fails when a restricting relation still points into the closure from a
    row outside of it.
    """

    order: list[tuple[str, str]] = [(kind, entity_id)]
    seen: set[tuple[str, str]] = {(kind, entity_id)}
    pending: deque[tuple[str, str]] = deque(order)
    while pending:
        parent_kind, parent_id = pending.popleft()
        for relation in dependents_of(parent_kind):
            if relation.on_delete is not DeletePolicy.CASCADE:
                continue
            for child_id in _referencing_ids(store, conn, relation, parent_id):
                node = (relation.child, child_id)
                if node not in seen:
                    seen.add(node)
                    order.append(node)
                    pending.append(node)

    for parent_kind, parent_id in order:
        for relation in dependents_of(parent_kind):
            if relation.on_delete is not DeletePolicy.RESTRICT:
                continue
            blockers = [
                child_id
                for child_id in _referencing_ids(store, conn, relation, parent_id)
                if (relation.child, child_id) not in seen
            ]
            if blockers:
                return Err(
                    PersistenceError(
                        kind,
                        "delete",
                        f"{parent_kind} {parent_id} is still referenced by "
                        f"{len(blockers)} {relation.child} record(s) via "
                        f"{relation.child}.{relation.column}",
                    )
                )
    return Ok(order)


def _referencing_ids(
    store: Store,
    conn: sqlite3.Connection,
    relation: Relation,
    parent_id: str,
) -> list[str]:
    child_table = ENTITIES_BY_NAME[relation.child].TABLE
    rows = store.query_all(
        f"SELECT id FROM {child_table} WHERE {relation.column} = ? ORDER BY rowid ASC",
        (parent_id,),
        conn=conn,
    )
    return [cast("str", row["id"]) for row in rows]


def _to_sql(value: object) -> SQLValue:
    if isinstance(value, Enum):
        return cast("str", value.value)
    return cast("SQLValue", value)


__all__ = [
    "ActionGateway",
    "AgentGateway",
    "Gateway",
    "JobGateway",
    "PhaseGateway",
    "PlanGateway",
    "ProjectGateway",
    "RoleGateway",
    "TaskGateway",
    "TeamGateway",
    "ValidatorGateway",
]
