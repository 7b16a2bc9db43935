"""Dataclass planning entities with smart constructors and canonical serialization.

Every entity kind exposes ``create(candidate)``, which validates an untrusted
mapping and returns ``Ok(entity)`` or ``Err(ValidationError)``. The validator
collects every failing field before returning, performs no I/O and never
raises. Identifiers, parent references, derived collections and
``created_at`` are read-only on the returned object; the remaining fields are
plain mutable attributes.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, StrEnum
from typing import ClassVar, Final, Literal, TypeVar

from puzzlemaster.domain import ids
from puzzlemaster.domain.errors import ValidationError
from puzzlemaster.domain.result import Err, Ok, Result

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEntity = TypeVar("TEntity", bound="Entity")

FieldKind = Literal["id", "ref", "text", "enum", "timestamp"]

_MAX_NAME: Final[int] = 256
_MAX_TEXT: Final[int] = 8192
_MAX_COLLECTION: Final[int] = 10_000


class JobStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TaskStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """Validation and storage rules for one stored attribute."""

    name: str
    kind: FieldKind
    required: bool = True
    updatable: bool = True
    readonly: bool = False
    min_len: int = 1
    max_len: int = _MAX_TEXT
    enum: type[StrEnum] | None = None
    column: str = ""

    @property
    def store_column(self) -> str:
        return self.column or self.name

    @property
    def default(self) -> StrEnum | None:
        if self.enum is None:
            return None
        return self.enum("PENDING")


def _id_field() -> FieldSpec:
    return FieldSpec("id", "id", updatable=False, readonly=True)


def _ref(name: str, *, required: bool = True) -> FieldSpec:
    # Required parent references are fixed for the lifetime of an entity object.
    return FieldSpec(name, "ref", required=required, readonly=required)


def _text(
    name: str,
    *,
    required: bool = True,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
) -> FieldSpec:
    return FieldSpec(name, "text", required=required, min_len=min_len, max_len=max_len)


def _status(enum_type: type[StrEnum]) -> FieldSpec:
    return FieldSpec("status", "enum", required=False, enum=enum_type)


def _created_at() -> FieldSpec:
    return FieldSpec("created_at", "timestamp", required=False, updatable=False, readonly=True)


class Entity:
    """Base class for planning entities.

    Subclasses declare ``ENTITY`` (display name), ``TABLE`` (store table),
    ``FIELDS`` (stored attributes) and ``DERIVED`` (read-time collections
    computed from child rows).
    """

    __slots__ = ()

    ENTITY: ClassVar[str] = "Entity"
    TABLE: ClassVar[str] = ""
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = ()
    DERIVED: ClassVar[tuple[str, ...]] = ()
    # One-to-one derived links are a single optional id, the rest are id tuples.
    DERIVED_SHAPES: ClassVar[Mapping[str, Literal["one", "many"]]] = {}
    READONLY: ClassVar[frozenset[str]] = frozenset()

    def __init_subclass__(cls, **kwargs: object) -> None:
        super().__init_subclass__(**kwargs)
        cls.READONLY = frozenset(
            [spec.name for spec in cls.FIELDS if spec.readonly] + list(cls.DERIVED)
        )

    def __setattr__(self, name: str, value: object) -> None:
        if name in type(self).READONLY and hasattr(self, name):
            raise AttributeError(f"{type(self).ENTITY}.{name} is read-only")
        object.__setattr__(self, name, value)

    @classmethod
    def field_spec(cls, name: str) -> FieldSpec | None:
        for spec in cls.FIELDS:
            if spec.name == name:
                return spec
        return None

    @classmethod
    def create(cls: type[TEntity], candidate: object) -> Result[TEntity, ValidationError]:
        """Validate ``candidate`` and build an entity, or describe every problem."""

        if not isinstance(candidate, Mapping):
            return Err(
                ValidationError(
                    cls.ENTITY,
                    [("record", f"expected object, got {type(candidate).__name__}")],
                )
            )

        problems: list[tuple[str, str]] = []
        values: dict[str, object] = {}
        known = {spec.name for spec in cls.FIELDS} | set(cls.DERIVED)

        for key in candidate:
            if not isinstance(key, str):
                problems.append(("record", f"field names must be strings, got {type(key).__name__}"))
            elif key not in known:
                problems.append((key, "unexpected field"))

        for spec in cls.FIELDS:
            raw = candidate.get(spec.name)
            parsed, problem = _parse_field(spec, raw)
            if problem is not None:
                problems.append((spec.name, problem))
            else:
                values[spec.name] = parsed

        for name in cls.DERIVED:
            shape = cls.DERIVED_SHAPES.get(name, "many")
            parsed, problem = _parse_derived(shape, candidate.get(name))
            if problem is not None:
                problems.append((name, problem))
            else:
                values[name] = parsed

        if problems:
            return Err(ValidationError(cls.ENTITY, problems))
        return Ok(cls(**values))

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {}
        for spec in self.FIELDS:
            out[spec.name] = _serialize(getattr(self, spec.name))
        for name in self.DERIVED:
            out[name] = _serialize(getattr(self, name))
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(slots=True)
class Project(Entity):
    ENTITY: ClassVar[str] = "Project"
    TABLE: ClassVar[str] = "projects"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _text("name", max_len=_MAX_NAME),
        _text("description", required=False, min_len=0),
        _created_at(),
    )
    DERIVED: ClassVar[tuple[str, ...]] = ("plan_id",)
    DERIVED_SHAPES: ClassVar[Mapping[str, Literal["one", "many"]]] = {"plan_id": "one"}

    id: str
    name: str
    description: str | None = None
    created_at: str | None = None
    plan_id: str | None = None


@dataclass(slots=True)
class Plan(Entity):
    ENTITY: ClassVar[str] = "Plan"
    TABLE: ClassVar[str] = "plans"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _ref("project_id"),
        _text("description"),
        _created_at(),
    )
    DERIVED: ClassVar[tuple[str, ...]] = ("phases",)

    id: str
    project_id: str
    description: str
    created_at: str | None = None
    phases: tuple[str, ...] = ()


@dataclass(slots=True)
class Phase(Entity):
    ENTITY: ClassVar[str] = "Phase"
    TABLE: ClassVar[str] = "phases"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _ref("plan_id"),
        _text("name", max_len=_MAX_NAME),
        _created_at(),
    )
    DERIVED: ClassVar[tuple[str, ...]] = ("job_id", "team_id", "actions")
    DERIVED_SHAPES: ClassVar[Mapping[str, Literal["one", "many"]]] = {
        "job_id": "one",
        "team_id": "one",
    }

    id: str
    plan_id: str
    name: str
    created_at: str | None = None
    job_id: str | None = None
    team_id: str | None = None
    actions: tuple[str, ...] = ()


@dataclass(slots=True)
class Job(Entity):
    ENTITY: ClassVar[str] = "Job"
    TABLE: ClassVar[str] = "jobs"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _ref("phase_id"),
        _text("name", max_len=_MAX_NAME),
        _text("description", required=False, min_len=0),
        _status(JobStatus),
        _created_at(),
    )
    DERIVED: ClassVar[tuple[str, ...]] = ("tasks",)

    id: str
    phase_id: str
    name: str
    description: str | None = None
    status: JobStatus = JobStatus.PENDING
    created_at: str | None = None
    tasks: tuple[str, ...] = ()


@dataclass(slots=True)
class Team(Entity):
    ENTITY: ClassVar[str] = "Team"
    TABLE: ClassVar[str] = "teams"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _ref("phase_id"),
        _text("name", max_len=_MAX_NAME),
        _created_at(),
    )
    DERIVED: ClassVar[tuple[str, ...]] = ("agents",)

    id: str
    phase_id: str
    name: str
    created_at: str | None = None
    agents: tuple[str, ...] = ()


@dataclass(slots=True)
class Role(Entity):
    ENTITY: ClassVar[str] = "Role"
    TABLE: ClassVar[str] = "roles"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _text("name", max_len=_MAX_NAME),
        _text("description", required=False, min_len=0),
        _created_at(),
    )

    id: str
    name: str
    description: str | None = None
    created_at: str | None = None


@dataclass(slots=True)
class Agent(Entity):
    ENTITY: ClassVar[str] = "Agent"
    TABLE: ClassVar[str] = "agents"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _ref("team_id"),
        _ref("role_id"),
        _text("name", max_len=_MAX_NAME),
        _created_at(),
    )
    DERIVED: ClassVar[tuple[str, ...]] = ("tasks",)

    id: str
    team_id: str
    role_id: str
    name: str
    created_at: str | None = None
    tasks: tuple[str, ...] = ()


@dataclass(slots=True)
class Validator(Entity):
    """A completion-check template, referenced by tasks and actions."""

    ENTITY: ClassVar[str] = "Validator"
    TABLE: ClassVar[str] = "validators"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _text("template"),
        _text("resource"),
        _created_at(),
    )

    id: str
    template: str
    resource: str
    created_at: str | None = None


@dataclass(slots=True)
class Task(Entity):
    ENTITY: ClassVar[str] = "Task"
    TABLE: ClassVar[str] = "tasks"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _ref("job_id"),
        _text("name", max_len=_MAX_NAME),
        _text("description", required=False, min_len=0),
        _status(TaskStatus),
        _ref("agent_id", required=False),
        _ref("validator_id", required=False),
        _created_at(),
    )

    id: str
    job_id: str
    name: str
    description: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    agent_id: str | None = None
    validator_id: str | None = None
    created_at: str | None = None


@dataclass(slots=True)
class Action(Entity):
    """A transition from the source phase to ``target_phase_id``, gated by a validator."""

    ENTITY: ClassVar[str] = "Action"
    TABLE: ClassVar[str] = "actions"
    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        _id_field(),
        _ref("phase_id"),
        _ref("target_phase_id"),
        _ref("validator_id"),
        _text("name", max_len=_MAX_NAME),
        _created_at(),
    )

    id: str
    phase_id: str
    target_phase_id: str
    validator_id: str
    name: str
    created_at: str | None = None


ENTITY_TYPES: Final[tuple[type[Entity], ...]] = (
    Project,
    Plan,
    Phase,
    Job,
    Team,
    Role,
    Agent,
    Validator,
    Task,
    Action,
)

ENTITIES_BY_NAME: Final[dict[str, type[Entity]]] = {
    entity_type.ENTITY: entity_type for entity_type in ENTITY_TYPES
}


def is_utf8_text(value: str) -> bool:
    """False when ``value`` holds lone surrogates that sqlite cannot bind."""
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _parse_field(spec: FieldSpec, raw: object) -> tuple[object, str | None]:
    if raw is None:
        if spec.kind == "enum":
            return spec.default, None
        if spec.required:
            return None, "required"
        return None, None

    if spec.kind in ("id", "ref"):
        try:
            ids.validate_id(raw)
        except ValueError as exc:
            return None, str(exc)
        return raw, None

    if spec.kind == "text":
        if not isinstance(raw, str):
            return None, f"expected string, got {type(raw).__name__}"
        if not is_utf8_text(raw):
            return None, "must be valid UTF-8 text"
        if len(raw.strip()) < spec.min_len:
            if spec.min_len == 1:
                return None, "must not be empty"
            return None, f"must be at least {spec.min_len} characters"
        if len(raw) > spec.max_len:
            return None, f"must be <= {spec.max_len} characters"
        return raw, None

    if spec.kind == "enum":
        if spec.enum is None:
            return None, "enum type is not declared"
        if not isinstance(raw, str):
            return None, f"expected string enum value, got {type(raw).__name__}"
        try:
            return spec.enum(raw), None
        except ValueError:
            allowed = ", ".join(item.value for item in spec.enum)
            return None, f"invalid value {raw!r}; expected one of: {allowed}"

    if not isinstance(raw, str):
        return None, f"expected ISO-8601 string, got {type(raw).__name__}"
    text = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        return None, f"invalid ISO-8601 datetime ({exc})"
    if parsed.tzinfo is None:
        return None, "datetime must be timezone-aware"
    return raw, None


def _parse_derived(shape: Literal["one", "many"], raw: object) -> tuple[object, str | None]:
    if shape == "one":
        if raw is None:
            return None, None
        try:
            ids.validate_id(raw)
        except ValueError as exc:
            return None, str(exc)
        return raw, None

    if raw is None:
        return (), None
    if not isinstance(raw, (list, tuple)):
        return None, f"expected array of ids, got {type(raw).__name__}"
    if len(raw) > _MAX_COLLECTION:
        return None, f"too many items (>{_MAX_COLLECTION})"
    for index, item in enumerate(raw):
        try:
            ids.validate_id(item)
        except ValueError as exc:
            return None, f"[{index}] {exc}"
    if len(set(raw)) != len(raw):
        return None, "contains duplicate ids"
    return tuple(raw), None


def _serialize(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, str):
        return value
    if isinstance(value, (tuple, list)):
        return [_serialize(item) for item in value]
    raise ValueError(f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "ENTITIES_BY_NAME",
    "ENTITY_TYPES",
    "Action",
    "Agent",
    "Entity",
    "FieldSpec",
    "JSONValue",
    "Job",
    "JobStatus",
    "Phase",
    "Plan",
    "Project",
    "Role",
    "Task",
    "TaskStatus",
    "Team",
    "Validator",
    "is_utf8_text",
]
