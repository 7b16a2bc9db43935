"""Partial-update reducer: turn a caller's partial record into a minimal patch.

Only keys present in the partial are considered. An explicit ``None`` clears
an optional field (a required one fails validation of the merged record
later); values equal to the stored ones are dropped so an update writes
exactly what changed. Echoing back immutable or derived values unchanged is
tolerated, trying to change them is a validation error.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from puzzlemaster.domain.errors import ValidationError
from puzzlemaster.domain.models import Entity
from puzzlemaster.domain.result import Err, Ok, Result


@dataclass(frozen=True, slots=True)
class Patch:
    """Attribute-level changes for one entity, in the order they were supplied."""

    entity: str
    changes: Mapping[str, object] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def merge(self, existing: Mapping[str, object]) -> dict[str, object]:
        """Overlay the changes on ``existing`` and return a new candidate mapping."""
        merged = dict(existing)
        merged.update(self.changes)
        return merged

    def columns(self, entity_type: type[Entity]) -> tuple[str, ...]:
        """Store column names touched by this patch."""
        out: list[str] = []
        for name in self.changes:
            spec = entity_type.field_spec(name)
            if spec is not None:
                out.append(spec.store_column)
        return tuple(out)


def reduce(
    existing: Entity | Mapping[str, object],
    partial: object,
    entity_type: type[Entity],
) -> Result[Patch, ValidationError]:
    """Compute the minimal patch that moves ``existing`` to ``existing + partial``."""

    current = existing.to_dict() if isinstance(existing, Entity) else dict(existing)
    if not isinstance(partial, Mapping):
        return Err(
            ValidationError(
                entity_type.ENTITY,
                [("record", f"expected object, got {type(partial).__name__}")],
            )
        )

    problems: list[tuple[str, str]] = []
    changes: dict[str, object] = {}
    for key, value in partial.items():
        if not isinstance(key, str):
            problems.append(("record", f"field names must be strings, got {type(key).__name__}"))
            continue

        if key in entity_type.DERIVED:
            if not _same(current.get(key), value):
                problems.append((key, "derived from child records and cannot be written"))
            continue

        spec = entity_type.field_spec(key)
        if spec is None:
            problems.append((key, "unexpected field"))
            continue
        if _same(current.get(key), value):
            continue
        if not spec.updatable:
            problems.append((key, "is immutable"))
            continue
        changes[key] = value

    if problems:
        return Err(ValidationError(entity_type.ENTITY, problems))
    return Ok(Patch(entity=entity_type.ENTITY, changes=changes))


def _same(current: object, proposed: object) -> bool:
    return _comparable(current) == _comparable(proposed)


def _comparable(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return tuple(_comparable(item) for item in value)
    return value


__all__ = ["Patch", "reduce"]
