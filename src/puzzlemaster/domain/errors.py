"""Typed error values returned by validators and gateways.

Errors subclass ``Exception`` so they carry the usual ``args``/``__str__``
behaviour, but the core never raises them across the gateway boundary: they
travel inside :class:`~puzzlemaster.domain.result.Err` and callers branch on
``kind`` (or ``isinstance``) to tell invalid input from a missing record from a
store fault.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PERSISTENCE = "persistence"


class DomainError(Exception):
    """Base class for every error value produced by the planning core."""

    kind: ErrorKind = ErrorKind.PERSISTENCE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DomainError):
            return NotImplemented
        return type(self) is type(other) and self.message == other.message

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.message))

    def contains(self, fragment: str) -> bool:
        """Return True when ``fragment`` appears in the error message."""
        return fragment in self.message

    @staticmethod
    def narrow(error: BaseException | object) -> str:
        """Reduce an arbitrary error to a message string."""
        if isinstance(error, BaseException):
            text = str(error)
            return text if text else type(error).__name__
        return str(error)


class ValidationError(DomainError):
    """A candidate record is structurally invalid.

    ``fields`` lists every offending field, in the order they were checked;
    the message names each of them together with the reason.
    """

    kind = ErrorKind.VALIDATION

    def __init__(self, entity: str, problems: Iterable[tuple[str, str]]) -> None:
        self.entity = entity
        self.problems: tuple[tuple[str, str], ...] = tuple(problems)
        self.fields: tuple[str, ...] = tuple(name for name, _ in self.problems)
        details = "; ".join(f"{name}: {reason}" for name, reason in self.problems)
        super().__init__(f"Invalid {entity}: {details}" if details else f"Invalid {entity}")


class NotFoundError(DomainError):
    """An operation targeted a record (subject or referenced parent) that does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: str, *, field: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.field = field
        message = f"{entity} with ID {entity_id} not found"
        if field is not None:
            message = f"{field}: {message}"
        super().__init__(message)


class PersistenceError(DomainError):
    """The store failed for a reason other than validation or a missing record."""

    kind = ErrorKind.PERSISTENCE

    def __init__(self, entity: str, operation: str, cause: BaseException | str) -> None:
        self.entity = entity
        self.operation = operation
        self.cause = cause
        super().__init__(f"{entity} {operation} failed: {DomainError.narrow(cause)}")


__all__ = [
    "DomainError",
    "ErrorKind",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
]
