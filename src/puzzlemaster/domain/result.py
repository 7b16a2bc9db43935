"""Two-variant result type used by validators and gateways.

Callers must check ``is_ok`` (or match on :class:`Ok` / :class:`Err`) before
reading the value; ``unwrap`` on an ``Err`` raises so misuse is loud in tests.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Generic, Literal, TypeAlias, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=BaseException)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> Literal[True]:
        return True

    @property
    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self) -> BaseException:
        raise ValueError(f"called unwrap_err on Ok({self.value!r})")

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        return Ok(fn(self.value))

    def and_then(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        return fn(self.value)


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    error: E

    @property
    def is_ok(self) -> Literal[False]:
        return False

    @property
    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> object:
        raise ValueError(f"called unwrap on Err({self.error!r})") from self.error

    def unwrap_err(self) -> E:
        return self.error

    def map(self, fn: Callable[[object], object]) -> Err[E]:
        del fn
        return self

    def and_then(self, fn: Callable[[object], object]) -> Err[E]:
        del fn
        return self


Result: TypeAlias = Ok[T] | Err[E]


def combine(results: Iterable[Result[T, E]]) -> Result[list[T], E]:
    """Collapse per-record outcomes into one list outcome.

    Every ``Ok`` yields the list of values in input order; the first ``Err``
    is returned as-is and all successes are discarded.
    """
    values: list[T] = []
    for result in results:
        if isinstance(result, Err):
            return result
        values.append(result.value)
    return Ok(values)


__all__ = ["Err", "Ok", "Result", "combine"]
